import pytest

from woodcart.tools.errors import LoginFlowError, MissingCredentials, TransportError, login_flow_failed, transport_failed
from woodcart.tools.models import Session
from woodcart.tools.settings import Settings


class _FakeBackend:
    strategy = "api"

    def __init__(self, *, valid=True, login_error=None):
        self.valid = valid
        self.login_error = login_error
        self.logins = []
        self.closed = []
        self.probes = 0

    def probe(self, session):
        self.probes += 1
        return self.valid

    def login(self, settings, mode, progress):
        self.logins.append(mode)
        if self.login_error is not None:
            raise self.login_error
        return Session(handle=object(), cart_id=f"cart-{len(self.logins)}", mode=mode, strategy="api")

    def close(self, session):
        self.closed.append(session.cart_id)


def _settings(**kw):
    return Settings(username="me@example.com", password="pw", **kw)


def test_first_acquire_logs_in_and_caches():
    from woodcart.tools.session import SessionStore

    store = SessionStore()
    backend = _FakeBackend()
    s1 = store.acquire(_settings(), backend)
    s2 = store.acquire(_settings(), backend)

    assert s1 is s2
    assert backend.logins == ["instore"]
    assert backend.probes == 1


def test_invalid_cached_session_relogs_exactly_once():
    from woodcart.tools.session import SessionStore

    store = SessionStore()
    backend = _FakeBackend()
    store.acquire(_settings(), backend)

    backend.valid = False
    messages = []
    fresh = store.acquire(_settings(), backend, progress=messages.append)

    assert fresh.cart_id == "cart-2"
    assert backend.logins == ["instore", "instore"]
    assert backend.closed == ["cart-1"]
    assert "Session expired, creating new one..." in messages
    assert store.current is fresh


def test_valid_session_in_other_mode_is_returned_unchanged():
    from woodcart.tools.session import SessionStore

    store = SessionStore()
    backend = _FakeBackend()
    first = store.acquire(_settings(), backend, "instore")
    again = store.acquire(_settings(), backend, "pickup")

    assert again is first
    assert again.mode == "instore"
    assert backend.logins == ["instore"]


def test_missing_credentials_raise_before_login():
    from woodcart.tools.session import SessionStore

    backend = _FakeBackend()
    with pytest.raises(MissingCredentials):
        SessionStore().acquire(Settings(), backend)
    assert backend.logins == []


def test_login_failure_leaves_slot_empty():
    from woodcart.tools.session import SessionStore

    store = SessionStore()
    backend = _FakeBackend(login_error=login_flow_failed("Credentials", "bad password"))
    with pytest.raises(LoginFlowError):
        store.acquire(_settings(), backend)
    assert store.current is None


def test_invalidate_closes_through_backend():
    from woodcart.tools.session import SessionStore

    store = SessionStore()
    backend = _FakeBackend()
    store.acquire(_settings(), backend)
    store.invalidate()
    assert store.current is None
    assert backend.closed == ["cart-1"]
    # Idempotent.
    store.invalidate()
    assert backend.closed == ["cart-1"]


def test_retry_once_on_transport_error():
    from woodcart.tools.retry import with_retry

    attempts = []
    sleeps = []

    def flaky():
        attempts.append(1)
        if len(attempts) == 1:
            raise transport_failed("reset")
        return "ok"

    assert with_retry(flaky, sleep=sleeps.append) == "ok"
    assert len(attempts) == 2
    assert sleeps == [0.5]


def test_retry_gives_up_after_second_failure():
    from woodcart.tools.retry import with_retry

    attempts = []

    def broken():
        attempts.append(1)
        raise transport_failed("reset")

    with pytest.raises(TransportError):
        with_retry(broken, sleep=lambda _s: None)
    assert len(attempts) == 2
