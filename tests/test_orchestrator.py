import pytest

from woodcart.tools.errors import (
    MissingCredentials,
    ModeSwitchError,
    mode_switch_failed,
    panel_not_found,
    rejected,
    session_expired,
    transport_failed,
)
from woodcart.tools.models import DesiredItem, ResolvedMatch, Session
from woodcart.tools.settings import Settings


class _FakeBackend:
    """Scripted backend: ``add_errors`` maps search text to errors raised per attempt."""

    strategy = "api"

    def __init__(self, *, missing=(), add_errors=None, cart=None, cart_error=None, resolve_error=None, skipped=()):
        self.missing = set(missing)
        self.add_errors = {k: list(v) for k, v in (add_errors or {}).items()}
        self.cart = cart if cart is not None else []
        self.cart_error = cart_error
        self.resolve_error = resolve_error
        self.skipped = set(skipped)
        self.groups = []
        self.adds = []
        self.logins = 0
        self.closed = 0
        self.mode_error = None
        self.on_add = None

    def probe(self, session):
        return True

    def login(self, settings, mode, progress):
        self.logins += 1
        return Session(handle=object(), cart_id="cart-1", mode=mode, strategy="api", shop_id="755261")

    def close(self, session):
        self.closed += 1

    def ensure_mode(self, session, mode, progress):
        if self.mode_error is not None:
            raise self.mode_error
        session.mode = mode
        return session

    def resolve_group(self, items, session):
        self.groups.append([idx for idx, _ in items])
        out = []
        for idx, item in items:
            if self.resolve_error is not None and item.search_text == self.resolve_error[0]:
                raise self.resolve_error[1]
            if item.search_text in self.skipped:
                out.append(ResolvedMatch(item=item, skip_reason="search bar not found"))
            elif item.search_text in self.missing:
                out.append(ResolvedMatch(item=item))
            else:
                out.append(ResolvedMatch(item=item, catalog_entry_id=f"items_1-{idx}"))
        return out

    def describe(self, matches, session):
        return matches

    def apply_add(self, match, quantity, session):
        self.adds.append((match.item.search_text, quantity))
        if self.on_add is not None:
            self.on_add(match)
        errors = self.add_errors.get(match.item.search_text)
        if errors:
            raise errors.pop(0)

    def read_cart(self, session, progress):
        if self.cart_error is not None:
            raise self.cart_error
        return self.cart

    def remove_all(self, session, progress):
        return 7

    def search(self, query, session, limit):
        return [query, limit]


def _items(*names):
    return [DesiredItem(label=n, search_text=n, correlation_id=f"item-{i + 1}") for i, n in enumerate(names)]


def _orchestrator(backend, **kwargs):
    from woodcart.tools.orchestrator import Orchestrator
    from woodcart.tools.session import SessionStore

    settings = kwargs.pop("settings", Settings(username="u", password="p"))
    return Orchestrator(backend, SessionStore(), settings, sleep=lambda _s: None, **kwargs)


def test_every_item_gets_exactly_one_outcome_in_order():
    backend = _FakeBackend(missing={"unicorn"}, skipped={"ghost"}, add_errors={"eggs": [rejected("Item unavailable")]})
    summary = _orchestrator(backend).run(_items("milk", "unicorn", "eggs", "ghost", "bread"))

    assert summary.state == "done"
    assert [(o.item.label, o.status) for o in summary.outcomes] == [
        ("milk", "added"),
        ("unicorn", "failed"),
        ("eggs", "failed"),
        ("ghost", "skipped"),
        ("bread", "added"),
    ]
    assert summary.outcomes[1].reason == "no search results"
    assert summary.outcomes[2].reason == "Store rejected the request: Item unavailable"
    assert summary.outcomes[3].reason == "search bar not found"
    assert (summary.added, summary.failed, summary.skipped) == (2, 2, 1)
    assert summary.cart_items == []


def test_rejection_is_not_retried():
    backend = _FakeBackend(add_errors={"eggs": [rejected("nope"), None]})
    _orchestrator(backend).run(_items("eggs"))
    assert backend.adds == [("eggs", 1)]


def test_transport_failure_retried_once_then_succeeds():
    backend = _FakeBackend(add_errors={"milk": [transport_failed("reset")]})
    summary = _orchestrator(backend).run(_items("milk"))
    assert backend.adds == [("milk", 1), ("milk", 1)]
    assert summary.outcomes[0].status == "added"


def test_transport_failure_twice_fails_the_item_only():
    backend = _FakeBackend(add_errors={"milk": [transport_failed("reset"), transport_failed("reset")]})
    summary = _orchestrator(backend).run(_items("milk", "eggs"))
    assert [o.status for o in summary.outcomes] == ["failed", "added"]
    assert summary.outcomes[0].reason.startswith("Network error")
    assert len(backend.adds) == 3


def test_resolution_runs_in_groups_of_five():
    backend = _FakeBackend()
    messages = []
    from woodcart.tools.orchestrator import ProgressSink

    _orchestrator(backend, sink=ProgressSink(on_message=messages.append)).run(_items(*[f"i{n}" for n in range(12)]))
    assert backend.groups == [[0, 1, 2, 3, 4], [5, 6, 7, 8, 9], [10, 11]]
    assert "Searching items 11-12 of 12..." in messages
    assert messages[-1] == "Done! Added: 12, Failed: 0, Skipped: 0"


def test_session_expiry_mid_batch_fails_the_rest_and_skips_reconcile():
    backend = _FakeBackend(add_errors={"eggs": [session_expired()]}, cart_error=panel_not_found())
    orchestrator = _orchestrator(backend)
    summary = orchestrator.run(_items("milk", "eggs", "bread"))

    assert [(o.status, o.reason) for o in summary.outcomes] == [
        ("added", None),
        ("failed", "session expired"),
        ("failed", "session expired"),
    ]
    assert summary.reconcile_error == "session expired"
    assert summary.cart_items is None
    assert orchestrator.store.current is None
    assert backend.closed == 1


def test_session_expiry_during_resolution_fails_everything():
    backend = _FakeBackend(resolve_error=("eggs", session_expired()))
    summary = _orchestrator(backend).run(_items("milk", "eggs"))
    assert [o.reason for o in summary.outcomes] == ["session expired", "session expired"]
    assert backend.adds == []


def test_cancel_stops_before_next_item():
    from woodcart.tools.orchestrator import CancellationToken

    token = CancellationToken()
    backend = _FakeBackend()
    backend.on_add = lambda match: token.cancel()
    summary = _orchestrator(backend, token=token).run(_items("milk", "eggs", "bread"))

    assert summary.state == "stopped"
    assert [o.item.label for o in summary.outcomes] == ["milk"]
    assert summary.cart_items is None


def test_cancel_before_resolution():
    from woodcart.tools.orchestrator import CancellationToken

    token = CancellationToken()
    token.cancel()
    backend = _FakeBackend()
    summary = _orchestrator(backend, token=token).run(_items("milk"))
    assert summary.state == "stopped"
    assert summary.outcomes == []
    assert backend.groups == []


def test_item_events_carry_correlation_ids():
    from woodcart.tools.orchestrator import ProgressSink

    events = []
    backend = _FakeBackend(missing={"unicorn"})
    _orchestrator(backend, sink=ProgressSink(on_item=events.append)).run(_items("milk", "unicorn"))
    assert [(e.correlation_id, e.index, e.total, e.status) for e in events] == [
        ("item-1", 0, 2, "added"),
        ("item-2", 1, 2, "failed"),
    ]


def test_failing_listener_does_not_abort_run():
    from woodcart.tools.orchestrator import ProgressSink

    def explode(_):
        raise RuntimeError("ui went away")

    summary = _orchestrator(_FakeBackend(), sink=ProgressSink(on_message=explode, on_item=explode)).run(_items("milk"))
    assert summary.outcomes[0].status == "added"


def test_reconcile_failure_is_recorded_not_raised():
    backend = _FakeBackend(cart_error=panel_not_found())
    summary = _orchestrator(backend).run(_items("milk"))
    assert summary.state == "done"
    assert summary.cart_items is None
    assert summary.reconcile_error.startswith("Cart panel not found")


def test_mode_switch_failure_raises():
    backend = _FakeBackend()
    backend.mode_error = mode_switch_failed("pickup", "In-Store")
    with pytest.raises(ModeSwitchError):
        _orchestrator(backend).run(_items("milk"))
    assert backend.adds == []


def test_missing_credentials_raise():
    with pytest.raises(MissingCredentials):
        _orchestrator(_FakeBackend(), settings=Settings()).run(_items("milk"))


def test_browser_delay_only_between_added_items():
    from woodcart.tools.orchestrator import Orchestrator
    from woodcart.tools.session import SessionStore

    sleeps = []
    backend = _FakeBackend(missing={"unicorn"})
    backend.strategy = "browser"
    settings = Settings(username="u", password="p", fast_mode=False, delay_between_items=1500)
    Orchestrator(backend, SessionStore(), settings, sleep=sleeps.append).run(_items("milk", "unicorn", "eggs"))
    assert sleeps == [1.5]


def test_summary_to_dict():
    backend = _FakeBackend(missing={"unicorn"})
    data = _orchestrator(backend).run(_items("milk", "unicorn")).to_dict()
    assert data["state"] == "done"
    assert (data["added"], data["failed"], data["skipped"]) == (1, 1, 0)
    assert data["results"][1] == {"id": "item-2", "item": "unicorn", "status": "failed", "reason": "no search results"}
    assert data["cart_items"] == []


def test_one_shot_operations_reuse_the_session():
    backend = _FakeBackend(cart=["line"])
    orchestrator = _orchestrator(backend)
    assert orchestrator.fetch_cart() == ["line"]
    assert orchestrator.remove_all() == 7
    assert orchestrator.search("eggs") == ["eggs", 12]
    assert backend.logins == 1


def test_backend_for_picks_strategy():
    from woodcart.tools.api import ApiBackend
    from woodcart.tools.browser import BrowserBackend
    from woodcart.tools.orchestrator import backend_for

    assert isinstance(backend_for(Settings(fast_mode=True)), ApiBackend)
    assert isinstance(backend_for(Settings(fast_mode=False)), BrowserBackend)
