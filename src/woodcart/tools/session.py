"""Session cache: one slot, owned by whoever drives the automation."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from woodcart.tools.errors import missing_credentials
from woodcart.tools.models import Mode, Session
from woodcart.tools.settings import Settings


logger = logging.getLogger(__name__)


def _quiet(_message: str) -> None:
    return None


class SessionStore:
    """Single-slot session cache.

    Not shared across processes and not safe for two concurrent runs in
    different modes: both would read and mutate the same slot.
    """

    def __init__(self) -> None:
        self._session: Optional[Session] = None
        self._backend: Any = None

    @property
    def current(self) -> Optional[Session]:
        return self._session

    def replace(self, session: Session, backend: Any = None) -> None:
        if self._session is not None and self._session is not session:
            self._close()
        self._session = session
        self._backend = backend

    def invalidate(self) -> None:
        if self._session is not None:
            logger.info("Dropping cached %s session", self._session.strategy)
            self._close()
        self._session = None
        self._backend = None

    def _close(self) -> None:
        close = getattr(self._backend, "close", None)
        if close is None or self._session is None:
            return
        try:
            close(self._session)
        except Exception as e:
            logger.warning("Closing old session failed: %s", e)

    def acquire(
        self,
        settings: Settings,
        backend: Any,
        desired_mode: Optional[Mode] = None,
        progress: Callable[[str], None] = _quiet,
    ) -> Session:
        """Return a usable session, logging in only when needed.

        A cached session is probed first. A valid one is returned as-is even
        when its mode differs from ``desired_mode``; switching modes is the
        mode switcher's job. An invalid one is dropped and replaced by a fresh
        login. Login errors leave the slot empty.
        """
        mode = desired_mode or settings.shopping_mode
        cached = self._session
        if cached is not None:
            if cached.strategy == backend.strategy and backend.probe(cached):
                progress(
                    "Reusing existing session"
                    if cached.mode == mode
                    else "Session valid, mode will be switched separately"
                )
                return cached
            progress("Session expired, creating new one...")
            self.invalidate()

        if not settings.has_credentials:
            raise missing_credentials()

        session = backend.login(settings, mode, progress)
        self.replace(session, backend)
        return session
