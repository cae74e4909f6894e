"""Run a list of desired items against one backend, end to end.

idle -> mode_ensuring -> resolving -> mutating -> reconciling -> done,
or -> stopped when the cancellation token fires. Per-item problems become
outcomes; only session acquisition and mode switching raise.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Optional

from woodcart.tools.api import ApiBackend
from woodcart.tools.browser import BrowserBackend
from woodcart.tools.errors import CartError, MutationError, SessionExpired
from woodcart.tools.models import (
    CartLineItem,
    DesiredItem,
    ItemEvent,
    OperationOutcome,
    ProductCandidate,
    ResolvedMatch,
    RunSummary,
    Session,
)
from woodcart.tools.retry import with_retry
from woodcart.tools.session import SessionStore
from woodcart.tools.settings import Settings
from woodcart.tools.unavailable import NOT_FOUND_REASON


logger = logging.getLogger(__name__)

GROUP_SIZE = 5
SESSION_EXPIRED_REASON = "session expired"


class CancellationToken:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ProgressSink:
    """Fan-out for progress lines and per-item events.

    A listener that raises is logged and otherwise ignored; it never aborts
    the run.
    """

    def __init__(
        self,
        on_message: Optional[Callable[[str], None]] = None,
        on_item: Optional[Callable[[ItemEvent], None]] = None,
    ):
        self.on_message = on_message
        self.on_item = on_item

    def message(self, text: str) -> None:
        logger.info(text)
        if self.on_message is None:
            return
        try:
            self.on_message(text)
        except Exception:
            logger.warning("Progress listener failed", exc_info=True)

    def item(self, event: ItemEvent) -> None:
        if self.on_item is None:
            return
        try:
            self.on_item(event)
        except Exception:
            logger.warning("Item listener failed", exc_info=True)


def backend_for(settings: Settings, *, on_failure: Optional[Callable[[Any, BaseException], None]] = None) -> Any:
    """Fast mode talks GraphQL; otherwise drive a browser."""
    if settings.strategy == "api":
        return ApiBackend(settings)
    return BrowserBackend(settings, on_failure=on_failure)


def _groups(items: list[DesiredItem], size: int = GROUP_SIZE) -> list[list[tuple[int, DesiredItem]]]:
    indexed = list(enumerate(items))
    return [indexed[i : i + size] for i in range(0, len(indexed), size)]


class Orchestrator:
    def __init__(
        self,
        backend: Any,
        store: SessionStore,
        settings: Settings,
        sink: Optional[ProgressSink] = None,
        token: Optional[CancellationToken] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backend = backend
        self.store = store
        self.settings = settings
        self.sink = sink or ProgressSink()
        self.token = token or CancellationToken()
        self._sleep = sleep

    # --- session ---

    def _session(self) -> Session:
        return self.store.acquire(self.settings, self.backend, self.settings.shopping_mode, self.sink.message)

    def _ready_session(self) -> Session:
        session = self._session()
        try:
            self.backend.ensure_mode(session, self.settings.shopping_mode, self.sink.message)
        except SessionExpired:
            self.store.invalidate()
            raise
        return session

    # --- stages ---

    def resolve_all(self, items: list[DesiredItem], session: Session) -> Optional[list[ResolvedMatch]]:
        """Resolve in groups of five, one group at a time.

        Returns None when cancelled between groups. SessionExpired propagates.
        """
        total = len(items)
        matches: list[ResolvedMatch] = []
        for group in _groups(items):
            if self.token.cancelled:
                return None
            first, last = group[0][0] + 1, group[-1][0] + 1
            self.sink.message(f"Searching items {first}-{last} of {total}...")
            resolved = self.backend.resolve_group(group, session)
            matches.extend(self.backend.describe(resolved, session))
        return matches

    def _emit(self, index: int, total: int, outcome: OperationOutcome) -> None:
        tail = f" - {outcome.reason}" if outcome.reason else ""
        self.sink.message(f"[{index + 1}/{total}] {outcome.status.upper()}: {outcome.item.display}{tail}")
        self.sink.item(
            ItemEvent(
                correlation_id=outcome.item.correlation_id,
                index=index,
                total=total,
                status=outcome.status,
            )
        )

    def _apply_one(self, match: ResolvedMatch, session: Session) -> OperationOutcome:
        item = match.item
        if match.skip_reason:
            return OperationOutcome(item=item, status="skipped", reason=match.skip_reason)
        if match.resolution_error:
            return OperationOutcome(item=item, status="failed", reason=match.resolution_error)
        if not match.found:
            return OperationOutcome(item=item, status="failed", reason=NOT_FOUND_REASON)
        try:
            with_retry(lambda: self.backend.apply_add(match, item.quantity, session), sleep=self._sleep)
        except SessionExpired:
            raise
        except MutationError as e:
            return OperationOutcome(item=item, status="failed", reason=str(e))
        return OperationOutcome(item=item, status="added")

    def apply_all(self, matches: list[ResolvedMatch], session: Session) -> tuple[list[OperationOutcome], bool]:
        """Mutate strictly in order. Returns (outcomes, session_expired).

        Cancellation is checked before each item, so outcomes may be partial.
        """
        total = len(matches)
        outcomes: list[OperationOutcome] = []
        delay = self.settings.delay_between_items / 1000 if self.backend.strategy == "browser" else 0
        for index, match in enumerate(matches):
            if self.token.cancelled:
                break
            try:
                outcome = self._apply_one(match, session)
            except SessionExpired:
                self.store.invalidate()
                for rest_index in range(index, total):
                    lost = OperationOutcome(item=matches[rest_index].item, status="failed", reason=SESSION_EXPIRED_REASON)
                    outcomes.append(lost)
                    self._emit(rest_index, total, lost)
                return outcomes, True
            outcomes.append(outcome)
            self._emit(index, total, outcome)
            if delay and outcome.status == "added" and index < total - 1:
                self._sleep(delay)
        return outcomes, False

    # --- entry points ---

    def _finish(self, summary: RunSummary) -> RunSummary:
        self.sink.message(f"Done! Added: {summary.added}, Failed: {summary.failed}, Skipped: {summary.skipped}")
        return summary

    def run(self, items: list[DesiredItem]) -> RunSummary:
        summary = RunSummary()

        summary.state = "mode_ensuring"
        session = self._ready_session()

        summary.state = "resolving"
        self.sink.message(f"Resolving {len(items)} item(s)...")
        try:
            matches = self.resolve_all(items, session)
        except SessionExpired:
            self.store.invalidate()
            summary.outcomes = [
                OperationOutcome(item=item, status="failed", reason=SESSION_EXPIRED_REASON) for item in items
            ]
            for index, outcome in enumerate(summary.outcomes):
                self._emit(index, len(items), outcome)
            summary.reconcile_error = SESSION_EXPIRED_REASON
            summary.state = "done"
            return self._finish(summary)

        if matches is None:
            summary.state = "stopped"
            self.sink.message("Stopped before any item was added.")
            return self._finish(summary)

        summary.state = "mutating"
        outcomes, expired = self.apply_all(matches, session)
        summary.outcomes = outcomes

        if self.token.cancelled:
            summary.state = "stopped"
            self.sink.message(f"Stopped after {len(outcomes)} of {len(items)} item(s).")
            return self._finish(summary)

        if expired:
            summary.reconcile_error = SESSION_EXPIRED_REASON
        else:
            summary.state = "reconciling"
            self.sink.message("Checking cart...")
            try:
                summary.cart_items = self.backend.read_cart(session, self.sink.message)
            except SessionExpired as e:
                self.store.invalidate()
                summary.reconcile_error = str(e)
            except CartError as e:
                logger.warning("Cart re-read failed: %s", e)
                summary.reconcile_error = str(e)

        summary.state = "done"
        return self._finish(summary)

    def _with_session(self, fn: Callable[[Session], Any]) -> Any:
        session = self._ready_session()
        try:
            return fn(session)
        except SessionExpired:
            self.store.invalidate()
            raise

    def fetch_cart(self) -> list[CartLineItem]:
        return self._with_session(lambda s: self.backend.read_cart(s, self.sink.message))

    def remove_all(self) -> int:
        return self._with_session(lambda s: self.backend.remove_all(s, self.sink.message))

    def search(self, query: str, limit: int = 12) -> list[ProductCandidate]:
        return self._with_session(lambda s: self.backend.search(query, s, limit))
