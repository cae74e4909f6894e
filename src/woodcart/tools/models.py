"""Value types shared by both transport strategies."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Optional


Mode = Literal["instore", "pickup"]
Strategy = Literal["api", "browser"]
Status = Literal["added", "failed", "skipped"]
RunState = Literal["idle", "mode_ensuring", "resolving", "mutating", "reconciling", "done", "stopped"]

MODE_LABELS = {"instore": "In-Store", "pickup": "Pickup"}


def mode_label(mode: str) -> str:
    return MODE_LABELS.get(mode, MODE_LABELS["instore"])


@dataclass
class Session:
    """One authenticated context.

    ``handle`` is the transport's credential: a cookie-carrying HTTP session
    for the API strategy, a live browser page bundle for the browser one.
    Mode switches update ``cart_id``/``shop_id``/``mode`` in place.
    """

    handle: Any
    cart_id: Optional[str]
    mode: Mode
    strategy: Strategy
    shop_id: Optional[str] = None


@dataclass(frozen=True)
class DesiredItem:
    label: str
    search_text: str
    quantity: int = 1
    note: str = ""
    correlation_id: str = ""

    @property
    def display(self) -> str:
        return f"{self.label} ({self.note})" if self.note else self.label


@dataclass(frozen=True)
class ProductCandidate:
    product_id: str
    name: str
    price: str = ""
    size: str = ""
    url: str = ""


@dataclass(frozen=True)
class ResolvedMatch:
    item: DesiredItem
    catalog_entry_id: Optional[str] = None
    name: str = ""
    price: str = ""
    size: str = ""
    url: str = ""
    resolution_error: Optional[str] = None
    skip_reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.catalog_entry_id is not None

    @property
    def display_name(self) -> str:
        return self.name or self.item.search_text


@dataclass(frozen=True)
class CartLineItem:
    catalog_entry_id: str
    name: str
    price: str = ""
    size: str = ""
    # Weighted lines (produce by the pound) carry fractional quantities.
    quantity: float = 1


@dataclass(frozen=True)
class OperationOutcome:
    item: DesiredItem
    status: Status
    reason: Optional[str] = None


@dataclass(frozen=True)
class ItemEvent:
    correlation_id: str
    index: int
    total: int
    status: Status


@dataclass
class RunSummary:
    state: RunState = "idle"
    outcomes: list[OperationOutcome] = field(default_factory=list)
    cart_items: Optional[list[CartLineItem]] = None
    reconcile_error: Optional[str] = None

    def _count(self, status: str) -> int:
        return sum(1 for o in self.outcomes if o.status == status)

    @property
    def added(self) -> int:
        return self._count("added")

    @property
    def failed(self) -> int:
        return self._count("failed")

    @property
    def skipped(self) -> int:
        return self._count("skipped")

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "added": self.added,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [
                {
                    "id": o.item.correlation_id,
                    "item": o.item.display,
                    "status": o.status,
                    **({"reason": o.reason} if o.reason else {}),
                }
                for o in self.outcomes
            ],
            "cart_items": [asdict(c) for c in self.cart_items] if self.cart_items is not None else None,
            **({"reconcile_error": self.reconcile_error} if self.reconcile_error else {}),
        }
