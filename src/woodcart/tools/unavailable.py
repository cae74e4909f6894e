"""Unavailable item logging (not_found/failed/skipped)."""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from woodcart.tools.models import OperationOutcome


Reason = Literal["not_found", "failed", "skipped"]

NOT_FOUND_REASON = "no search results"


def load_unavailable(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {"items": []}
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def reason_for(outcome: OperationOutcome) -> Reason:
    if outcome.status == "skipped":
        return "skipped"
    if outcome.reason == NOT_FOUND_REASON:
        return "not_found"
    return "failed"


def append_unavailable(
    path: Path,
    *,
    item: str,
    reason: Reason,
    search_term: Optional[str] = None,
    detail: Optional[str] = None,
) -> None:
    data = load_unavailable(path)
    items = data.setdefault("items", [])
    items.append(
        {
            "item": item,
            "reason": reason,
            "timestamp": datetime.now().isoformat(),
            **({"search_term": search_term} if search_term else {}),
            **({"detail": detail} if detail else {}),
        }
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def record_outcomes(path: Path, outcomes: list[OperationOutcome]) -> int:
    """Append every failed or skipped outcome; returns how many were written."""
    written = 0
    for outcome in outcomes:
        if outcome.status == "added":
            continue
        append_unavailable(
            path,
            item=outcome.item.display,
            reason=reason_for(outcome),
            search_term=outcome.item.search_text,
            detail=outcome.reason,
        )
        written += 1
    return written
