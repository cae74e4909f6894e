"""Desired-item input (shopping list file / free-text lines)."""

from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Any

from woodcart.tools.models import DesiredItem


_LEADING_QTY_RE = re.compile(r"^\s*(\d+)\s*[xX]?\s+(.*)$")
_DOZEN_RE = re.compile(r"^\s*(?:(\d+)\s+)?dozen\s+(.*)$", re.IGNORECASE)
_TRAILING_NOTE_RE = re.compile(r"^(.*?)\s*\(([^)]*)\)\s*$")
# "16 oz sour cream" names a size, not a count.
_SIZE_PREFIX_RE = re.compile(
    r"^\s*\d+(?:\.\d+)?\s*(?:fl\s*oz|oz|lbs?|g|kg|ml|l|gal|gallons?|ct|count|pk|pack|qt|pt)\b",
    re.IGNORECASE,
)


def parse_item_line(text: str, *, correlation_id: str = "") -> DesiredItem:
    """
    Parse one free-text shopping line.

    - "2 bananas" => qty=2, "bananas"
    - "2 dozen eggs" => qty=24; "dozen eggs" => qty=12
    - "16 oz sour cream" => qty=1, the size stays in the search text
    - "milk - the big one" / "milk (the big one)" => note="the big one"
    """
    s = str(text).strip()
    note = ""
    if " - " in s:
        s, note = (part.strip() for part in s.split(" - ", 1))
    else:
        m = _TRAILING_NOTE_RE.match(s)
        if m and m.group(1):
            s, note = m.group(1).strip(), m.group(2).strip()

    qty = 1
    dozen_match = _DOZEN_RE.match(s)
    if dozen_match:
        n = dozen_match.group(1)
        qty = (int(n) if n else 1) * 12
        s = dozen_match.group(2).strip()
    elif not _SIZE_PREFIX_RE.match(s):
        m = _LEADING_QTY_RE.match(s)
        if m:
            qty = int(m.group(1))
            s = m.group(2).strip()

    return DesiredItem(label=s, search_text=s, quantity=qty, note=note, correlation_id=correlation_id)


def from_record(record: dict[str, Any], *, index: int) -> DesiredItem:
    label = str(record.get("item") or record.get("productName") or "").strip()
    search_text = str(record.get("productName") or label).strip()
    try:
        quantity = int(record.get("quantity") or 1)
    except (TypeError, ValueError):
        quantity = 1
    return DesiredItem(
        label=label,
        search_text=search_text,
        quantity=quantity,
        note=str(record.get("note") or "").strip(),
        correlation_id=str(record.get("id") or f"item-{index + 1}"),
    )


def load_items(path: Path) -> list[DesiredItem]:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    records = data.get("items", []) if isinstance(data, dict) else data
    out: list[DesiredItem] = []
    for record in records or []:
        if isinstance(record, str):
            if record.strip():
                out.append(parse_item_line(record, correlation_id=f"item-{len(out) + 1}"))
            continue
        item = from_record(record, index=len(out))
        if item.label:
            out.append(item)
    return out
