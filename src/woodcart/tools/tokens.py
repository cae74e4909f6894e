"""Token extraction from the identity provider's login page.

Each extractor is a pure ``(html) -> str | None``; ``first_match`` tries them
in order. The page is an Azure AD B2C template whose inline script moves the
CSRF value around between releases, hence the list.
"""

from __future__ import annotations

import json
import re
from typing import Callable, Iterable, Optional


Extractor = Callable[[str], Optional[str]]


def _regex(pattern: str, flags: int = 0) -> Extractor:
    compiled = re.compile(pattern, flags)

    def extract(html: str) -> Optional[str]:
        m = compiled.search(html)
        return m.group(1) if m else None

    extract.__name__ = f"regex:{pattern}"
    return extract


def _settings_blob(html: str) -> Optional[str]:
    m = re.search(r"var\s+SETTINGS\s*=\s*(\{[^;]+\});", html)
    if not m:
        return None
    try:
        value = json.loads(m.group(1)).get("csrf")
    except (ValueError, AttributeError):
        return None
    return value or None


CSRF_EXTRACTORS: list[Extractor] = [
    _regex(r"csrf[\"'\s]*[:=][\"'\s]*[\"']([^\"']+)[\"']", re.IGNORECASE),
    _regex(r"\"csrf\"\s*:\s*\"([^\"]+)\""),
    _regex(r"var\s+CSRF_TOKEN\s*=\s*[\"']([^\"']+)[\"']"),
    _regex(r"csrf[^\"]*\":\s*\"([A-Za-z0-9+/=]{20,})\""),
    _settings_blob,
]

TRANSACTION_EXTRACTORS: list[Extractor] = [
    _regex(r"\"transId\"\s*:\s*\"([^\"]+)\""),
    _regex(r"transId[\"'\s]*[:=][\"'\s]*[\"']([^\"']+)[\"']"),
]


def first_match(extractors: Iterable[Extractor], html: str) -> Optional[str]:
    for extract in extractors:
        value = extract(html)
        if value:
            return value
    return None


def extract_csrf(html: str) -> Optional[str]:
    return first_match(CSRF_EXTRACTORS, html)


def extract_transaction_id(html: str) -> Optional[str]:
    return first_match(TRANSACTION_EXTRACTORS, html)
