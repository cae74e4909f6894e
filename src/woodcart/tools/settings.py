"""Settings file (credentials, store, shopping mode).

File-backed JSON with the same camelCase keys the desktop app wrote, so an
existing ``settings.json`` can be pointed at directly. Environment variables
fill in credentials the file leaves blank.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from woodcart.tools.models import Mode


DEFAULT_STORE_URL = "https://shopwoodmans.com"
DEFAULT_ZIP_CODE = "53177"

# settings.json key -> Settings attribute
_KEYS = {
    "username": "username",
    "password": "password",
    "storeUrl": "store_url",
    "shoppingMode": "shopping_mode",
    "zipCode": "zip_code",
    "fastMode": "fast_mode",
    "headless": "headless",
    "delayBetweenItems": "delay_between_items",
    "persistedQueries": "persisted_queries",
}


@dataclass(frozen=True)
class Settings:
    username: str = ""
    password: str = ""
    store_url: str = DEFAULT_STORE_URL
    shopping_mode: Mode = "instore"
    zip_code: str = DEFAULT_ZIP_CODE
    fast_mode: bool = True
    headless: bool = True
    delay_between_items: int = 2000
    persisted_queries: dict[str, str] = field(default_factory=dict)

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)

    @property
    def base_url(self) -> str:
        return (self.store_url or DEFAULT_STORE_URL).rstrip("/")

    @property
    def strategy(self) -> str:
        return "api" if self.fast_mode else "browser"

    def with_overrides(self, **changes: Any) -> "Settings":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def to_json(self, *, include_password: bool = True) -> dict[str, Any]:
        out = {key: getattr(self, attr) for key, attr in _KEYS.items()}
        if not include_password:
            out.pop("password")
        return out


def from_json(data: dict[str, Any]) -> Settings:
    kwargs = {attr: data[key] for key, attr in _KEYS.items() if key in data and data[key] is not None}
    mode = kwargs.get("shopping_mode")
    if mode not in (None, "instore", "pickup"):
        kwargs["shopping_mode"] = "instore"
    return Settings(**kwargs)


def load_settings(path: Path, *, use_env: bool = True) -> Settings:
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            settings = from_json(json.load(f) or {})
    else:
        settings = Settings()

    if not use_env:
        return settings
    # Env vars only fill blanks; the file wins when both are set.
    return settings.with_overrides(
        username=settings.username or os.getenv("WOODMANS_EMAIL") or None,
        password=settings.password or os.getenv("WOODMANS_PASSWORD") or None,
    )


def save_settings(path: Path, settings: Settings) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(settings.to_json(), f, indent=2)
