"""Known shapes of the cart object inside an UpdateCartItemsMutation response.

The storefront has moved the line-item list around over time. ``classify``
returns one of the known shapes, or ``UnrecognizedShape`` with enough of the
raw response to diagnose a new layout.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


SNIPPET_CHARS = 800


@dataclass(frozen=True)
class CartItemCollectionShape:
    """data.updateCartItems.cart.cartItemCollection.cartItems"""

    raw_items: list[dict[str, Any]]


@dataclass(frozen=True)
class ItemsShape:
    """data.updateCartItems.cart.items"""

    raw_items: list[dict[str, Any]]


@dataclass(frozen=True)
class CartItemsShape:
    """data.updateCartItems.cart.cartItems"""

    raw_items: list[dict[str, Any]]


@dataclass(frozen=True)
class UnrecognizedShape:
    snippet: str


CartShape = Union[CartItemCollectionShape, ItemsShape, CartItemsShape, UnrecognizedShape]


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def snippet(body: Any, limit: int = SNIPPET_CHARS) -> str:
    try:
        text = json.dumps(body, indent=2)
    except (TypeError, ValueError):
        text = str(body)
    return (text or "(empty)")[:limit]


def classify(body: Any) -> CartShape:
    cart = _get(body, "data", "updateCartItems", "cart")
    candidates = (
        (CartItemCollectionShape, _get(cart, "cartItemCollection", "cartItems")),
        (ItemsShape, _get(cart, "items")),
        (CartItemsShape, _get(cart, "cartItems")),
    )
    for shape, raw in candidates:
        if isinstance(raw, list):
            return shape(raw_items=[r for r in raw if isinstance(r, dict)])
    return UnrecognizedShape(snippet=snippet(body))
