"""Cart panel parsing.

The cart sidebar has no stable test ids and its markup changes wholesale
between visits, so line items are recovered by four independent strategies
run in order against one snapshot of the panel (its rendered text plus its
HTML). The first strategy that yields anything wins; results are never merged.

1. text-pattern walk   - backwards from each "Quantity:" line
2. product-link harvest - product detail links, name from the URL slug
3. stepper harvest      - item blocks found via their +/-/remove controls
4. price-line fallback  - nearest plausible name above each "$x.yy" line

Every strategy is a pure function of a ``PanelView`` so each can be tested
against saved markup.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional
from urllib.parse import unquote

from bs4 import BeautifulSoup, Tag

from woodcart.tools.models import CartLineItem


logger = logging.getLogger(__name__)

STOP_HEADERS = [
    "Complete your cart",
    "Buy it again",
    "You might also like",
    "Recommended for you",
    "Customers also bought",
]

SKIP_NAMES = {
    "Shopping Cart",
    "Shopping list",
    "Your cart",
    "Pickup order",
    "Your order",
    "Manage",
    "Woodman's Food Markets",
    "Shopping",
}

PRICE_TOLERANCE = 0.02

_EMPTY_RE = re.compile(r"your (personal )?cart is empty|cart is empty|no items in your cart", re.IGNORECASE)

_QTY_LINE_RE = re.compile(r"^Quantity:", re.IGNORECASE)
_QTY_SAME_LINE_RE = re.compile(r"Quantity:\s*(\d+)", re.IGNORECASE)
_QTY_NEXT_LINE_RE = re.compile(r"^(\d+)\s*(ct|item|ea|each|pk|lb|oz)?", re.IGNORECASE)
_NOISE_RE = re.compile(
    r"^(Replace with|Choose replacement|Choose a replacement|Original price|Current price|Sale price|On sale|Save \$)",
    re.IGNORECASE,
)
_PRICE_LINE_RE = re.compile(r"^\$\d")
_UNIT_LINE_RE = re.compile(
    r"^\d+(?:\.\d+)?\s*(?:fl\s*oz|oz|ct|item|items|ea|each|pk|lb|lbs|gal|gallon|ml|l|qt|pt|count|kg|g)\s*$",
    re.IGNORECASE,
)
_SIZE_WORD_RE = re.compile(r"^(?:half|quarter|whole)?\s*(?:gallon|pint|quart|liter|litre)\s*$", re.IGNORECASE)
_NOT_A_NAME_RE = re.compile(r"^(Shopper|Checkout|Subtotal|Shopping|Woodman|Choose|\d+\s*(am|pm))", re.IGNORECASE)
_SIZE_IN_NAME_RE = re.compile(r"\((\d+(?:\.\d+)?\s*(?:oz|fl oz|lb|gal|ct|pk|ml|l|qt|pt)\b[^)]*)\)", re.IGNORECASE)

_PRICE_RE = re.compile(r"\$\d+\.\d{2}")
_SIZE_RE = re.compile(r"\d+(?:\.\d+)?\s*(?:fl oz|oz|lb|gal|ct|pk|ml|l|qt|pt)\b", re.IGNORECASE)
_QTY_LABEL_RE = re.compile(r"(?:Quantity|Qty)[:\s]*(\d+)", re.IGNORECASE)
_PRODUCT_HREF_RE = re.compile(r"/products/(\d+)-(.+)$")

_PRICE_ONLY_RE = re.compile(r"^\$\d+\.\d{2}")
_FALLBACK_UNIT_RE = re.compile(r"^\d+\s*(oz|fl|lb|gal|ct|pk|ml|l|qt|pt)", re.IGNORECASE)
_FALLBACK_LABEL_RE = re.compile(r"^(Remove|Edit|Manage|Save|Checkout|Subtotal|Est\.|Shopper|Shopping|Your\s)", re.IGNORECASE)

_STEPPER_SELECTOR = ", ".join(
    f'button[aria-label*="{frag}" i]' for frag in ("ncrement", "ncrease", "ecrease", "elete", "emove")
)
_CONTROL_WORDS_RE = re.compile(r"Quantity|Remove|Increment|Decrement|Delete|Edit|Manage", re.IGNORECASE)


@dataclass(frozen=True)
class CartPanelSnapshot:
    """What the browser hands over: the panel's innerText and outerHTML."""

    text: str
    html: str


@dataclass
class PanelView:
    lines: list[str]
    cart_lines: list[str]
    root: Optional[Tag]
    diagnostics: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ParseResult:
    items: list[CartLineItem]
    strategy: Optional[str]
    empty_marker: bool = False
    diagnostics: tuple[str, ...] = ()


Strategy = Callable[[PanelView], list[CartLineItem]]


# --- small helpers ---------------------------------------------------------


def split_lines(text: str) -> list[str]:
    return [s.strip() for s in (text or "").split("\n") if s.strip()]


def cut_at_recommendations(lines: list[str], stop_headers: Iterable[str] = STOP_HEADERS) -> list[str]:
    headers = [h.lower() for h in stop_headers]
    for idx, line in enumerate(lines):
        low = line.lower()
        if any(h in low for h in headers):
            return lines[:idx]
    return lines


def name_from_slug(href: str) -> tuple[str, str]:
    """``/products/123-organic-bananas`` -> ("123", "Organic Bananas")."""
    path = (href or "").split("?", 1)[0].split("#", 1)[0]
    m = _PRODUCT_HREF_RE.search(path)
    if not m:
        return "", ""
    words = unquote(m.group(2)).replace("-", " ").strip()
    return m.group(1), re.sub(r"\b\w", lambda c: c.group(0).upper(), words)


def price_value(text: str) -> Optional[float]:
    m = re.search(r"\$?(\d[\d,]*\.?\d*)", text or "")
    if not m:
        return None
    try:
        return float(m.group(1).replace(",", ""))
    except ValueError:
        return None


def unit_price(prices: list[str], quantity: int, current: str) -> str:
    """Pick the per-unit price when both unit and line total were shown.

    With qty > 1 and at least two prices, the smallest is the unit price if
    the largest is (within a couple of cents) smallest * qty.
    """
    if quantity <= 1 or len(prices) < 2:
        return current
    parsed = sorted(
        ((price_value(raw), raw) for raw in prices if price_value(raw) is not None),
        key=lambda pair: pair[0],
    )
    if len(parsed) < 2:
        return current
    smallest, largest = parsed[0], parsed[-1]
    if abs(largest[0] - smallest[0] * quantity) < PRICE_TOLERANCE:
        return smallest[1]
    return current


def _is_noise_line(line: str) -> bool:
    return bool(_NOISE_RE.match(line) or _UNIT_LINE_RE.match(line) or _SIZE_WORD_RE.match(line))


def _plausible_name(candidate: str) -> bool:
    return (
        len(candidate) >= 3
        and candidate not in SKIP_NAMES
        and not candidate.startswith("$")
        and not candidate.startswith("Est.")
        and not _NOT_A_NAME_RE.match(candidate)
        and not candidate.isdigit()
        and not _UNIT_LINE_RE.match(candidate)
        and not _SIZE_WORD_RE.match(candidate)
    )


def _text(el: Tag) -> str:
    return el.get_text("\n")


def _own_text(el: Tag) -> str:
    return "".join(s.strip() for s in el.find_all(string=True, recursive=False))


def _children(el: Tag) -> list[Tag]:
    return el.find_all(True, recursive=False)


def _is_document(el: object) -> bool:
    return isinstance(el, BeautifulSoup) or not isinstance(el, Tag)


def _closest(el: Tag, predicate: Callable[[Tag], bool]) -> Optional[Tag]:
    node: Optional[Tag] = el
    while node is not None and not _is_document(node):
        if predicate(node):
            return node
        node = node.parent
    return None


def _ancestor(el: Tag, levels: int) -> Optional[Tag]:
    node: Optional[Tag] = el
    for _ in range(levels):
        if node is None:
            return None
        node = node.parent
    if node is None or _is_document(node):
        return None
    return node


def _class_has(fragment: str) -> Callable[[Tag], bool]:
    def check(el: Tag) -> bool:
        return fragment in " ".join(el.get("class") or []).lower()

    return check


def _is_li(el: Tag) -> bool:
    return el.name == "li"


def _has_testid(el: Tag) -> bool:
    return el.has_attr("data-testid")


def _first(pattern: re.Pattern, text: str) -> str:
    m = pattern.search(text)
    return m.group(0) if m else ""


def _block_quantity(block: Tag) -> int:
    text = _text(block)
    m = _QTY_LABEL_RE.search(text)
    if m:
        return int(m.group(1))

    # A bare number sitting next to a stepper button.
    for btn in block.find_all("button"):
        for sibling in (btn.find_previous_sibling(), btn.find_next_sibling()):
            if sibling is not None and sibling.get_text().strip().isdigit():
                return int(sibling.get_text().strip())

    qty_input = block.select_one('input[type="number"], [role="spinbutton"]')
    if qty_input is not None:
        raw = qty_input.get("value") or qty_input.get("aria-valuenow") or ""
        if str(raw).strip().isdigit():
            return int(str(raw).strip()) or 1
    return 1


def _document_order(root: Tag) -> dict[int, int]:
    order = {id(root): 0}
    for idx, el in enumerate(root.find_all(True), start=1):
        order[id(el)] = idx
    return order


def find_recommendation_boundary(root: Tag, stop_headers: Iterable[str] = STOP_HEADERS) -> Optional[Tag]:
    headers = {h.lower() for h in stop_headers}
    for el in root.find_all(["h1", "h2", "h3", "h4", "span", "div", "p"]):
        if _own_text(el).lower() in headers:
            return el
        if len(_children(el)) <= 1 and el.get_text().strip().lower() in headers:
            return el
    return None


# --- strategies ------------------------------------------------------------


def text_pattern_walk(view: PanelView) -> list[CartLineItem]:
    """Strategy 1: walk backwards from each ``Quantity:`` line.

    In-store carts render "Quantity: 2 items" on one line; pickup carts put
    "Quantity:" on one line and "2 ct" on the next. Going up from there we
    skip replacement offers, unit/size lines and price lines (remembering
    every price), and the first line left is the product name.
    """
    lines = view.cart_lines
    results: list[CartLineItem] = []
    for qi, line in enumerate(lines):
        if not _QTY_LINE_RE.match(line):
            continue

        quantity = 1
        same_line = _QTY_SAME_LINE_RE.search(line)
        if same_line:
            quantity = int(same_line.group(1))
        elif qi + 1 < len(lines):
            ct = _QTY_NEXT_LINE_RE.match(lines[qi + 1])
            if ct:
                quantity = int(ct.group(1))

        price = ""
        prices_found: list[str] = []
        back = qi - 1
        while back >= 0:
            bl = lines[back]
            if _PRICE_LINE_RE.match(bl):
                prices_found.append(bl)
                # Last overwrite wins: the price nearest the name is the current one.
                price = bl
                back -= 1
                continue
            if _is_noise_line(bl):
                back -= 1
                continue
            break

        if back < 0 or not _plausible_name(lines[back]):
            continue
        name = lines[back]

        size_match = _SIZE_IN_NAME_RE.search(name)
        size = size_match.group(1) if size_match else ""
        price = unit_price(prices_found, quantity, price)
        view.diagnostics.append(f'  Item: "{name}" price={price} qty={quantity} allPrices=[{", ".join(prices_found)}]')
        results.append(CartLineItem(catalog_entry_id="", name=name, price=price, size=size, quantity=quantity))
    return results


def product_link_harvest(view: PanelView) -> list[CartLineItem]:
    """Strategy 2: product-detail links above the recommendations boundary."""
    root = view.root
    if root is None:
        return []
    boundary = find_recommendation_boundary(root)
    order = _document_order(root)
    view.diagnostics.append(f"Strategy 2: recBoundary found: {boundary is not None}")

    links = root.select('a[href*="/products/"]')
    view.diagnostics.append(f"Strategy 2: {len(links)} product links in container")

    seen: set[str] = set()
    skipped = 0
    results: list[CartLineItem] = []
    for link in links:
        if boundary is not None and order.get(id(link), 0) > order.get(id(boundary), 0):
            skipped += 1
            continue
        product_id, name = name_from_slug(link.get("href", ""))
        if len(name) < 3 or name in seen:
            continue
        seen.add(name)

        block = _closest(link, _is_li) or _closest(link, _class_has("item")) or _ancestor(link, 3)
        price = size = ""
        quantity = 1
        if block is not None:
            text = _text(block)
            price = _first(_PRICE_RE, text)
            size = _first(_SIZE_RE, text)
            quantity = _block_quantity(block)
        results.append(CartLineItem(catalog_entry_id=product_id, name=name, price=price, size=size, quantity=quantity))

    view.diagnostics.append(f"Strategy 2 found: {len(results)} (skipped {skipped} by boundary)")
    return results


def _longest_plausible_text(block: Tag) -> str:
    best = ""
    for el in block.find_all(["span", "a", "p", "div"]):
        t = " ".join(el.get_text(" ").split())
        if (
            len(t) > len(best)
            and 3 < len(t) < 120
            and not t.startswith("$")
            and not t.isdigit()
            and not _CONTROL_WORDS_RE.search(t)
            and len(_children(el)) <= 2
        ):
            best = t
    return best


def stepper_harvest(view: PanelView) -> list[CartLineItem]:
    """Strategy 3: find item blocks through their quantity/remove controls."""
    root = view.root
    if root is None:
        return []
    buttons = root.select(_STEPPER_SELECTOR)
    view.diagnostics.append(f"Strategy 3: {len(buttons)} stepper/remove buttons")

    blocks: list[Tag] = []
    for btn in buttons:
        block = (
            _closest(btn, _is_li)
            or _closest(btn, _class_has("item"))
            or _closest(btn, _has_testid)
            or _ancestor(btn, 3)
        )
        if block is not None and block is not root and not any(block is b for b in blocks):
            blocks.append(block)
    view.diagnostics.append(f"Strategy 3: {len(blocks)} unique item containers")

    seen: set[str] = set()
    results: list[CartLineItem] = []
    for block in blocks:
        product_id = name = ""
        link = block.select_one('a[href*="/products/"]')
        if link is not None:
            product_id, name = name_from_slug(link.get("href", ""))
        if not name:
            name = _longest_plausible_text(block)
        if len(name) < 3 or name in seen:
            continue
        seen.add(name)

        text = _text(block)
        results.append(
            CartLineItem(
                catalog_entry_id=product_id,
                name=name,
                price=_first(_PRICE_RE, text),
                size=_first(_SIZE_RE, text),
                quantity=_block_quantity(block),
            )
        )
    view.diagnostics.append(f"Strategy 3 found: {len(results)}")
    return results


def price_line_fallback(view: PanelView) -> list[CartLineItem]:
    """Strategy 4: every ``$x.yy`` line, named by the closest line above it."""
    lines = view.cart_lines
    seen: set[str] = set()
    results: list[CartLineItem] = []
    for li, line in enumerate(lines):
        if not _PRICE_ONLY_RE.match(line):
            continue
        name = ""
        for back in range(1, 5):
            if li - back < 0:
                break
            candidate = lines[li - back]
            if (
                candidate.startswith("$")
                or candidate.lower().startswith("quantity")
                or _FALLBACK_UNIT_RE.match(candidate)
                or _FALLBACK_LABEL_RE.match(candidate)
                or len(candidate) < 3
            ):
                continue
            name = candidate
            break
        if name and name not in seen:
            seen.add(name)
            results.append(CartLineItem(catalog_entry_id="", name=name, price=line, quantity=1))
    view.diagnostics.append(f"Strategy 4 (price-line) found: {len(results)}")
    return results


STRATEGIES: list[tuple[str, Strategy]] = [
    ("text_pattern", text_pattern_walk),
    ("product_links", product_link_harvest),
    ("stepper_controls", stepper_harvest),
    ("price_lines", price_line_fallback),
]


# --- entry point -----------------------------------------------------------


def view_of(snapshot: CartPanelSnapshot) -> PanelView:
    lines = split_lines(snapshot.text)
    soup = BeautifulSoup(snapshot.html or "", "html.parser")
    root = soup.find(True)
    return PanelView(lines=lines, cart_lines=cut_at_recommendations(lines), root=root)


def is_empty_cart(text: str) -> bool:
    return bool(_EMPTY_RE.search(text or ""))


def parse_cart_panel(
    snapshot: CartPanelSnapshot,
    strategies: Optional[list[tuple[str, Strategy]]] = None,
) -> ParseResult:
    if is_empty_cart(snapshot.text):
        return ParseResult(items=[], strategy=None, empty_marker=True, diagnostics=("Cart is empty (found empty cart message)",))

    view = view_of(snapshot)
    view.diagnostics.append(f"Container total lines: {len(view.lines)}, cart lines: {len(view.cart_lines)}")
    for name, strategy in strategies if strategies is not None else STRATEGIES:
        items = strategy(view)
        if items:
            view.diagnostics.append(f"Using strategy {name}: {len(items)} item(s)")
            for msg in view.diagnostics:
                logger.debug(msg)
            return ParseResult(items=items, strategy=name, diagnostics=tuple(view.diagnostics))

    view.diagnostics.append("No strategy found any items")
    for msg in view.diagnostics:
        logger.debug(msg)
    return ParseResult(items=[], strategy=None, diagnostics=tuple(view.diagnostics))
