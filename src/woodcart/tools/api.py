"""Woodmans storefront GraphQL tools ("fast" mode).

Everything here talks HTTP to the Instacart-hosted storefront with
persisted-query hashes captured from the web app. No browser is involved,
including login: the Azure AD B2C sign-in is replayed as plain requests.

If the store rotates a hash, calls start failing with a "PersistedQueryNotFound"
error; re-capture it from the browser devtools and put it in settings.json
under ``persistedQueries``.
"""

from __future__ import annotations

import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional
from urllib.parse import quote, urljoin, urlparse

import requests

from woodcart.tools import cart_shapes, tokens
from woodcart.tools.errors import (
    CartError,
    SessionExpired,
    login_flow_failed,
    parse_exhausted,
    rejected,
    session_expired,
    transport_failed,
    verification_failed,
)
from woodcart.tools.models import (
    CartLineItem,
    DesiredItem,
    Mode,
    ProductCandidate,
    ResolvedMatch,
    Session,
    mode_label,
)
from woodcart.tools.retry import with_retry
from woodcart.tools.settings import Settings


logger = logging.getLogger(__name__)

HASHES = {
    "SearchResultsPlacements": "27c831d17f6faaed2e46c8b5a4cafe7038f4249cc2acb527633aa1aea5dad855",
    "Items": "4127a4c8f70a3caba5993d066874c95227ee4f4d5d9b3effb28373a755933c96",
    "ActiveCartId": "6803f97683d706ab6faa3c658a0d6766299dbe1ff55f78b720ca2ef77de7c5c7",
    "UpdateCartItemsMutation": "7c2c63093a07a61b056c09be23eba6f5790059dca8179f7af7580c0456b1049f",
    "VisitShop": "d2845e5f0022f6d080bf14cd78dbcce9be2a277f12c468e7c43ff0d99a78e77a",
}

SHOP_IDS = {"instore": "755261", "pickup": "755260"}
ZONE_ID = "1022"

# Pickup carts are "grocery" carts; in-store carts are shopping "list"s.
CART_TYPES = {"pickup": "grocery", "instore": "list"}

TIMEOUT_S = 15
SEARCH_CANDIDATES = 4
SEARCH_LIMIT = 12
MAX_REDIRECTS = 10

# Quantity-zero update to an item that cannot exist: the mutation answers with
# the whole cart and changes nothing.
SENTINEL_ITEM_ID = "0"

B2C_BASE = "https://mywoodmans.b2clogin.com/mywoodmans.onmicrosoft.com/B2C_1_signup_signin"
B2C_POLICY = "B2C_1_signup_signin"

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

_ITEM_ID_RE = re.compile(r"items_\d+-\d+")
_DOLLAR_RE = re.compile(r"\$[\d.]+")


def shop_id_for(mode: str) -> str:
    return SHOP_IDS.get(mode, SHOP_IDS["instore"])


def cart_type_for(mode: str) -> str:
    return CART_TYPES.get(mode, CART_TYPES["instore"])


def scan_item_ids(body: Any, limit: int = SEARCH_LIMIT) -> list[str]:
    """Pull ``items_<n>-<n>`` ids out of a response without trusting its schema."""
    raw = json.dumps(body) if not isinstance(body, str) else body
    return list(dict.fromkeys(_ITEM_ID_RE.findall(raw)))[:limit]


def line_quantity(raw: Any, item_id: str = "") -> float:
    """Cart line quantity as the store reports it: 2, 0.5, "1.5". Missing means 1."""
    if raw is None or raw == "":
        return 1
    try:
        value = float(raw)
    except (TypeError, ValueError):
        raise parse_exhausted(f"Unreadable quantity {raw!r} for cart item {item_id or '?'}") from None
    return int(value) if value.is_integer() else value


def parse_item_details(items: list[dict[str, Any]]) -> dict[str, ProductCandidate]:
    out: dict[str, ProductCandidate] = {}
    for item in items or []:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        pricing = ((item.get("viewSection") or {}).get("pricing") or {}).get("price") or {}
        price = pricing.get("text") or "" if isinstance(pricing, dict) else ""
        if not price:
            m = _DOLLAR_RE.search(json.dumps(item))
            price = m.group(0) if m else ""
        out[item["id"]] = ProductCandidate(
            product_id=item["id"],
            name=item.get("name") or "",
            price=price,
            size=item.get("size") or "",
        )
    return out


@dataclass(frozen=True)
class GraphQLResponse:
    status: int
    body: Any

    @property
    def expired(self) -> bool:
        return self.status in (401, 403)

    @property
    def error_message(self) -> Optional[str]:
        if not isinstance(self.body, dict) or not self.body.get("errors"):
            return None
        first = self.body["errors"][0]
        return (first.get("message") if isinstance(first, dict) else str(first)) or "unknown error"

    def data(self, *path: str) -> Any:
        obj = self.body.get("data") if isinstance(self.body, dict) else None
        for key in path:
            if not isinstance(obj, dict):
                return None
            obj = obj.get(key)
        return obj


class GraphQLClient:
    """Persisted-query GraphQL over a cookie-carrying HTTP session.

    Queries go out as GET, mutations as POST. Network failures, timeouts and
    5xx answers raise TransportError; everything else is returned.
    """

    def __init__(self, http: Any, *, base_url: str, hashes: dict[str, str], timeout: float = TIMEOUT_S):
        self.http = http
        self.base_url = base_url
        self.hashes = hashes
        self.timeout = timeout

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/graphql"

    def _extensions(self, operation: str) -> dict[str, Any]:
        return {"persistedQuery": {"version": 1, "sha256Hash": self.hashes[operation]}}

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": USER_AGENT,
            "Accept": "application/json",
            "Referer": f"{self.base_url}/store/woodmans-food-markets/storefront",
            "Origin": self.base_url,
        }

    def query(self, operation: str, variables: dict[str, Any]) -> GraphQLResponse:
        params = {
            "operationName": operation,
            "variables": json.dumps(variables),
            "extensions": json.dumps(self._extensions(operation)),
        }
        return self._send(
            operation,
            lambda: self.http.get(self.endpoint, params=params, headers=self._headers(), timeout=self.timeout),
        )

    def mutate(self, operation: str, variables: dict[str, Any]) -> GraphQLResponse:
        body = {"operationName": operation, "variables": variables, "extensions": self._extensions(operation)}
        return self._send(
            operation,
            lambda: self.http.post(self.endpoint, json=body, headers=self._headers(), timeout=self.timeout),
        )

    def _send(self, operation: str, call: Callable[[], Any]) -> GraphQLResponse:
        try:
            resp = call()
        except requests.RequestException as e:
            raise transport_failed(f"{operation}: {e}") from e
        if resp.status_code >= 500:
            raise transport_failed(f"{operation}: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        return GraphQLResponse(status=resp.status_code, body=body)


def _quiet(_message: str) -> None:
    return None


class ApiBackend:
    """Fast-mode implementation of the cart contracts."""

    strategy = "api"

    def __init__(
        self,
        settings: Settings,
        *,
        http_factory: Callable[[], Any] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.hashes = {**HASHES, **(settings.persisted_queries or {})}
        self._http_factory = http_factory
        self._sleep = sleep
        self._clock = clock

    # --- plumbing ---

    def client(self, session: Session) -> GraphQLClient:
        return GraphQLClient(session.handle, base_url=self.settings.base_url, hashes=self.hashes)

    def _retry(self, fn: Callable[[], GraphQLResponse]) -> GraphQLResponse:
        return with_retry(fn, sleep=self._sleep)

    def _checked(self, res: GraphQLResponse) -> GraphQLResponse:
        if res.expired:
            raise session_expired()
        return res

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _location_vars(self, session: Session) -> dict[str, Any]:
        return {
            "shopId": session.shop_id or shop_id_for(session.mode),
            "zoneId": ZONE_ID,
            "postalCode": self.settings.zip_code,
        }

    def _active_cart_id(self, client: GraphQLClient, shop_id: str) -> GraphQLResponse:
        return client.query("ActiveCartId", {"addressId": None, "shopId": shop_id})

    def close(self, session: Session) -> None:
        close = getattr(session.handle, "close", None)
        if close is not None:
            close()

    # --- session ---

    def probe(self, session: Session) -> bool:
        try:
            res = self._active_cart_id(self.client(session), session.shop_id or shop_id_for(session.mode))
        except CartError:
            return False
        return not res.expired and bool(res.data())

    def login(self, settings: Settings, mode: Mode, progress: Callable[[str], None] = _quiet) -> Session:
        base = settings.base_url
        http = self._http_factory()
        http.headers.update({"User-Agent": USER_AGENT})

        def hop(step: str, url: str, **kwargs: Any) -> Any:
            method = kwargs.pop("method", "GET")
            try:
                if method == "POST":
                    return http.post(url, timeout=TIMEOUT_S, allow_redirects=False, **kwargs)
                return http.get(url, timeout=TIMEOUT_S, allow_redirects=False, **kwargs)
            except requests.RequestException as e:
                raise login_flow_failed(step, str(e)) from e

        progress("Authenticating (HTTP)...")
        sso = hop("SSO init", f"{base}/rest/sso/auth/woodmans/init")
        authorize_url = sso.headers.get("location") or sso.headers.get("Location")
        if sso.status_code != 302 or not authorize_url:
            raise login_flow_failed("SSO init", f"status {sso.status_code}, no redirect")

        progress("Loading login page...")
        page = hop("Login page", authorize_url)
        if page.status_code != 200:
            raise login_flow_failed("Login page", f"status {page.status_code}")

        csrf = tokens.extract_csrf(page.text)
        if not csrf:
            raise login_flow_failed("Login page", "could not extract CSRF token")
        tx = tokens.extract_transaction_id(page.text)
        if not tx:
            raise login_flow_failed("Login page", "could not extract transaction ID")

        progress("Signing in...")
        submitted = hop(
            "Credentials",
            f"{B2C_BASE}/SelfAsserted?tx={quote(tx, safe='')}&p={B2C_POLICY}",
            method="POST",
            data={"request_type": "RESPONSE", "email": settings.username, "password": settings.password},
            headers={
                "Content-Type": "application/x-www-form-urlencoded; charset=UTF-8",
                "X-CSRF-TOKEN": csrf,
                "X-Requested-With": "XMLHttpRequest",
                "Accept": "application/json, text/javascript, */*; q=0.01",
                "Referer": authorize_url,
                "Origin": "https://mywoodmans.b2clogin.com",
            },
        )
        try:
            verdict = json.loads(submitted.text)
        except ValueError:
            verdict = None
        if isinstance(verdict, dict):
            if str(verdict.get("status")) != "200":
                raise login_flow_failed("Credentials", verdict.get("message") or "invalid credentials")
        elif submitted.status_code != 200:
            raise login_flow_failed("Credentials", f"status {submitted.status_code}")

        progress("Confirming session...")
        confirmed = hop(
            "Confirmation",
            f"{B2C_BASE}/api/CombinedSigninAndSignup/confirmed?rememberMe=false"
            f"&csrf_token={quote(csrf, safe='')}&tx={quote(tx, safe='')}&p={B2C_POLICY}",
            headers={"Referer": authorize_url},
        )
        next_url = confirmed.headers.get("location") or confirmed.headers.get("Location")
        if confirmed.status_code != 302 or not next_url:
            raise login_flow_failed("Confirmation", "no redirect received")

        # Callback into the storefront and on to the storefront page; each hop sets cookies.
        for _ in range(MAX_REDIRECTS):
            res = hop("Callback", urljoin(base + "/", next_url))
            next_url = res.headers.get("location") or res.headers.get("Location")
            if res.status_code not in (301, 302, 303, 307, 308) or not next_url:
                break

        host = urlparse(base).hostname or ""
        if not any((c.domain or "").lstrip(".").endswith(host) for c in http.cookies):
            raise login_flow_failed("Callback", "login succeeded but no session cookies received")

        progress("Verifying session...")
        shop_id = shop_id_for(mode)
        session = Session(handle=http, cart_id=None, mode=mode, strategy="api", shop_id=shop_id)
        try:
            res = self._active_cart_id(self.client(session), shop_id)
        except CartError as e:
            raise verification_failed(f"cart lookup failed: {e.context}") from e
        if res.expired:
            raise verification_failed("store rejected the new session")
        cart_id = res.data("shopBasket", "cartId")
        if not cart_id:
            raise verification_failed("could not retrieve cart ID")

        session.cart_id = cart_id
        progress(f"Fast session ready (cart: {cart_id[:8]}...)")
        return session

    # --- mode ---

    def ensure_mode(self, session: Session, mode: Mode, progress: Callable[[str], None] = _quiet) -> Session:
        desired_shop = shop_id_for(mode)
        if session.mode == mode and session.shop_id == desired_shop:
            return session

        progress(f"Switching to {mode_label(mode)} mode...")
        client = self.client(session)
        self._checked(self._retry(lambda: client.mutate("VisitShop", {"shopId": desired_shop})))

        # Cart ids are per shop, so the old one is useless after the switch.
        res = self._checked(self._active_cart_id(client, desired_shop))
        new_cart_id = res.data("shopBasket", "cartId")
        if new_cart_id:
            session.cart_id = new_cart_id
        session.shop_id = desired_shop
        session.mode = mode
        progress(f"Switched to {mode_label(mode)} mode")
        return session

    # --- catalog ---

    def _search_ids(self, query: str, session: Session, first: int, tag: str = "") -> list[str]:
        client = self.client(session)
        variables = {
            "filters": [],
            "action": None,
            "query": query,
            "pageViewId": f"fast-{self._now_ms()}{tag}",
            "retailerInventorySessionToken": "",
            "elevatedProductId": None,
            "searchSource": "search",
            "disableReformulation": False,
            "disableLlm": False,
            "forceInspiration": False,
            "orderBy": "bestMatch",
            "clusterId": None,
            "includeDebugInfo": False,
            "clusteringStrategy": None,
            "contentManagementSearchParams": {"itemGridColumnCount": 5},
            **self._location_vars(session),
            "first": first,
        }
        res = self._checked(self._retry(lambda: client.query("SearchResultsPlacements", variables)))
        return scan_item_ids(res.body, limit=first)

    def _details(self, ids: list[str], session: Session) -> dict[str, ProductCandidate]:
        if not ids:
            return {}
        client = self.client(session)
        res = self._checked(
            self._retry(lambda: client.query("Items", {"ids": ids, **self._location_vars(session)}))
        )
        return parse_item_details(res.data("items") or [])

    def search(self, query: str, session: Session, limit: int = SEARCH_LIMIT) -> list[ProductCandidate]:
        ids = self._search_ids(query, session, first=limit)
        details = self._details(ids, session)
        return [details.get(i) or ProductCandidate(product_id=i, name=i) for i in ids]

    def resolve(self, item: DesiredItem, session: Session, index: int = 0) -> ResolvedMatch:
        try:
            ids = self._search_ids(item.search_text, session, first=SEARCH_CANDIDATES, tag=f"-{index}")
        except SessionExpired:
            raise
        except CartError as e:
            return ResolvedMatch(item=item, resolution_error=e.context)
        if not ids:
            return ResolvedMatch(item=item)
        return ResolvedMatch(item=item, catalog_entry_id=ids[0])

    def resolve_group(self, items: list[tuple[int, DesiredItem]], session: Session) -> list[ResolvedMatch]:
        """Resolve one group concurrently (one worker per item)."""
        with ThreadPoolExecutor(max_workers=max(1, len(items))) as pool:
            futures = [pool.submit(self.resolve, item, session, idx) for idx, item in items]
            return [f.result() for f in futures]

    def describe(self, matches: list[ResolvedMatch], session: Session) -> list[ResolvedMatch]:
        """Fill in name/price/size for found matches with one Items query."""
        ids = [m.catalog_entry_id for m in matches if m.catalog_entry_id]
        if not ids:
            return matches
        try:
            details = self._details(list(dict.fromkeys(ids)), session)
        except SessionExpired:
            raise
        except CartError as e:
            logger.warning("Could not fetch product details: %s", e.context)
            return matches
        out = []
        for m in matches:
            d = details.get(m.catalog_entry_id or "")
            out.append(replace(m, name=d.name, price=d.price, size=d.size) if d else m)
        return out

    # --- cart ---

    def _update_cart(
        self, session: Session, updates: list[dict[str, Any]], *, retry: bool = True
    ) -> GraphQLResponse:
        client = self.client(session)
        variables = {
            "cartItemUpdates": updates,
            "cartType": cart_type_for(session.mode),
            "requestTimestamp": self._now_ms(),
            "cartId": session.cart_id,
        }

        def send() -> GraphQLResponse:
            return client.mutate("UpdateCartItemsMutation", variables)

        return self._checked(self._retry(send) if retry else send())

    @staticmethod
    def _update(item_id: str, quantity: int) -> dict[str, Any]:
        return {"itemId": item_id, "quantity": quantity, "quantityType": "each", "trackingParams": {}}

    def apply_add(self, match: ResolvedMatch, quantity: int, session: Session) -> None:
        # Single attempt; callers wrap this in with_retry.
        res = self._update_cart(session, [self._update(match.catalog_entry_id or "", quantity)], retry=False)
        if res.error_message:
            raise rejected(res.error_message)

    def apply_remove(self, catalog_entry_id: str, session: Session) -> None:
        res = self._update_cart(session, [self._update(catalog_entry_id, 0)])
        if res.error_message:
            raise rejected(res.error_message)

    def _raw_cart(self, session: Session) -> list[dict[str, Any]]:
        res = self._update_cart(session, [self._update(SENTINEL_ITEM_ID, 0)])
        if res.error_message:
            raise rejected(f"GraphQL error: {res.error_message}")
        shape = cart_shapes.classify(res.body)
        if isinstance(shape, cart_shapes.UnrecognizedShape):
            logger.warning("Unexpected cart response (status=%s):\n%s", res.status, shape.snippet)
            raise parse_exhausted(f"Unexpected response structure, no cartItems found: {shape.snippet}")
        return shape.raw_items

    def _line_items(self, raw_items: list[dict[str, Any]], session: Session) -> list[CartLineItem]:
        ids = [ci["itemId"] for ci in raw_items if ci.get("itemId")]
        try:
            details = self._details(ids, session)
        except SessionExpired:
            raise
        except CartError as e:
            logger.warning("Could not fetch cart item details: %s", e.context)
            details = {}
        out = []
        for ci in raw_items:
            item_id = str(ci.get("itemId") or "")
            d = details.get(item_id)
            out.append(
                CartLineItem(
                    catalog_entry_id=item_id,
                    name=(d.name if d else "") or item_id,
                    price=d.price if d else "",
                    size=d.size if d else "",
                    quantity=line_quantity(ci.get("quantity"), item_id),
                )
            )
        return out

    def read_cart(self, session: Session, progress: Callable[[str], None] = _quiet) -> list[CartLineItem]:
        progress("Fetching cart via GraphQL...")
        raw_items = self._raw_cart(session)
        if not raw_items:
            progress("Cart is empty.")
            return []
        progress(f"Fetching details for {len(raw_items)} cart item(s)...")
        items = self._line_items(raw_items, session)
        progress(f"Found {len(items)} item(s) in cart.")
        return items

    def remove_all(self, session: Session, progress: Callable[[str], None] = _quiet) -> int:
        progress("Fetching cart contents for removal...")
        raw_items = [ci for ci in self._raw_cart(session) if ci.get("itemId")]
        if not raw_items:
            progress("Cart is already empty.")
            return 0

        progress(f"Removing {len(raw_items)} item(s) from cart...")
        res = self._update_cart(session, [self._update(ci["itemId"], 0) for ci in raw_items])
        shape = cart_shapes.classify(res.body)
        remaining = [] if isinstance(shape, cart_shapes.UnrecognizedShape) else shape.raw_items

        if remaining:
            progress(f"{len(remaining)} item(s) remain, removing individually...")
            for ci in remaining:
                if not ci.get("itemId"):
                    continue
                try:
                    self.apply_remove(ci["itemId"], session)
                except SessionExpired:
                    raise
                except CartError as e:
                    logger.warning("Could not remove %s: %s", ci["itemId"], e.context)

        progress(f"Removed {len(raw_items)} item(s) from cart.")
        return len(raw_items)
