import json

import pytest
import requests
from requests.cookies import RequestsCookieJar

from woodcart.tools.errors import (
    ApplicationRejection,
    LoginFlowError,
    ParseExhausted,
    SessionExpired,
    TransportError,
    VerificationError,
)
from woodcart.tools.models import DesiredItem, ResolvedMatch, Session
from woodcart.tools.settings import Settings


class _FakeResponse:
    def __init__(self, status=200, body=None, text=None, headers=None):
        self.status_code = status
        self._body = body
        self.text = text if text is not None else json.dumps(body)
        self.headers = headers or {}

    def json(self):
        if self._body is None:
            raise ValueError("not json")
        return self._body


class _FakeHttp:
    """Routes GraphQL calls by operation name.

    A route is a response, an exception to raise, or a callable taking the
    variables and returning either.
    """

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.calls = []
        self.headers = {}
        self.cookies = RequestsCookieJar()
        self.closed = False

    def _answer(self, operation, variables):
        self.calls.append((operation, variables))
        answer = self.routes[operation]
        if callable(answer):
            answer = answer(variables)
        if isinstance(answer, Exception):
            raise answer
        return answer

    def get(self, url, params=None, **kwargs):
        return self._answer(params["operationName"], json.loads(params["variables"]))

    def post(self, url, **kwargs):
        body = kwargs["json"]
        return self._answer(body["operationName"], body["variables"])

    def close(self):
        self.closed = True

    def operations(self):
        return [op for op, _ in self.calls]


def _backend():
    from woodcart.tools.api import ApiBackend

    return ApiBackend(Settings(username="u", password="p"), sleep=lambda _s: None, clock=lambda: 1700000000.0)


def _session(http, mode="instore"):
    from woodcart.tools.api import shop_id_for

    return Session(handle=http, cart_id="cart-1", mode=mode, strategy="api", shop_id=shop_id_for(mode))


def _cart(raw_items):
    return _FakeResponse(body={"data": {"updateCartItems": {"cart": {"cartItemCollection": {"cartItems": raw_items}}}}})


def _item(item_id):
    return DesiredItem(label=item_id, search_text=item_id)


# --- mode ------------------------------------------------------------------


def test_ensure_mode_is_a_no_op_when_already_there():
    http = _FakeHttp()
    session = _session(http)
    _backend().ensure_mode(session, "instore")
    assert http.calls == []


def test_ensure_mode_visits_shop_and_refreshes_cart_id():
    http = _FakeHttp(
        {
            "VisitShop": _FakeResponse(body={"data": {"visitShop": {"id": "755260"}}}),
            "ActiveCartId": _FakeResponse(body={"data": {"shopBasket": {"cartId": "cart-pickup"}}}),
        }
    )
    session = _session(http, "instore")
    _backend().ensure_mode(session, "pickup")

    assert http.operations() == ["VisitShop", "ActiveCartId"]
    assert http.calls[0][1] == {"shopId": "755260"}
    assert session.mode == "pickup"
    assert session.shop_id == "755260"
    assert session.cart_id == "cart-pickup"


def test_ensure_mode_expired_session_raises():
    http = _FakeHttp({"VisitShop": _FakeResponse(status=401, body={})})
    with pytest.raises(SessionExpired):
        _backend().ensure_mode(_session(http), "pickup")


# --- catalog ---------------------------------------------------------------


def test_resolve_takes_first_candidate():
    body = {"data": {"placements": [{"items": ["items_1022-100", "items_1022-200", "items_1022-100"]}]}}
    http = _FakeHttp({"SearchResultsPlacements": _FakeResponse(body=body)})
    match = _backend().resolve(_item("bananas"), _session(http))

    assert match.catalog_entry_id == "items_1022-100"
    assert match.resolution_error is None
    variables = http.calls[0][1]
    assert variables["query"] == "bananas"
    assert variables["first"] == 4
    assert variables["shopId"] == "755261"


def test_resolve_with_no_results_is_not_an_error():
    http = _FakeHttp({"SearchResultsPlacements": _FakeResponse(body={"data": {"placements": []}})})
    match = _backend().resolve(_item("unicorn milk"), _session(http))
    assert not match.found
    assert match.resolution_error is None


def test_resolve_network_failure_is_retried_once_then_recorded():
    http = _FakeHttp({"SearchResultsPlacements": requests.ConnectionError("connection reset")})
    match = _backend().resolve(_item("bananas"), _session(http))

    assert not match.found
    assert "connection reset" in match.resolution_error
    assert len(http.calls) == 2


def test_resolve_expired_session_propagates():
    http = _FakeHttp({"SearchResultsPlacements": _FakeResponse(status=401, body={})})
    with pytest.raises(SessionExpired):
        _backend().resolve(_item("bananas"), _session(http))


def test_resolve_group_keeps_input_order():
    def search(variables):
        return _FakeResponse(body={"data": {"ids": [f"items_1-{variables['query']}"]}})

    http = _FakeHttp({"SearchResultsPlacements": search})
    group = [(0, _item("11")), (1, _item("22")), (2, _item("33"))]
    matches = _backend().resolve_group(group, _session(http))
    assert [m.catalog_entry_id for m in matches] == ["items_1-11", "items_1-22", "items_1-33"]


def test_describe_fills_details_and_tolerates_failure():
    items = {
        "data": {
            "items": [
                {
                    "id": "items_1-1",
                    "name": "Organic Bananas",
                    "size": "1 lb",
                    "viewSection": {"pricing": {"price": {"text": "$0.59"}}},
                }
            ]
        }
    }
    http = _FakeHttp({"Items": _FakeResponse(body=items)})
    matches = [
        ResolvedMatch(item=_item("bananas"), catalog_entry_id="items_1-1"),
        ResolvedMatch(item=_item("nothing")),
    ]
    described = _backend().describe(matches, _session(http))
    assert (described[0].name, described[0].price, described[0].size) == ("Organic Bananas", "$0.59", "1 lb")
    assert described[1] is matches[1]

    broken = _FakeHttp({"Items": _FakeResponse(status=503, text="down")})
    assert _backend().describe(matches, _session(broken)) == matches


def test_search_falls_back_to_id_when_details_missing():
    http = _FakeHttp(
        {
            "SearchResultsPlacements": _FakeResponse(body={"x": "items_1-1 items_1-2"}),
            "Items": _FakeResponse(body={"data": {"items": [{"id": "items_1-1", "name": "Eggs", "price": "$2.99"}]}}),
        }
    )
    results = _backend().search("eggs", _session(http))
    assert [(c.product_id, c.name) for c in results] == [("items_1-1", "Eggs"), ("items_1-2", "items_1-2")]
    assert results[0].price == "$2.99"


# --- cart writes -----------------------------------------------------------


def test_apply_add_sends_quantity_and_cart_type():
    http = _FakeHttp({"UpdateCartItemsMutation": _cart([])})
    session = _session(http, "pickup")
    _backend().apply_add(ResolvedMatch(item=_item("x"), catalog_entry_id="items_1-9"), 3, session)

    variables = http.calls[0][1]
    assert variables["cartItemUpdates"][0]["itemId"] == "items_1-9"
    assert variables["cartItemUpdates"][0]["quantity"] == 3
    assert variables["cartType"] == "grocery"
    assert variables["cartId"] == "cart-1"
    assert variables["requestTimestamp"] == 1700000000000


def test_apply_add_graphql_error_is_a_rejection():
    http = _FakeHttp({"UpdateCartItemsMutation": _FakeResponse(body={"errors": [{"message": "Item unavailable"}]})})
    with pytest.raises(ApplicationRejection) as exc:
        _backend().apply_add(ResolvedMatch(item=_item("x"), catalog_entry_id="items_1-9"), 1, _session(http))
    assert exc.value.context == "Item unavailable"


def test_apply_add_forbidden_means_expired():
    http = _FakeHttp({"UpdateCartItemsMutation": _FakeResponse(status=403, body={})})
    with pytest.raises(SessionExpired):
        _backend().apply_add(ResolvedMatch(item=_item("x"), catalog_entry_id="items_1-9"), 1, _session(http))


def test_apply_add_server_error_is_single_attempt():
    http = _FakeHttp({"UpdateCartItemsMutation": _FakeResponse(status=500, text="oops")})
    with pytest.raises(TransportError):
        _backend().apply_add(ResolvedMatch(item=_item("x"), catalog_entry_id="items_1-9"), 1, _session(http))
    assert len(http.calls) == 1


# --- cart reads ------------------------------------------------------------


def test_read_cart_uses_sentinel_update_and_details():
    http = _FakeHttp(
        {
            "UpdateCartItemsMutation": _cart([{"itemId": "items_1-1", "quantity": 2}, {"itemId": "items_1-2"}]),
            "Items": _FakeResponse(body={"data": {"items": [{"id": "items_1-1", "name": "Eggs"}]}}),
        }
    )
    items = _backend().read_cart(_session(http))

    sentinel = http.calls[0][1]["cartItemUpdates"][0]
    assert (sentinel["itemId"], sentinel["quantity"]) == ("0", 0)
    assert [(i.catalog_entry_id, i.name, i.quantity) for i in items] == [
        ("items_1-1", "Eggs", 2),
        ("items_1-2", "items_1-2", 1),
    ]


@pytest.mark.parametrize(
    "cart",
    [
        {"items": [{"itemId": "items_1-1", "quantity": 1}]},
        {"cartItems": [{"itemId": "items_1-1", "quantity": 1}]},
    ],
)
def test_read_cart_accepts_older_shapes(cart):
    http = _FakeHttp(
        {
            "UpdateCartItemsMutation": _FakeResponse(body={"data": {"updateCartItems": {"cart": cart}}}),
            "Items": _FakeResponse(body={"data": {"items": []}}),
        }
    )
    assert [i.catalog_entry_id for i in _backend().read_cart(_session(http))] == ["items_1-1"]


def test_read_cart_empty():
    http = _FakeHttp({"UpdateCartItemsMutation": _cart([])})
    assert _backend().read_cart(_session(http)) == []
    assert http.operations() == ["UpdateCartItemsMutation"]


def test_read_cart_unrecognized_shape():
    http = _FakeHttp({"UpdateCartItemsMutation": _FakeResponse(body={"data": {"somethingNew": {}}})})
    with pytest.raises(ParseExhausted):
        _backend().read_cart(_session(http))


def test_remove_all_zeroes_every_line():
    def update(variables):
        if variables["cartItemUpdates"][0]["itemId"] == "0":
            return _cart([{"itemId": "items_1-1", "quantity": 2}, {"itemId": "items_1-2", "quantity": 1}])
        return _cart([])

    http = _FakeHttp({"UpdateCartItemsMutation": update})
    removed = _backend().remove_all(_session(http))

    assert removed == 2
    batch = http.calls[1][1]["cartItemUpdates"]
    assert [(u["itemId"], u["quantity"]) for u in batch] == [("items_1-1", 0), ("items_1-2", 0)]
    assert len(http.calls) == 2


def test_close_closes_http_session():
    http = _FakeHttp()
    _backend().close(_session(http))
    assert http.closed


# --- login -----------------------------------------------------------------


LOGIN_PAGE = """
<script>
var SETTINGS = {"csrf":"Q1NSRi1UT0tFTi12YWx1ZQ==","transId":"StateProperties=eyJUSUQiOiIxIn0"};
</script>
"""


class _FakeLoginHttp(_FakeHttp):
    """The B2C hop sequence. Keyword arguments replace one hop's answer to break it."""

    def __init__(
        self,
        verdict=None,
        *,
        init=None,
        page_text=LOGIN_PAGE,
        confirmed=None,
        set_cookie=True,
        active_cart=None,
    ):
        super().__init__(
            {"ActiveCartId": active_cart or _FakeResponse(body={"data": {"shopBasket": {"cartId": "cart-new"}}})}
        )
        self.verdict = verdict if verdict is not None else {"status": "200"}
        self.init = init or _FakeResponse(
            302, text="", headers={"location": "https://mywoodmans.b2clogin.com/authorize?x=1"}
        )
        self.page_text = page_text
        self.confirmed = confirmed or _FakeResponse(
            302, text="", headers={"location": "https://shopwoodmans.com/rest/sso/callback?code=abc"}
        )
        self.set_cookie = set_cookie
        self.urls = []

    def get(self, url, params=None, **kwargs):
        if url.endswith("/graphql"):
            return super().get(url, params=params, **kwargs)
        self.urls.append(url)
        if url.endswith("/rest/sso/auth/woodmans/init"):
            return self.init
        if "/authorize" in url:
            return _FakeResponse(200, text=self.page_text)
        if "/confirmed" in url:
            return self.confirmed
        if "/callback" in url:
            if self.set_cookie:
                self.cookies.set("_instacart_session", "abc", domain="shopwoodmans.com")
            return _FakeResponse(302, text="", headers={"location": "/store/woodmans-food-markets/storefront"})
        return _FakeResponse(200, text="<html></html>")

    def post(self, url, **kwargs):
        self.urls.append(url)
        self.posted = kwargs
        return _FakeResponse(200, text=json.dumps(self.verdict))


def _login(http):
    from woodcart.tools.api import ApiBackend

    backend = ApiBackend(Settings(username="me@example.com", password="pw"), http_factory=lambda: http)
    return backend.login(backend.settings, "instore")


def test_login_replays_b2c_flow():
    from woodcart.tools.api import ApiBackend

    http = _FakeLoginHttp()
    backend = ApiBackend(Settings(username="me@example.com", password="pw"), http_factory=lambda: http)
    messages = []
    session = backend.login(backend.settings, "pickup", messages.append)

    assert session.cart_id == "cart-new"
    assert session.mode == "pickup"
    assert session.shop_id == "755260"
    assert session.handle is http
    assert http.posted["headers"]["X-CSRF-TOKEN"] == "Q1NSRi1UT0tFTi12YWx1ZQ=="
    assert http.posted["data"]["email"] == "me@example.com"
    assert any("SelfAsserted" in u for u in http.urls)
    assert http.urls[-1] == "https://shopwoodmans.com/store/woodmans-food-markets/storefront"
    assert "Signing in..." in messages


def test_login_bad_password():
    from woodcart.tools.api import ApiBackend

    http = _FakeLoginHttp({"status": "400", "message": "Your password is incorrect."})
    backend = ApiBackend(Settings(username="me@example.com", password="wrong"), http_factory=lambda: http)
    with pytest.raises(LoginFlowError) as exc:
        backend.login(backend.settings, "instore")
    assert "Your password is incorrect." in exc.value.context
    assert http.calls == []


@pytest.mark.parametrize(
    "http, step",
    [
        (_FakeLoginHttp(init=_FakeResponse(200, text="<html></html>")), "SSO init"),
        (_FakeLoginHttp(page_text="<html>maintenance</html>"), "Login page"),
        (_FakeLoginHttp(page_text='<script>var SETTINGS = {"csrf":"Q1NSRi1UT0tFTi12YWx1ZQ=="};</script>'), "Login page"),
        (_FakeLoginHttp(confirmed=_FakeResponse(200, text="<html></html>")), "Confirmation"),
        (_FakeLoginHttp(set_cookie=False), "Callback"),
    ],
)
def test_login_missing_hop_is_a_flow_error(http, step):
    with pytest.raises(LoginFlowError) as exc:
        _login(http)
    assert exc.value.context.startswith(f"{step}:")
    assert http.calls == []


def test_login_transport_failure_names_the_step():
    class _Down(_FakeLoginHttp):
        def post(self, url, **kwargs):
            raise requests.ConnectionError("connection refused")

    with pytest.raises(LoginFlowError) as exc:
        _login(_Down())
    assert exc.value.context == "Credentials: connection refused"


@pytest.mark.parametrize(
    "active_cart",
    [
        _FakeResponse(status=401, body={}),
        _FakeResponse(status=403, body={}),
        _FakeResponse(body={"data": {"shopBasket": {}}}),
        _FakeResponse(body={"data": {}}),
    ],
)
def test_login_unverifiable_session(active_cart):
    with pytest.raises(VerificationError):
        _login(_FakeLoginHttp(active_cart=active_cart))


def test_login_cart_lookup_network_failure_is_verification_error():
    http = _FakeLoginHttp(active_cart=_FakeResponse(status=502, text="bad gateway"))
    with pytest.raises(VerificationError) as exc:
        _login(http)
    assert "cart lookup failed" in exc.value.context


def test_read_cart_keeps_weighted_and_string_quantities():
    http = _FakeHttp(
        {
            "UpdateCartItemsMutation": _cart(
                [
                    {"itemId": "items_1-1", "quantity": 0.5},
                    {"itemId": "items_1-2", "quantity": "1.5"},
                    {"itemId": "items_1-3", "quantity": "3"},
                    {"itemId": "items_1-4"},
                ]
            ),
            "Items": _FakeResponse(body={"data": {"items": []}}),
        }
    )
    items = _backend().read_cart(_session(http))
    assert [i.quantity for i in items] == [0.5, 1.5, 3, 1]


def test_read_cart_unreadable_quantity_is_a_parse_failure():
    http = _FakeHttp(
        {
            "UpdateCartItemsMutation": _cart([{"itemId": "items_1-1", "quantity": "half"}]),
            "Items": _FakeResponse(body={"data": {"items": []}}),
        }
    )
    with pytest.raises(ParseExhausted) as exc:
        _backend().read_cart(_session(http))
    assert "'half'" in exc.value.context


def test_unreadable_quantity_keeps_add_outcomes():
    from woodcart.tools.orchestrator import Orchestrator
    from woodcart.tools.session import SessionStore

    http = _FakeHttp(
        {
            "ActiveCartId": _FakeResponse(body={"data": {"shopBasket": {"cartId": "cart-1"}}}),
            "SearchResultsPlacements": _FakeResponse(body={"ids": ["items_1-7"]}),
            "Items": _FakeResponse(body={"data": {"items": []}}),
            "UpdateCartItemsMutation": lambda v: _cart(
                [{"itemId": "items_1-7", "quantity": {"weird": True}}]
                if v["cartItemUpdates"][0]["itemId"] == "0"
                else []
            ),
        }
    )
    backend = _backend()
    store = SessionStore()
    store.replace(_session(http), backend)

    summary = Orchestrator(backend, store, backend.settings, sleep=lambda _s: None).run([_item("milk")])
    assert [o.status for o in summary.outcomes] == ["added"]
    assert summary.cart_items is None
    assert summary.reconcile_error.startswith("Cart contents could not be read")
