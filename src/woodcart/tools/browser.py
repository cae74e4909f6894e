"""Woodmans browser automation tools (Playwright).

Playwright is a hard dependency for this project. We import it normally and
fail fast if it isn't installed.

The storefront is Instacart's white-label site: class names are hashed, test
ids come and go, and blocking dialogs appear at random. Every lookup here is
an ordered cascade of selectors, first visible match wins.
"""

from __future__ import annotations

import json
import logging
import re
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from woodcart.tools.cart_parser import (
    CartPanelSnapshot,
    name_from_slug,
    parse_cart_panel,
)
from woodcart.tools.errors import (
    browser_setup_required,
    login_flow_failed,
    mode_switch_failed,
    panel_not_found,
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
from woodcart.tools.settings import Settings


logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

SEARCH_LIMIT = 12
# Default for every Playwright action and navigation.
TIMEOUT_MS = 15000
MODE_DIALOG_TEXT = "How would you like to shop"

Candidate = Callable[[Any], Any]

LOGIN_LINKS: list[Candidate] = [
    lambda p: p.locator('a:has-text("Log In")'),
    lambda p: p.locator('a:has-text("Sign In")'),
    lambda p: p.locator('button:has-text("Log In")'),
    lambda p: p.locator('button:has-text("Sign In")'),
    lambda p: p.locator('[data-testid*="login"]'),
    lambda p: p.locator('[data-testid*="signin"]'),
    lambda p: p.locator('a[href*="login"]'),
    lambda p: p.locator('a[href*="signin"]'),
    lambda p: p.locator('a[href*="sign-in"]'),
]

EMAIL_FIELDS: list[Candidate] = [
    lambda p: p.locator('input[type="email"]'),
    lambda p: p.locator('input[name="email"]'),
    lambda p: p.locator('input[name="username"]'),
    lambda p: p.locator('input[id*="email" i]'),
    lambda p: p.locator('input[id*="user" i]'),
    lambda p: p.locator('input[placeholder*="email" i]'),
    lambda p: p.locator('input[autocomplete="email"]'),
    lambda p: p.locator('input[autocomplete="username"]'),
]

PASSWORD_FIELDS: list[Candidate] = [
    lambda p: p.locator('input[type="password"]'),
    lambda p: p.locator('input[name="password"]'),
    lambda p: p.locator('input[id*="password" i]'),
    lambda p: p.locator('input[autocomplete="current-password"]'),
]

SUBMIT_BUTTONS: list[Candidate] = [
    lambda p: p.locator('button[type="submit"]'),
    lambda p: p.locator('button:has-text("Log In")'),
    lambda p: p.locator('button:has-text("Sign In")'),
    lambda p: p.locator('input[type="submit"]'),
    lambda p: p.locator('button:has-text("Submit")'),
]

ZIP_FIELDS: list[Candidate] = [
    lambda p: p.locator('input[placeholder*="ZIP" i]'),
    lambda p: p.locator('input[aria-label*="ZIP" i]'),
    lambda p: p.locator('input[name*="zip" i]'),
    lambda p: p.locator('input[inputmode="numeric"]'),
    lambda p: p.locator('input[type="text"]'),
]

START_SHOPPING_BUTTONS: list[Candidate] = [
    lambda p: p.locator('button:has-text("Start Shopping")'),
    lambda p: p.locator('button:has-text("Shop")'),
    lambda p: p.locator('a:has-text("Start Shopping")'),
    lambda p: p.locator('button[type="submit"]'),
]

POPUP_CLOSERS = [
    'button[aria-label="Close"]',
    'button:has-text("Close")',
    'button:has-text("Not now")',
    'button:has-text("Dismiss")',
    '[data-testid="modal-close"]',
    'button:has-text("Got it")',
    'button:has-text("Confirm")',
    '.__reakit-portal button[aria-label="Close"]',
]

SEARCH_INPUTS: list[Candidate] = [
    lambda p: p.locator("#search-bar-input"),
    lambda p: p.get_by_role("search").locator("input"),
    lambda p: p.get_by_placeholder(re.compile("search", re.IGNORECASE)),
    lambda p: p.locator('input[type="search"]'),
    lambda p: p.locator('input[aria-label*="search" i]'),
    lambda p: p.locator('input[placeholder*="Search" i]'),
    lambda p: p.locator('[data-testid*="search"] input'),
    lambda p: p.locator('header input[type="text"]'),
]

ADD_BUTTONS: list[Candidate] = [
    lambda p: p.get_by_role("button", name=re.compile(r"^add$", re.IGNORECASE)),
    lambda p: p.get_by_role("button", name=re.compile("add to cart", re.IGNORECASE)),
    lambda p: p.locator('button:has-text("Add")'),
    lambda p: p.locator('[data-testid*="add"] button'),
    lambda p: p.locator('[aria-label*="Add to cart" i]'),
    lambda p: p.locator('[aria-label*="add" i][role="button"]'),
]

INCREMENT_BUTTONS: list[Candidate] = [
    lambda p: p.get_by_role("button", name=re.compile("increment", re.IGNORECASE)),
    lambda p: p.get_by_role("button", name=re.compile("increase", re.IGNORECASE)),
    lambda p: p.locator('button[aria-label*="increment" i]'),
    lambda p: p.locator('button[aria-label*="increase" i]'),
    lambda p: p.locator('button:has-text("+")'),
]

CART_BUTTONS: list[Candidate] = [
    lambda p: p.locator('[aria-label*="View Cart" i]'),
    lambda p: p.locator('button[aria-label*="cart" i]'),
    lambda p: p.locator('[aria-label*="cart" i]'),
    lambda p: p.locator('[data-testid*="cart"]'),
]

PANEL_CLOSERS = [
    '[role="dialog"] button[aria-label="Close"]',
    '.__reakit-portal button[aria-label="Close"]',
    '[role="dialog"] button[aria-label*="close" i]',
    'button[aria-label="Close cart"]',
]

IN_CART_SELECTOR = 'button[aria-label^="Decrement quantity" i], button[aria-label^="Remove " i]'
LOGIN_TO_ADD_SELECTOR = 'button:has-text("Log in to add")'
PANEL_CONTENT_SELECTOR = (
    '[role="dialog"] a[href*="/products/"], .__reakit-portal a[href*="/products/"], '
    '[role="dialog"] img[src*="product"], [role="dialog"] li'
)

MANAGE_BUTTONS: list[Candidate] = [
    lambda p: p.locator('button:has-text("Manage")'),
    lambda p: p.locator('a:has-text("Manage")'),
    lambda p: p.locator('button:has-text("Edit")'),
    lambda p: p.locator('a:has-text("Edit")'),
]
REMOVE_ALL_BUTTONS: list[Candidate] = [
    lambda p: p.locator('button:has-text("Remove all items")'),
    lambda p: p.locator('button:has-text("Remove all")'),
]
REMOVE_ALL_CONFIRM: list[Candidate] = [
    lambda p: p.locator('button:has-text("Remove all")'),
    lambda p: p.locator('button:has-text("Confirm")'),
    lambda p: p.locator('button:has-text("Yes")'),
    lambda p: p.locator('[role="dialog"] button:has-text("Remove")'),
]
ITEM_REMOVE_BUTTONS: list[Candidate] = [
    lambda p: p.locator('[role="dialog"] button[aria-label^="Remove " i]'),
    lambda p: p.locator('button[aria-label^="Decrement quantity" i]'),
]
ALERT_CONFIRM: list[Candidate] = [
    lambda p: p.locator('[role="alertdialog"] button:has-text("Remove")'),
    lambda p: p.locator('[role="alertdialog"] button:has-text("Confirm")'),
    lambda p: p.locator('[role="alertdialog"] button:has-text("Yes")'),
]

_PRICE_RE = re.compile(r"\$\d+\.\d{2}")
_SIZE_RE = re.compile(r"\d+(?:\.\d+)?\s*(?:oz|fl oz|lb|gal|ct|pk|ml|l|qt|pt)\b", re.IGNORECASE)
_COUNT_RE = re.compile(r"(\d+)")


# --- in-page scripts -------------------------------------------------------

LOGIN_VISIBLE_JS = """() => {
  for (const el of document.querySelectorAll('a, button')) {
    const text = (el.textContent || '').trim();
    if (/^(Log In|Sign In)/i.test(text) && text.length < 30) {
      const r = el.getBoundingClientRect();
      if (r.width > 0 && r.height > 0) return true;
    }
  }
  return false;
}"""

MODE_INDICATOR_JS = """() => {
  const found = [];
  let mode = 'unknown';
  for (const btn of document.querySelectorAll('button')) {
    const text = btn.textContent.trim();
    if (!/^(Delivery|Pickup|In-Store)/i.test(text) || text.length >= 60) continue;
    const r = btn.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) continue;
    const current = btn.getAttribute('aria-current');
    const active = current === 'true' || current === 'page';
    const label = text.match(/^(Delivery|Pickup|In-Store)/i)[0];
    found.push({label, active});
    if (active) mode = label;
  }
  return {mode, buttons: found};
}"""

CLOSE_PORTALS_JS = """() => {
  for (const p of document.querySelectorAll('.__reakit-portal')) {
    const btn = p.querySelector('button[aria-label="Close"], button[aria-label="close"]');
    if (btn) btn.click();
  }
}"""

MODE_DIALOG_GONE_JS = """(text) => {
  for (const d of document.querySelectorAll('[role="dialog"]')) {
    if ((d.innerText || '').includes(text)) return false;
  }
  return true;
}"""

RESULT_LINKS_JS = """(limit) => {
  const out = [];
  for (const a of document.querySelectorAll('a[href*="/products/"]')) {
    if (out.length >= limit * 3) break;
    const card = a.closest('li') || a.parentElement;
    out.push({href: a.getAttribute('href') || '', text: card ? (card.innerText || '') : ''});
  }
  return out;
}"""

PANEL_SNAPSHOT_JS = """() => {
  const diag = [];
  const markers = ['Shopping list', 'Your cart', 'Pickup order', 'Your order', 'Quantity:', 'checkout', 'Subtotal'];
  let container = null;

  const dialogs = document.querySelectorAll('[role="dialog"]');
  diag.push(`[role="dialog"] count: ${dialogs.length}`);
  for (const d of dialogs) {
    const t = d.innerText || '';
    const low = t.toLowerCase();
    if (markers.some(m => low.includes(m.toLowerCase())) || (t.includes('$') && t.length > 100)) {
      container = d;
      diag.push(`Found cart dialog by text match (text length: ${t.length})`);
      break;
    }
  }
  if (!container && dialogs.length > 0) {
    container = dialogs[dialogs.length - 1];
    diag.push('Using last dialog fallback');
  }
  if (!container) {
    for (const p of document.querySelectorAll('.__reakit-portal')) {
      const t = p.innerText || '';
      if (t.includes('$') && t.length > 50) { container = p; diag.push('Using reakit portal'); break; }
    }
  }
  if (!container) {
    const sel = 'aside, [class*="sidebar" i], [class*="drawer" i], [class*="SlideOver" i], [class*="cart-panel" i], [class*="rightPanel" i]';
    for (const c of document.querySelectorAll(sel)) {
      const t = c.innerText || '';
      if (t.includes('$') && t.length > 100) { container = c; diag.push(`Using sidebar element (${c.tagName})`); break; }
    }
  }
  if (!container) {
    diag.push('No cart container found anywhere');
    diag.push(`Page title: ${document.title}`);
    diag.push(`URL: ${window.location.href}`);
    return {found: false, text: '', html: '', diag};
  }
  return {found: true, text: container.innerText || '', html: container.outerHTML || '', diag};
}"""


# --- browser lifecycle -----------------------------------------------------


@dataclass
class BrowserHandle:
    playwright: Any
    browser: Any
    context: Any
    page: Any

    def close(self) -> None:
        stop_browser(self)


def start_browser(*, headless: bool = True) -> BrowserHandle:
    """Launch Chromium with a fresh, isolated context and stealth patches."""
    from playwright_stealth import Stealth

    try:
        playwright = sync_playwright().start()
    except PlaywrightError as e:
        raise browser_setup_required(str(e)) from e

    launch_args = [
        "--disable-blink-features=AutomationControlled",
        "--disable-dev-shm-usage",
        "--no-sandbox",
    ]
    try:
        browser = playwright.chromium.launch(headless=headless, args=launch_args)
    except PlaywrightError as e:
        playwright.stop()
        raise browser_setup_required(str(e)) from e

    context = browser.new_context(
        user_agent=USER_AGENT,
        viewport={"width": 1920, "height": 1080},
        locale="en-US",
        timezone_id="America/Chicago",
    )
    page = context.new_page()

    # Patch navigator fingerprints so the storefront's bot checks pass
    stealth = Stealth(
        navigator_platform_override="Win32",
        navigator_vendor_override="Google Inc.",
    )
    stealth.apply_stealth_sync(page)

    page.set_default_timeout(TIMEOUT_MS)
    return BrowserHandle(playwright=playwright, browser=browser, context=context, page=page)


def stop_browser(handle: Optional[BrowserHandle], *, sleep: Callable[[float], None] = time.sleep) -> None:
    """Gracefully stop the browser. Each step is best-effort."""
    if handle is None:
        return
    if handle.page is not None:
        try:
            handle.page.close()
        except PlaywrightError:
            pass
    if handle.browser is not None:
        try:
            sleep(0.5)  # Allow page close to settle
            handle.browser.close()
        except PlaywrightError:
            pass
    if handle.playwright is not None:
        try:
            handle.playwright.stop()
        except PlaywrightError:
            pass


# --- page helpers ----------------------------------------------------------


def first_visible(page: Any, candidates: list[Candidate], *, timeout: int = 2000) -> Any:
    for make in candidates:
        try:
            el = make(page).first
            if el.is_visible(timeout=timeout):
                return el
        except PlaywrightError:
            continue
    return None


def close_popups(page: Any, sleep: Callable[[float], None] = time.sleep) -> None:
    # Best-effort; failures are non-fatal.
    for selector in POPUP_CLOSERS:
        try:
            el = page.locator(selector).first
            if el.is_visible(timeout=1000):
                el.click(force=True)
                sleep(0.5)
        except PlaywrightError:
            pass


def login_visible(page: Any) -> bool:
    try:
        return bool(page.evaluate(LOGIN_VISIBLE_JS))
    except PlaywrightError:
        return False


def needs_store_gate(url: str) -> bool:
    return "/store/" not in url or "?next=" in url


def check_current_mode(page: Any) -> str:
    """Label of the active mode button ("Pickup", "In-Store", "Delivery") or "unknown"."""
    try:
        found = page.evaluate(MODE_INDICATOR_JS) or {}
    except PlaywrightError:
        return "unknown"
    logger.debug("Mode buttons: %s", json.dumps(found.get("buttons") or []))
    return found.get("mode") or "unknown"


def mode_from_label(label: str) -> Optional[Mode]:
    low = (label or "").lower()
    if low == "in-store":
        return "instore"
    if low == "pickup":
        return "pickup"
    return None


def dismiss_mode_dialog(page: Any, mode: str, sleep: Callable[[float], None] = time.sleep) -> bool:
    """Answer the "How would you like to shop?" dialog with ``mode``.

    Every click is scoped to the dialog: the page header has buttons with the
    same labels. Returns True when something was dismissed.
    """
    try:
        page.wait_for_selector(f'text="{MODE_DIALOG_TEXT}?"', timeout=5000)
    except PlaywrightError:
        return False

    scope = None
    for selector in (f'[role="dialog"]:has-text("{MODE_DIALOG_TEXT}")', f'.__reakit-portal:has-text("{MODE_DIALOG_TEXT}")'):
        try:
            loc = page.locator(selector).first
            if loc.is_visible(timeout=1000):
                scope = loc
                break
        except PlaywrightError:
            continue
    if scope is None:
        return False

    try:
        mode_btn = scope.locator(f'button:has-text("{mode_label(mode)}")').first
        if mode_btn.is_visible(timeout=2000):
            mode_btn.click(force=True)
            sleep(1)
    except PlaywrightError:
        pass

    confirm = first_visible(
        scope,
        [lambda s: s.locator('button:has-text("Confirm")'), lambda s: s.locator('button:has-text("Continue")')],
        timeout=3000,
    )
    if confirm is not None:
        try:
            confirm.click(force=True)
            page.wait_for_function(MODE_DIALOG_GONE_JS, arg=MODE_DIALOG_TEXT, timeout=5000)
        except PlaywrightError:
            sleep(2)
        return True

    close = first_visible(scope, [lambda s: s.locator('button[aria-label="Close"]')], timeout=1000)
    if close is not None:
        try:
            close.click(force=True)
            sleep(0.5)
            return True
        except PlaywrightError:
            return False
    return False


def candidates_from_links(links: list[dict[str, str]], limit: int = SEARCH_LIMIT) -> list[ProductCandidate]:
    """Turn scraped result links into candidates; name comes from the URL slug."""
    out: list[ProductCandidate] = []
    seen: set[str] = set()
    for link in links or []:
        href = link.get("href") or ""
        product_id, name = name_from_slug(href)
        if not product_id or len(name) < 3 or name in seen:
            continue
        seen.add(name)
        text = link.get("text") or ""
        price = _PRICE_RE.search(text)
        size = _SIZE_RE.search(text)
        out.append(
            ProductCandidate(
                product_id=product_id,
                name=name,
                price=price.group(0) if price else "",
                size=size.group(0) if size else "",
                url=href,
            )
        )
        if len(out) >= limit:
            break
    return out


def cart_badge_count(label: Optional[str]) -> int:
    """Item count from the cart button's aria-label; -1 when absent."""
    m = _COUNT_RE.search(label or "")
    return int(m.group(1)) if m else -1


def _quiet(_message: str) -> None:
    return None


# --- backend ---------------------------------------------------------------


class BrowserBackend:
    """Browser implementation of the cart contracts, one page per session."""

    strategy = "browser"

    def __init__(
        self,
        settings: Settings,
        *,
        launcher: Callable[..., BrowserHandle] = start_browser,
        sleep: Callable[[float], None] = time.sleep,
        on_failure: Optional[Callable[[Any, BaseException], None]] = None,
    ):
        self.settings = settings
        self._launcher = launcher
        self._sleep = sleep
        # Called with (page, error) before a failed login tears the browser down.
        self.on_failure = on_failure

    def _url(self, href: str) -> str:
        return href if href.startswith("http") else f"{self.settings.base_url}{href}"

    # --- session ---

    def probe(self, session: Session) -> bool:
        page = session.handle.page
        try:
            page.evaluate("() => true")
        except PlaywrightError:
            return False
        return not login_visible(page)

    def close(self, session: Session) -> None:
        stop_browser(session.handle, sleep=self._sleep)

    def login(self, settings: Settings, mode: Mode, progress: Callable[[str], None] = _quiet) -> Session:
        progress("Launching browser...")
        handle = self._launcher(headless=settings.headless)
        try:
            actual = self._sign_in(handle.page, settings, mode, progress)
        except PlaywrightError as e:
            self._abandon(handle, e)
            raise login_flow_failed("Browser", str(e)) from e
        except Exception as e:
            self._abandon(handle, e)
            raise
        return Session(handle=handle, cart_id=None, mode=actual, strategy="browser")

    def _abandon(self, handle: BrowserHandle, error: BaseException) -> None:
        if self.on_failure is not None:
            self.on_failure(handle.page, error)
        stop_browser(handle, sleep=self._sleep)

    def _sign_in(self, page: Any, settings: Settings, mode: Mode, progress: Callable[[str], None]) -> Mode:
        progress("Loading Woodmans store page...")
        page.goto(settings.base_url, wait_until="domcontentloaded", timeout=TIMEOUT_MS)
        self._sleep(2)

        if needs_store_gate(page.url):
            progress("Entering ZIP code...")
            self._zip_gate(page, settings.zip_code)

        progress("Setting shopping mode...")
        self._settle_dialogs(page, mode)

        if login_visible(page):
            progress("Logging in...")
            self._fill_login(page, settings)
            self._settle_dialogs(page, mode)

        progress("Verifying login status...")
        if login_visible(page):
            raise verification_failed("Log In control still visible after sign-in")

        # The cached mode is whatever the page shows, so a failed dialog
        # dismissal can't masquerade as the requested mode.
        label = check_current_mode(page)
        progress(f"Connected! (mode: {label})")
        return mode_from_label(label) or mode

    def _settle_dialogs(self, page: Any, mode: Mode) -> None:
        for _ in range(3):
            if not dismiss_mode_dialog(page, mode, self._sleep):
                break
            self._sleep(1)
        close_popups(page, self._sleep)

    def _zip_gate(self, page: Any, zip_code: str) -> None:
        field = first_visible(page, ZIP_FIELDS)
        if field is not None:
            field.fill(zip_code)
            self._sleep(0.5)
            field.press("Enter")
            self._sleep(2)
        button = first_visible(page, START_SHOPPING_BUTTONS)
        if button is not None:
            button.click()
            self._sleep(3)

    def _fill_login(self, page: Any, settings: Settings) -> None:
        link = first_visible(page, LOGIN_LINKS, timeout=3000)
        if link is None:
            raise login_flow_failed("Login link", "no Log In / Sign In control found")
        link.click()
        try:
            page.wait_for_selector('input[type="email"], input[name="email"], input[type="password"]', timeout=5000)
        except PlaywrightError:
            self._sleep(1.5)

        email = first_visible(page, EMAIL_FIELDS, timeout=3000)
        if email is None:
            raise login_flow_failed("Email", "email field not found")
        email.fill(settings.username)

        password = first_visible(page, PASSWORD_FIELDS, timeout=3000)
        if password is None:
            raise login_flow_failed("Password", "password field not found")
        password.fill(settings.password)

        submit = first_visible(page, SUBMIT_BUTTONS, timeout=3000)
        if submit is None:
            raise login_flow_failed("Submit", "submit button not found")
        submit.click()
        try:
            page.wait_for_url(re.compile(r"/store/"), timeout=10000)
        except PlaywrightError:
            self._sleep(3)
        self._sleep(2)

    # --- mode ---

    def _click_mode_button(self, page: Any, label: str) -> bool:
        try:
            btn = page.locator(f'button:has-text("{label}")').first
            if btn.is_visible(timeout=3000):
                btn.click(force=True)
                self._sleep(2)
                return True
        except PlaywrightError:
            pass
        return False

    def ensure_mode(self, session: Session, mode: Mode, progress: Callable[[str], None] = _quiet) -> Session:
        page = session.handle.page
        desired = mode_label(mode)

        self._settle_dialogs(page, mode)
        current = check_current_mode(page)
        progress(f"Current mode: {current}, desired: {desired}")

        for attempt in range(2):
            if current.lower() == desired.lower():
                session.mode = mode
                return session
            progress(f"{'Retrying' if attempt else 'Clicking'} {desired} button...")
            if not self._click_mode_button(page, desired):
                progress(f"Could not find {desired} button")
                break
            if dismiss_mode_dialog(page, mode, self._sleep):
                progress("Confirmed mode in dialog")
                self._sleep(2)
            close_popups(page, self._sleep)
            current = check_current_mode(page)
            progress(f"Mode after click: {current}")

        if current.lower() == desired.lower():
            session.mode = mode
            return session
        if current == "unknown":
            logger.warning("Mode indicator unreadable; assuming %s", desired)
            session.mode = mode
            return session
        raise mode_switch_failed(mode, current)

    # --- catalog ---

    def _prepare_search(self, page: Any, mode: str) -> Any:
        dismiss_mode_dialog(page, mode, self._sleep)
        close_popups(page, self._sleep)
        try:
            page.evaluate(CLOSE_PORTALS_JS)
        except PlaywrightError:
            pass
        self._sleep(0.3)
        return first_visible(page, SEARCH_INPUTS)

    def _run_search(self, page: Any, field: Any, query: str, limit: int) -> list[ProductCandidate]:
        field.click(force=True)
        field.fill("")
        self._sleep(0.1)
        field.fill(query)
        field.press("Enter")
        try:
            page.wait_for_selector('a[href*="/products/"]', timeout=8000)
        except PlaywrightError:
            self._sleep(2)
        self._sleep(0.5)
        links = page.evaluate(RESULT_LINKS_JS, limit) or []
        return [replace(c, url=self._url(c.url)) for c in candidates_from_links(links, limit)]

    def search(self, query: str, session: Session, limit: int = SEARCH_LIMIT) -> list[ProductCandidate]:
        page = session.handle.page
        field = self._prepare_search(page, session.mode)
        if field is None:
            raise transport_failed("Could not find search bar")
        try:
            return self._run_search(page, field, query, limit)
        except PlaywrightError as e:
            raise transport_failed(f"Search failed: {e}") from e

    def resolve(self, item: DesiredItem, session: Session, index: int = 0) -> ResolvedMatch:
        page = session.handle.page
        field = self._prepare_search(page, session.mode)
        if field is None:
            return ResolvedMatch(item=item, skip_reason="search bar not found")
        try:
            found = self._run_search(page, field, item.search_text, 1)
        except PlaywrightError as e:
            return ResolvedMatch(item=item, resolution_error=str(e))
        if not found:
            return ResolvedMatch(item=item)
        top = found[0]
        return ResolvedMatch(
            item=item,
            catalog_entry_id=top.product_id,
            name=top.name,
            price=top.price,
            size=top.size,
            url=top.url,
        )

    def resolve_group(self, items: list[tuple[int, DesiredItem]], session: Session) -> list[ResolvedMatch]:
        """One page, so a group is resolved one item at a time."""
        return [self.resolve(item, session, idx) for idx, item in items]

    def describe(self, matches: list[ResolvedMatch], session: Session) -> list[ResolvedMatch]:
        # Search result cards already carry name/price/size.
        return matches

    # --- cart ---

    def _increment_to(self, page: Any, target: int) -> int:
        for reached in range(1, target):
            btn = first_visible(page, INCREMENT_BUTTONS)
            if btn is None:
                return reached
            btn.click()
            self._sleep(0.3)
        return target

    def apply_add(self, match: ResolvedMatch, quantity: int, session: Session) -> None:
        page = session.handle.page
        if not match.url:
            raise rejected("no product page for this match")
        try:
            page.goto(self._url(match.url), wait_until="domcontentloaded", timeout=TIMEOUT_MS)
            self._sleep(2)

            if page.locator(LOGIN_TO_ADD_SELECTOR).count() > 0 or login_visible(page):
                raise session_expired("Store shows 'Log in to add'")

            if page.locator(IN_CART_SELECTOR).count() > 0:
                # The line's current count is not readable, so only a single unit counts as done.
                if quantity > 1:
                    raise rejected(f"already in cart; quantity not changed to {quantity}")
                logger.info("%s already in cart", match.display_name)
                return

            add = first_visible(page, ADD_BUTTONS, timeout=3000)
            if add is None:
                raise rejected("no Add button found")
            add.click()
            self._sleep(0.5)

            if quantity > 1:
                reached = self._increment_to(page, quantity)
                if reached < quantity:
                    logger.warning("%s: quantity stopped at %d of %d", match.display_name, reached, quantity)
            close_popups(page, self._sleep)
        except PlaywrightError as e:
            raise transport_failed(str(e)) from e

    def _open_panel(self, page: Any, mode: str, progress: Callable[[str], None]) -> int:
        button = None
        for _ in range(2):
            button = first_visible(page, CART_BUTTONS, timeout=5000)
            if button is not None:
                break
            close_popups(page, self._sleep)
            dismiss_mode_dialog(page, mode, self._sleep)
            self._sleep(2)
        if button is None:
            raise panel_not_found()

        label = button.get_attribute("aria-label")
        progress(f'Cart button label: "{label}"')
        count = cart_badge_count(label)
        button.click(force=True)
        try:
            page.wait_for_selector(PANEL_CONTENT_SELECTOR, timeout=8000)
        except PlaywrightError:
            self._sleep(3)
        self._sleep(2)
        return count

    def _close_panel(self, page: Any) -> None:
        for selector in PANEL_CLOSERS:
            try:
                btn = page.locator(selector).first
                if btn.is_visible(timeout=1500):
                    btn.click(force=True)
                    self._sleep(1)
                    return
            except PlaywrightError:
                continue

    def snapshot_panel(self, session: Session, progress: Callable[[str], None] = _quiet) -> CartPanelSnapshot:
        page = session.handle.page
        try:
            self._open_panel(page, session.mode, progress)
            raw = page.evaluate(PANEL_SNAPSHOT_JS) or {}
            self._close_panel(page)
        except PlaywrightError as e:
            raise transport_failed(f"Cart panel: {e}") from e
        for msg in raw.get("diag") or []:
            logger.debug(msg)
        if not raw.get("found"):
            raise panel_not_found("; ".join(raw.get("diag") or ["No cart container found"]))
        return CartPanelSnapshot(text=raw.get("text") or "", html=raw.get("html") or "")

    def read_cart(self, session: Session, progress: Callable[[str], None] = _quiet) -> list[CartLineItem]:
        progress("Scraping cart...")
        snapshot = self.snapshot_panel(session, progress)
        result = parse_cart_panel(snapshot)
        if result.empty_marker:
            progress("Cart is empty.")
        elif result.strategy is None:
            logger.warning("No cart items recognized:\n%s", "\n".join(result.diagnostics))
        progress(f"Cart scrape: {len(result.items)} items found")
        return result.items

    def remove_all(self, session: Session, progress: Callable[[str], None] = _quiet) -> int:
        page = session.handle.page
        try:
            return self._remove_all(page, session.mode, progress)
        except PlaywrightError as e:
            raise transport_failed(f"Failed to remove cart items: {e}") from e

    def _remove_all(self, page: Any, mode: str, progress: Callable[[str], None]) -> int:
        progress("Opening cart...")
        count = self._open_panel(page, mode, progress)
        if count == 0:
            progress("Cart is already empty.")
            self._close_panel(page)
            return 0

        manage = first_visible(page, MANAGE_BUTTONS, timeout=3000)
        if manage is not None:
            progress("Found Manage button, trying bulk remove...")
            manage.click(force=True)
            self._sleep(2)
            remove_all = first_visible(page, REMOVE_ALL_BUTTONS, timeout=3000)
            if remove_all is not None:
                remove_all.click(force=True)
                self._sleep(3)
                confirm = first_visible(page, REMOVE_ALL_CONFIRM)
                if confirm is not None:
                    confirm.click(force=True)
                    self._sleep(2)
                close_popups(page, self._sleep)
                removed = count if count > 0 else 1
                progress(f"Removed {removed} item(s) from cart.")
                return removed

        progress("Removing items individually...")
        clicks = 0
        max_clicks = count * 15 if count > 0 else 100
        last_name = ""
        while clicks < max_clicks:
            target = None
            for _ in range(4):
                target = first_visible(page, ITEM_REMOVE_BUTTONS, timeout=1500)
                if target is not None:
                    break
                self._sleep(1)
            if target is None:
                break

            label = target.get_attribute("aria-label") or ""
            name = re.sub(r"^(Decrement quantity of|Remove)\s*", "", label, flags=re.IGNORECASE) or "item"
            if name != last_name:
                progress(f"  Removing: {name}...")
                last_name = name

            target.click(force=True)
            clicks += 1
            self._sleep(2.5)

            confirm = first_visible(page, ALERT_CONFIRM, timeout=1000)
            if confirm is not None:
                confirm.click(force=True)
                self._sleep(2)

        close_popups(page, self._sleep)
        final = -1
        button = first_visible(page, CART_BUTTONS[:1], timeout=1000)
        if button is not None:
            final = cart_badge_count(button.get_attribute("aria-label"))
        removed = max(0, count - final) if final >= 0 and count >= 0 else clicks
        progress(f"Removed {removed} item(s) from cart." + (f" ({final} remaining)" if final > 0 else ""))
        return removed

