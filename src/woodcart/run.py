"""
Command-line entry point: fill the Woodmans cart from a list, or inspect it.
"""

from __future__ import annotations

import argparse
import logging
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from woodcart.tools import unavailable
from woodcart.tools.errors import CartError
from woodcart.tools.items import load_items, parse_item_line
from woodcart.tools.models import CartLineItem, DesiredItem, mode_label
from woodcart.tools.orchestrator import Orchestrator, ProgressSink, backend_for
from woodcart.tools.session import SessionStore
from woodcart.tools.settings import Settings, load_settings


REPO_ROOT = Path(__file__).resolve().parents[2]
DEBUG_DIR = Path("/tmp/woodcart_debug")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="woodcart-run")
    parser.add_argument("--items", default=None, help="JSON file of items to add (list or {\"items\": [...]})")
    parser.add_argument(
        "--item",
        action="append",
        default=[],
        help='Item to add (repeatable). Example: --item "2 bananas" --item "dozen eggs"',
    )

    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--fetch-cart", action="store_true", help="Print the current cart and exit")
    actions.add_argument("--remove-all", action="store_true", help="Empty the cart and exit")
    actions.add_argument("--search", default=None, metavar="QUERY", help="Search the catalog and exit")

    parser.add_argument(
        "--settings",
        default=str(REPO_ROOT / "data" / "settings.json"),
        help="Path to settings.json (credentials, store, mode)",
    )
    parser.add_argument(
        "--unavailable",
        default=None,
        help="Append failed/skipped items to this JSON log",
    )

    strategy = parser.add_mutually_exclusive_group()
    strategy.add_argument("--fast", dest="fast_mode", action="store_true", default=None, help="Use the GraphQL API")
    strategy.add_argument("--browser", dest="fast_mode", action="store_false", help="Drive a real browser")

    parser.add_argument("--mode", choices=["instore", "pickup"], default=None, help="Shopping mode")
    parser.add_argument("--headless", action="store_true", default=None, help="Run browser in headless mode")
    parser.add_argument("--verbose", action="store_true", help="Debug logging")
    return parser


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings(Path(args.settings))
    return settings.with_overrides(
        fast_mode=args.fast_mode,
        shopping_mode=args.mode,
        headless=args.headless,
    )


def collect_items(args: argparse.Namespace) -> list[DesiredItem]:
    items: list[DesiredItem] = []
    if args.items:
        items.extend(load_items(Path(args.items)))
    offset = len(items)
    for n, text in enumerate(args.item, start=offset + 1):
        if text.strip():
            items.append(parse_item_line(text, correlation_id=f"item-{n}"))
    return items


def _print_cart(items: list[CartLineItem]) -> None:
    if not items:
        print("Cart is empty.")
        return
    print(f"{len(items)} item(s) in cart:")
    for i, it in enumerate(items, 1):
        extras = " ".join(x for x in (it.size, it.price) if x)
        print(f"{i:3}. {it.quantity} x {it.name}" + (f"  ({extras})" if extras else ""))


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    items = collect_items(args) if not (args.fetch_cart or args.remove_all or args.search) else []
    if not (items or args.fetch_cart or args.remove_all or args.search):
        parser.error("nothing to do: pass --items/--item, --fetch-cart, --remove-all or --search")

    store = SessionStore()
    try:
        settings = settings_from_args(args)
        backend = backend_for(settings, on_failure=_dump_debug_info)
        orchestrator = Orchestrator(
            backend,
            store,
            settings,
            sink=ProgressSink(on_message=lambda text: print(f"  {text}")),
        )
        print(f"Woodmans ({mode_label(settings.shopping_mode)}, {'fast' if settings.fast_mode else 'browser'} mode)")

        try:
            if args.search:
                results = orchestrator.search(args.search)
                if not results:
                    print("No products found. Try a different search term.")
                for i, c in enumerate(results, 1):
                    extras = " ".join(x for x in (c.size, c.price) if x)
                    print(f"{i:3}. {c.name}" + (f"  ({extras})" if extras else "") + f"  [{c.product_id}]")
                return 0

            if args.fetch_cart:
                _print_cart(orchestrator.fetch_cart())
                return 0

            if args.remove_all:
                removed = orchestrator.remove_all()
                print(f"Removed {removed} item(s) from cart.")
                return 0

            summary = orchestrator.run(items)
        except CartError as e:
            session = store.current
            if session is not None and session.strategy == "browser":
                _dump_debug_info(session.handle.page, e)
            raise

        if args.unavailable:
            written = unavailable.record_outcomes(Path(args.unavailable), summary.outcomes)
            if written:
                print(f"Logged {written} unavailable item(s) to {args.unavailable}")

        if summary.cart_items is not None:
            _print_cart(summary.cart_items)
        elif summary.reconcile_error:
            print(f"Could not verify cart: {summary.reconcile_error}")
        print("Cart update complete. Hard stop before checkout.")
        return 0
    except CartError as e:
        print(e.format())
        return e.code
    finally:
        store.invalidate()


def _dump_debug_info(page: Any, error: BaseException) -> None:
    """Dump screenshot, HTML, and URL to /tmp/woodcart_debug/ for debugging."""
    DEBUG_DIR.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")

    print(f"\n{'=' * 60}")
    print(f"ERROR - Dumping debug info to {DEBUG_DIR}/")
    print(f"{'=' * 60}")

    error_file = DEBUG_DIR / f"error_{timestamp}.txt"
    with open(error_file, "w", encoding="utf-8") as f:
        f.write(f"Timestamp: {timestamp}\n")
        f.write(f"Error: {error}\n\n")
        f.write("Traceback:\n")
        f.write("".join(traceback.format_exception(type(error), error, error.__traceback__)))
    print(f"  Error: {error_file}")

    if page is not None:
        try:
            print(f"  URL: {page.url}")

            screenshot_file = DEBUG_DIR / f"screenshot_{timestamp}.png"
            page.screenshot(path=str(screenshot_file))
            print(f"  Screenshot: {screenshot_file}")

            html_file = DEBUG_DIR / f"page_{timestamp}.html"
            with open(html_file, "w", encoding="utf-8") as f:
                f.write(page.content())
            print(f"  HTML: {html_file}")
        except Exception as dump_err:
            print(f"  (Could not dump page info: {dump_err})")

    print(f"{'=' * 60}\n")


if __name__ == "__main__":
    raise SystemExit(main())
