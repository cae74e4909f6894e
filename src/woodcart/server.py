"""Flask backend for the cart UI: start/stop a run, poll its log, inspect the cart."""

from __future__ import annotations

import argparse
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Any, Callable, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from woodcart.tools.errors import CartError, MissingCredentials
from woodcart.tools.items import from_record, parse_item_line
from woodcart.tools.models import DesiredItem, ItemEvent, RunSummary
from woodcart.tools.orchestrator import CancellationToken, Orchestrator, ProgressSink, backend_for
from woodcart.tools.session import SessionStore
from woodcart.tools.settings import Settings, from_json, load_settings, save_settings


logger = logging.getLogger(__name__)

REPO_ROOT = Path(__file__).resolve().parents[2]

app = Flask(__name__)
app.config["SETTINGS_PATH"] = str(REPO_ROOT / "data" / "settings.json")
CORS(app)  # Allow cross-origin requests


class RunManager:
    """One automation at a time, sharing one session slot across requests."""

    def __init__(self) -> None:
        self.store = SessionStore()
        self.busy = threading.Lock()
        self.lock = threading.Lock()
        self.logs: list[str] = []
        self.events: list[dict[str, Any]] = []
        self.summary: Optional[RunSummary] = None
        self.error: Optional[str] = None
        self.running = False
        self.token: Optional[CancellationToken] = None
        self.thread: Optional[threading.Thread] = None

    def _log(self, text: str) -> None:
        with self.lock:
            self.logs.append(text)

    def _event(self, event: ItemEvent) -> None:
        with self.lock:
            self.events.append(asdict(event))

    def _orchestrator(self, settings: Settings, token: Optional[CancellationToken] = None) -> Orchestrator:
        return Orchestrator(
            backend_for(settings),
            self.store,
            settings,
            sink=ProgressSink(on_message=self._log, on_item=self._event),
            token=token,
        )

    def start(self, settings: Settings, items: list[DesiredItem]) -> tuple[bool, str]:
        if not self.busy.acquire(blocking=False):
            return False, "A run is already in progress"
        with self.lock:
            self.logs = []
            self.events = []
            self.summary = None
            self.error = None
            self.running = True
            self.token = CancellationToken()
        orchestrator = self._orchestrator(settings, self.token)
        self.thread = threading.Thread(target=self._run, args=(orchestrator, items), daemon=True)
        self.thread.start()
        return True, "Started"

    def _run(self, orchestrator: Orchestrator, items: list[DesiredItem]) -> None:
        try:
            self.summary = orchestrator.run(items)
        except CartError as e:
            self.error = str(e)
            self._log(e.format())
        except Exception as e:
            logger.exception("Run crashed")
            self.error = str(e)
            self._log(f"Error: {e}")
        finally:
            with self.lock:
                self.running = False
                self.logs.append("Run finished.")
            self.busy.release()

    def stop(self) -> bool:
        with self.lock:
            if self.running and self.token is not None:
                self.token.cancel()
                self.logs.append("Stop requested by user.")
                return True
            return False

    def call(self, settings: Settings, fn: Callable[[Orchestrator], Any]) -> tuple[bool, Any]:
        """Run a short synchronous operation unless a run holds the slot."""
        if not self.busy.acquire(blocking=False):
            return False, None
        try:
            return True, fn(self._orchestrator(settings))
        finally:
            self.busy.release()

    def status(self, since: int = 0) -> dict[str, Any]:
        with self.lock:
            if self.running:
                status = "RUNNING"
            elif self.error is not None:
                status = "ERROR"
            elif self.summary is not None:
                status = "STOPPED" if self.summary.state == "stopped" else "COMPLETED"
            else:
                status = "READY"
            return {
                "status": status,
                "logs": self.logs[since:],
                "next_index": len(self.logs),
                "events": list(self.events),
                "summary": self.summary.to_dict() if self.summary is not None else None,
                **({"error": self.error} if self.error else {}),
            }


manager = RunManager()


def _settings_path() -> Path:
    return Path(app.config["SETTINGS_PATH"])


def _settings(overrides: Optional[dict[str, Any]] = None) -> Settings:
    settings = load_settings(_settings_path())
    overrides = overrides or {}
    fast = overrides.get("fast")
    if isinstance(fast, str):
        fast = fast.lower() in ("1", "true", "yes")
    mode = overrides.get("mode")
    return settings.with_overrides(
        shopping_mode=mode if mode in ("instore", "pickup") else None,
        fast_mode=fast,
    )


def _error(e: CartError):
    status = 400 if isinstance(e, MissingCredentials) else 502
    return jsonify({"error": str(e), "code": e.code, "next_step": e.next_step}), status


def _busy():
    return jsonify({"error": "A run is already in progress"}), 409


def _parse_items(raw: list[Any]) -> list[DesiredItem]:
    items = []
    for n, entry in enumerate(raw or [], start=1):
        if isinstance(entry, str):
            if entry.strip():
                items.append(parse_item_line(entry, correlation_id=f"item-{n}"))
        elif isinstance(entry, dict):
            item = from_record(entry, index=n - 1)
            if item.label:
                items.append(item)
    return items


@app.route("/cart/start", methods=["POST"])
def start_run():
    data = request.get_json(silent=True) or {}
    items = _parse_items(data.get("items", []))
    if not items:
        return jsonify({"success": False, "message": "No items to add"}), 400
    success, msg = manager.start(_settings(data), items)
    return jsonify({"success": success, "message": msg}), (200 if success else 409)


@app.route("/cart/stop", methods=["POST"])
def stop_run():
    return jsonify({"success": manager.stop()})


@app.route("/cart/status")
def run_status():
    since = request.args.get("since", 0, type=int)
    return jsonify(manager.status(since))


@app.route("/cart")
def fetch_cart():
    try:
        ok, items = manager.call(_settings(request.args), lambda o: o.fetch_cart())
    except CartError as e:
        return _error(e)
    if not ok:
        return _busy()
    return jsonify({"items": [asdict(i) for i in items]})


@app.route("/cart/remove-all", methods=["POST"])
def remove_all():
    data = request.get_json(silent=True) or {}
    try:
        ok, removed = manager.call(_settings(data), lambda o: o.remove_all())
    except CartError as e:
        return _error(e)
    if not ok:
        return _busy()
    return jsonify({"removed": removed})


@app.route("/products/search")
def search_products():
    query = (request.args.get("q") or "").strip()
    if not query:
        return jsonify({"error": "Missing query parameter q"}), 400
    try:
        ok, products = manager.call(_settings(request.args), lambda o: o.search(query))
    except CartError as e:
        return _error(e)
    if not ok:
        return _busy()
    return jsonify({"products": [asdict(p) for p in products]})


def _public_settings(settings: Settings) -> dict[str, Any]:
    return {**settings.to_json(include_password=False), "hasPassword": bool(settings.password)}


@app.route("/settings", methods=["GET"])
def get_settings():
    return jsonify(_public_settings(load_settings(_settings_path())))


@app.route("/settings", methods=["POST"])
def update_settings():
    data = request.get_json(silent=True) or {}
    current = load_settings(_settings_path(), use_env=False)
    merged = {**current.to_json(), **{k: v for k, v in data.items() if k != "password"}}
    # Omitted or blank password keeps the stored one.
    if data.get("password"):
        merged["password"] = data["password"]
    updated = from_json(merged)
    save_settings(_settings_path(), updated)
    return jsonify(_public_settings(updated))


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog="woodcart-server")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8766)
    parser.add_argument("--settings", default=None, help="Path to settings.json")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
    if args.settings:
        app.config["SETTINGS_PATH"] = args.settings
    app.run(host=args.host, port=args.port, debug=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
