import sys
from pathlib import Path

import pytest


def pytest_configure():
    # Ensure src/ is on the import path for tests without requiring installation.
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


@pytest.fixture(autouse=True)
def _no_woodmans_env(monkeypatch):
    # Real credentials in the shell must not leak into settings loading.
    monkeypatch.delenv("WOODMANS_EMAIL", raising=False)
    monkeypatch.delenv("WOODMANS_PASSWORD", raising=False)
