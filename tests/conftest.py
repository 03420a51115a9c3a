"""
Pytest config.

Local imports like `import handoff` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used without an editable install that doesn't happen
reliably during collection, so pin it here.
"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()


class FakeClock:
    """Deterministic clock for TTL tests: call it for "now", advance it explicitly."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_handoff_singletons(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    """
    Config loaders are cached and the server keeps one process-wide service.

    Reset both around every test so env changes made with monkeypatch take effect, and
    point the CLI credential directory at a temp dir so tests never touch ~/.config.
    """
    from handoff.auth.config import load_handoff_config
    from handoff.auth.handoff import set_handoff_service
    from handoff.cli.credentials import load_client_config

    monkeypatch.setenv("HANDOFF_CONFIG_DIR", str(tmp_path / "cli-config"))
    load_handoff_config.cache_clear()
    load_client_config.cache_clear()
    set_handoff_service(None)
    yield
    previous = set_handoff_service(None)
    if previous is not None:
        previous.sweeper.stop()
    load_handoff_config.cache_clear()
    load_client_config.cache_clear()
