from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure tests always import the local src tree, not an older installed wheel.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))

from rdbinit.core.config import InitSettings  # noqa: E402

from fakes import FakeDirectory  # noqa: E402


@pytest.fixture
def directory() -> FakeDirectory:
    return FakeDirectory()


@pytest.fixture
def settings(tmp_path: Path) -> InitSettings:
    return InitSettings(
        lock_dir=str(tmp_path / "locks"),
        lock_poll_interval=0.01,
        lock_timeout=2.0,
        state_file=str(tmp_path / "state.json"),
    )


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path):
    for name in (
        "RDB_INIT_LOCK_DIR",
        "RDB_INIT_LOCK_TIMEOUT",
        "RDB_INIT_LEASE_TTL",
        "RDB_INIT_MAX_ATTEMPTS",
        "RDB_INIT_CONFLICT_POLICY",
        "RDB_INIT_MAX_PARALLEL",
        "RDB_INIT_STATE_FILE",
        "rdb_init_state_file",
        "RDB_HOST",
        "RDB_PORT",
        "RDB_USER",
        "RDB_PASSWORD",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
