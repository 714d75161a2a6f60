"""Settings for schema initialization runs.

Defaults can be overridden with `RDB_INIT_*` environment variables via
`InitSettings.from_env()`; malformed values fall back to the default.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field

from rdbinit.core.models import ConflictPolicy

DEFAULT_STATE_FILE = "./.rethinkdb-init-state.json"
DEFAULT_LOCK_PREFIX = "rdb-init-lock-"
STATE_FILE_ENV = "RDB_INIT_STATE_FILE"
_LEGACY_STATE_FILE_ENV = "rdb_init_state_file"


def default_state_file() -> str:
    """Return the ledger path, honoring the environment override."""
    return os.getenv(STATE_FILE_ENV) or os.getenv(_LEGACY_STATE_FILE_ENV) or DEFAULT_STATE_FILE


@dataclass
class InitSettings:
    """Configuration for the initializer, lock, reconciler and ledger."""

    lock_dir: str = field(default_factory=tempfile.gettempdir)
    lock_prefix: str = DEFAULT_LOCK_PREFIX
    lock_poll_interval: float = 0.2
    lock_timeout: float | None = None
    lease_ttl: float = 600.0
    max_reconcile_attempts: int = 3
    conflict_policy: ConflictPolicy = ConflictPolicy.KEEP_DESTINATION
    max_parallel: int = 4
    state_file: str = field(default_factory=default_state_file)

    _LOCK_DIR_ENV = "RDB_INIT_LOCK_DIR"
    _LOCK_TIMEOUT_ENV = "RDB_INIT_LOCK_TIMEOUT"
    _LEASE_TTL_ENV = "RDB_INIT_LEASE_TTL"
    _MAX_ATTEMPTS_ENV = "RDB_INIT_MAX_ATTEMPTS"
    _CONFLICT_POLICY_ENV = "RDB_INIT_CONFLICT_POLICY"
    _MAX_PARALLEL_ENV = "RDB_INIT_MAX_PARALLEL"

    @classmethod
    def from_env(cls) -> "InitSettings":
        """Return settings with environment overrides applied."""
        settings = cls()
        lock_dir = os.getenv(cls._LOCK_DIR_ENV)
        if lock_dir:
            settings.lock_dir = lock_dir
        settings.lock_timeout = _env_float(cls._LOCK_TIMEOUT_ENV, settings.lock_timeout)
        settings.lease_ttl = _env_float(cls._LEASE_TTL_ENV, settings.lease_ttl) or settings.lease_ttl
        settings.max_reconcile_attempts = max(
            _env_int(cls._MAX_ATTEMPTS_ENV, settings.max_reconcile_attempts), 1
        )
        settings.max_parallel = max(_env_int(cls._MAX_PARALLEL_ENV, settings.max_parallel), 1)

        raw_policy = os.getenv(cls._CONFLICT_POLICY_ENV, "").strip().lower()
        if raw_policy:
            try:
                settings.conflict_policy = ConflictPolicy(raw_policy)
            except ValueError:
                pass
        return settings


def _env_float(name: str, default: float | None) -> float | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default
