"""Local ledger of schema objects that were already created.

This is the alternate, non-reconciling way to make initialization
idempotent: tables recorded in the ledger are skipped on later runs, even
when the catalog would report them as ambiguous. It is only correct when
this process is the sole schema writer; it does nothing against races
between processes.

File format (JSON):

    [
        {"name": "somedb", "tables": [{"name": "users", "indexes": ["email"]}]},
        ...
    ]
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any

from rdbinit.core.config import default_state_file
from rdbinit.core.errors import StateCorruption
from rdbinit.core.models import TableSpec

logger = logging.getLogger(__name__)


def _entry_name(entry: Any) -> str | None:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        name = entry.get("name")
        return name if isinstance(name, str) else None
    return None


class Ledger:
    """
    Durable map of database name -> table entries already created.

    The in-memory map is guarded by a mutex; the file is only written by
    `save()`, wholesale.
    """

    def __init__(self, path: str | os.PathLike[str] | None = None) -> None:
        self.path = Path(path or default_state_file())
        self._lock = threading.Lock()
        self._state: list[dict[str, Any]] = self._load()

    def _load(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StateCorruption(str(self.path), str(exc)) from exc
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StateCorruption(str(self.path), f"invalid JSON ({exc})") from exc
        if data is None:
            return []
        if not isinstance(data, list) or not all(
            isinstance(db, dict) and isinstance(db.get("name"), str) for db in data
        ):
            raise StateCorruption(str(self.path), "expected an array of {name, tables} records")
        for db in data:
            tables = db.get("tables")
            if tables is None:
                db["tables"] = []
            elif not isinstance(tables, list):
                raise StateCorruption(str(self.path), f"tables of '{db['name']}' must be an array")
        logger.debug("Loaded ledger %s with %d database(s)", self.path, len(data))
        return data

    def _find_db(self, db: str) -> dict[str, Any] | None:
        return next((d for d in self._state if d["name"] == db), None)

    def get(self, db: str, table: str | TableSpec) -> Any | None:
        """Return the recorded entry for `db.table`, or None."""
        name = table.name if isinstance(table, TableSpec) else table
        with self._lock:
            record = self._find_db(db)
            if record is None:
                return None
            return next((t for t in record["tables"] if _entry_name(t) == name), None)

    def add(self, db: str, table: str | TableSpec) -> bool:
        """
        Record that `table` exists in `db`.

        Returns:
            True if the entry was added, False if it was already recorded.
        """
        entry: Any = table.to_ledger() if isinstance(table, TableSpec) else table
        name = _entry_name(entry)
        if not name:
            raise ValueError("Ledger entries need a table name")
        with self._lock:
            record = self._find_db(db)
            if record is None:
                self._state.append({"name": db, "tables": [entry]})
                return True
            if any(_entry_name(t) == name for t in record["tables"]):
                return False
            record["tables"].append(entry)
            return True

    def databases(self) -> list[str]:
        with self._lock:
            return [d["name"] for d in self._state]

    def snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return json.loads(json.dumps(self._state))

    def save(self) -> list[dict[str, Any]]:
        """Write the whole ledger to disk atomically and return what was written."""
        data = self.snapshot()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(json.dumps(data), encoding="utf-8")
        os.replace(tmp, self.path)
        logger.debug("Saved ledger %s", self.path)
        return data
