"""In-memory Directory Service used by the tests.

Catalog rows carry unique ids while display names may be shared, like the
real store after two initializers raced. Any name-based access to a shared
name raises an AMBIGUOUS fault; creating an existing name raises
ALREADY_EXISTS.
"""

from __future__ import annotations

import copy
import itertools
import threading
from typing import Any

from rdbinit.core.errors import AlreadyExists, CatalogAmbiguity, ConnectionFailure, NotFound
from rdbinit.core.models import CatalogRow, ConflictPolicy, IndexSpec, TableRef, TableSpec

_ids = itertools.count(1)


def make_id() -> str:
    n = next(_ids)
    return f"{n:08x}-0000-4000-8000-{n:012x}"


class FakeDirectory:
    def __init__(self) -> None:
        self.dbs: dict[str, str] = {}
        self.tables: dict[str, dict[str, Any]] = {}
        self.calls: list[str] = []
        self.closed = False
        self._mutex = threading.RLock()

    # --- seeding helpers ---

    def add_database(self, name: str, row_id: str | None = None) -> str:
        """Add a database row without checking for an existing name."""
        row_id = row_id or make_id()
        with self._mutex:
            self.dbs[row_id] = name
        return row_id

    def add_table(
        self,
        db_id: str,
        name: str,
        rows: list[dict[str, Any]] | None = None,
        *,
        row_id: str | None = None,
        primary_key: str = "id",
    ) -> str:
        """Add a table row to the database with id `db_id`, bypassing name checks."""
        row_id = row_id or make_id()
        with self._mutex:
            self.tables[row_id] = {
                "db_id": db_id,
                "name": name,
                "primary_key": primary_key,
                "rows": {r[primary_key]: dict(r) for r in rows or []},
                "indexes": [],
            }
        return row_id

    def snapshot(self) -> dict[str, Any]:
        """Return the catalog keyed by names, for comparisons across runs."""
        with self._mutex:
            out: dict[str, Any] = {}
            for db_id, db_name in sorted(self.dbs.items(), key=lambda kv: kv[1]):
                out.setdefault(db_name, {})
                for t in self.tables.values():
                    if t["db_id"] != db_id:
                        continue
                    out[db_name][t["name"]] = {
                        "rows": copy.deepcopy(t["rows"]),
                        "indexes": [i.name for i in t["indexes"]],
                    }
            return out

    def table(self, db: str, name: str) -> dict[str, Any]:
        with self._mutex:
            return self.tables[self._table_id(db, name)]

    # --- name resolution ---

    def _db_id(self, name: str) -> str:
        matches = [i for i, n in self.dbs.items() if n == name]
        if not matches:
            raise NotFound(f"Database `{name}` does not exist.")
        if len(matches) > 1:
            raise CatalogAmbiguity(f"Database `{name}` is ambiguous; there are multiple databases with that name.")
        return matches[0]

    def _table_id(self, db: str, name: str) -> str:
        db_id = self._db_id(db)
        matches = [i for i, t in self.tables.items() if t["db_id"] == db_id and t["name"] == name]
        if not matches:
            raise NotFound(f"Table `{db}.{name}` does not exist.")
        if len(matches) > 1:
            raise CatalogAmbiguity(f"Table `{db}.{name}` is ambiguous; there are multiple tables with that name.")
        return matches[0]

    def _tables_of(self, db: str) -> list[tuple[str, dict[str, Any]]]:
        db_ids = {i for i, n in self.dbs.items() if n == db}
        return [(i, t) for i, t in self.tables.items() if t["db_id"] in db_ids]

    # --- Directory Service ---

    def list_databases(self) -> list[str]:
        with self._mutex:
            return sorted(self.dbs.values())

    def create_database(self, name: str) -> None:
        with self._mutex:
            self.calls.append(f"create_database:{name}")
            if name in self.dbs.values():
                raise AlreadyExists(f"Database `{name}` already exists.")
            self.dbs[make_id()] = name

    def drop_database(self, name: str) -> None:
        with self._mutex:
            self.calls.append(f"drop_database:{name}")
            db_id = self._db_id(name)
            del self.dbs[db_id]
            for t_id in [i for i, t in self.tables.items() if t["db_id"] == db_id]:
                del self.tables[t_id]

    def list_tables(self, db: str) -> list[str]:
        with self._mutex:
            db_id = self._db_id(db)
            return sorted(t["name"] for t in self.tables.values() if t["db_id"] == db_id)

    def create_table(self, db: str, spec: TableSpec) -> None:
        with self._mutex:
            self.calls.append(f"create_table:{db}.{spec.name}")
            db_id = self._db_id(db)
            if any(t["db_id"] == db_id and t["name"] == spec.name for t in self.tables.values()):
                raise AlreadyExists(f"Table `{db}.{spec.name}` already exists.")
            self.add_table(db_id, spec.name, primary_key=spec.primary_key or "id")

    def drop_table(self, db: str, name: str) -> None:
        with self._mutex:
            self.calls.append(f"drop_table:{db}.{name}")
            del self.tables[self._table_id(db, name)]

    def create_index(self, db: str, table: str, index: IndexSpec) -> None:
        with self._mutex:
            self.calls.append(f"create_index:{db}.{table}.{index.name}")
            t = self.tables[self._table_id(db, table)]
            if any(i.name == index.name for i in t["indexes"]):
                raise AlreadyExists(f"Index `{index.name}` already exists on table `{db}.{table}`.")
            t["indexes"].append(index)

    def list_indexes(self, db: str, table: str) -> list[str]:
        with self._mutex:
            return [i.name for i in self.tables[self._table_id(db, table)]["indexes"]]

    def wait_ready(self, db: str, table: str | None = None) -> None:
        with self._mutex:
            if table is None:
                self._db_id(db)
            else:
                self._table_id(db, table)

    def count_rows(self, db: str, table: str) -> int:
        with self._mutex:
            return len(self.tables[self._table_id(db, table)]["rows"])

    def count_tables(self, db: str) -> int:
        with self._mutex:
            return len(self._tables_of(db))

    def database_rows(self) -> list[CatalogRow]:
        with self._mutex:
            return [CatalogRow(id=i, name=n) for i, n in self.dbs.items()]

    def table_rows(self, db: str) -> list[CatalogRow]:
        with self._mutex:
            return [CatalogRow(id=i, name=t["name"], db=db) for i, t in self._tables_of(db)]

    def database_exists(self, name: str) -> bool:
        with self._mutex:
            return name in self.dbs.values()

    def table_exists(self, db: str, name: str) -> bool:
        with self._mutex:
            return any(t["name"] == name for _, t in self._tables_of(db))

    def rename_database_by_id(self, row_id: str, new_name: str) -> None:
        with self._mutex:
            self.calls.append(f"rename_database:{row_id}:{new_name}")
            if row_id not in self.dbs:
                raise NotFound(f"Database {row_id} does not exist.")
            self.dbs[row_id] = new_name

    def rename_table_by_id(self, row_id: str, new_name: str) -> None:
        with self._mutex:
            self.calls.append(f"rename_table:{row_id}:{new_name}")
            if row_id not in self.tables:
                raise NotFound(f"Table {row_id} does not exist.")
            self.tables[row_id]["name"] = new_name

    def relocate_table(self, source: TableRef, dest: TableRef) -> None:
        with self._mutex:
            self.calls.append(f"relocate_table:{source}:{dest}")
            matches = [t for _, t in self._tables_of(source.db) if t["name"] == source.table]
            if not matches:
                raise NotFound(f"Table `{source}` does not exist.")
            dest_db = self._db_id(dest.db)
            for t in matches:
                t["db_id"] = dest_db
                t["name"] = dest.table

    def read_rows(self, db: str, table: str) -> list[dict[str, Any]]:
        with self._mutex:
            return [dict(r) for r in self.tables[self._table_id(db, table)]["rows"].values()]

    def insert_rows(
        self,
        db: str,
        table: str,
        rows: list[dict[str, Any]],
        policy: ConflictPolicy,
    ) -> int:
        with self._mutex:
            t = self.tables[self._table_id(db, table)]
            pk = t["primary_key"]
            written = 0
            for row in rows:
                if row[pk] in t["rows"] and policy is ConflictPolicy.KEEP_DESTINATION:
                    continue
                t["rows"][row[pk]] = dict(row)
                written += 1
            return written

    def close(self) -> None:
        self.closed = True


def unreachable(_config) -> FakeDirectory:
    raise ConnectionFailure("Cannot connect to localhost:28015: Connection refused")
