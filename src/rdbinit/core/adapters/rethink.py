"""RethinkDB implementation of the Directory Service.

The driver's synchronous connection is not safe to share between threads:
a reply is read by whichever caller reads next. `RethinkDirectory` therefore
serializes every query, including the draining of its cursor, on one mutex
so the initializer's and reconciler's thread pools can share one session.
"""

from __future__ import annotations

import logging
import re
import struct
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from rethinkdb import RethinkDB
from rethinkdb.errors import ReqlDriverError, ReqlError

from rdbinit.core.errors import ConnectionFailure, DirectoryError, ErrorKind, directory_error
from rdbinit.core.models import (
    CatalogRow,
    ConflictPolicy,
    ConnectionConfig,
    IndexSpec,
    TableRef,
    TableSpec,
)

logger = logging.getLogger(__name__)

SYSTEM_DB = "rethinkdb"

# Server wording for the faults the reconciliation engine branches on. This
# is the only place in the project that looks at error message text.
_KIND_PATTERNS: tuple[tuple[ErrorKind, re.Pattern[str]], ...] = (
    (ErrorKind.AMBIGUOUS, re.compile(r"\bambiguous\b", re.IGNORECASE)),
    (ErrorKind.ALREADY_EXISTS, re.compile(r"\balready exists\b", re.IGNORECASE)),
    (ErrorKind.NOT_FOUND, re.compile(r"\bdoes not exist\b", re.IGNORECASE)),
)


def classify(exc: BaseException) -> ErrorKind:
    """Map a driver (or transport) exception onto an ErrorKind."""
    if isinstance(exc, (ReqlDriverError, OSError, struct.error)):
        return ErrorKind.CONNECTION
    if not isinstance(exc, ReqlError):
        return ErrorKind.OTHER
    message = getattr(exc, "message", None) or str(exc)
    for kind, pattern in _KIND_PATTERNS:
        if pattern.search(message):
            return kind
    return ErrorKind.OTHER


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    """Re-raise anything a query raises as DirectoryError with the original chained."""
    try:
        yield
    except DirectoryError:
        raise
    except Exception as exc:
        message = getattr(exc, "message", None) or str(exc) or type(exc).__name__
        raise directory_error(classify(exc), f"{operation}: {message}") from exc


class RethinkDirectory:
    """Adapter around the RethinkDB driver implementing the Directory Service contract."""

    def __init__(self, r: RethinkDB, conn: Any, db: str | None = None) -> None:
        self.r = r
        self.conn = conn
        self.db = db
        self._io = threading.Lock()

    @classmethod
    def connect(cls, config: ConnectionConfig) -> "RethinkDirectory":
        """Open a session for `config`; raises ConnectionFailure on any driver error."""
        r = RethinkDB()
        try:
            conn = r.connect(
                host=config.host,
                port=config.port,
                db=config.db,
                user=config.user,
                password=config.password,
                timeout=config.timeout,
            )
        except (ReqlError, OSError) as exc:
            raise ConnectionFailure(
                f"Cannot connect to {config.host}:{config.port}: {getattr(exc, 'message', None) or exc}"
            ) from exc
        logger.debug("Connected to %s:%s (db %s)", config.host, config.port, config.db)
        return cls(r, conn, db=config.db)

    def _run(self, query, operation: str):
        with self._io, _translated(operation):
            return query.run(self.conn)

    def _fetch(self, query, operation: str) -> list[Any]:
        """Run a stream query and materialize its cursor."""
        with self._io, _translated(operation):
            return list(query.run(self.conn))

    def _db_config(self):
        return self.r.db(SYSTEM_DB).table("db_config")

    def _table_config(self):
        return self.r.db(SYSTEM_DB).table("table_config")

    def list_databases(self) -> list[str]:
        """Return the display names of all databases."""
        return self._fetch(self.r.db_list(), "list databases")

    def create_database(self, name: str) -> None:
        """Create a database; the server rejects an existing name."""
        self._run(self.r.db_create(name), f"create database {name}")

    def drop_database(self, name: str) -> None:
        """Drop a database (and its tables) by name."""
        self._run(self.r.db_drop(name), f"drop database {name}")

    def list_tables(self, db: str) -> list[str]:
        """Return the table names of a database."""
        return self._fetch(self.r.db(db).table_list(), f"list tables of {db}")

    def create_table(self, db: str, spec: TableSpec) -> None:
        """Create a table with the options set on `spec`."""
        self._run(
            self.r.db(db).table_create(spec.name, **spec.options()),
            f"create table {db}.{spec.name}",
        )

    def drop_table(self, db: str, name: str) -> None:
        """Drop a table by name."""
        self._run(self.r.db(db).table_drop(name), f"drop table {db}.{name}")

    def create_index(self, db: str, table: str, index: IndexSpec) -> None:
        """Create a secondary index, passing the index function and multi/geo flags through."""
        args: list[Any] = [index.name]
        if index.function is not None:
            args.append(index.function)
        opts = {k: True for k in ("multi", "geo") if getattr(index, k)}
        self._run(
            self.r.db(db).table(table).index_create(*args, **opts),
            f"create index {index.name} on {db}.{table}",
        )

    def list_indexes(self, db: str, table: str) -> list[str]:
        """Return the secondary index names of a table."""
        return self._fetch(self.r.db(db).table(table).index_list(), f"list indexes of {db}.{table}")

    def wait_ready(self, db: str, table: str | None = None) -> None:
        """Block until a database (or a table and its indexes) is ready for reads and writes."""
        q = self.r.db(db)
        if table:
            q = q.table(table)
        target = f"{db}.{table}" if table else db
        self._run(q.wait(), f"wait for {target}")
        if table:
            self._run(q.index_wait(), f"wait for indexes of {target}")

    def count_rows(self, db: str, table: str) -> int:
        """Return the number of documents in a table."""
        return int(self._run(self.r.db(db).table(table).count(), f"count {db}.{table}"))

    def count_tables(self, db: str) -> int:
        """Count the catalog rows of tables whose database is named `db`."""
        return int(
            self._run(self._table_config().filter({"db": db}).count(), f"count tables of {db}")
        )

    def database_rows(self) -> list[CatalogRow]:
        """Return every row of the database catalog (`rethinkdb.db_config`)."""
        cursor = self._fetch(self._db_config(), "read database catalog")
        return [CatalogRow(id=row["id"], name=row["name"]) for row in cursor]

    def table_rows(self, db: str) -> list[CatalogRow]:
        """Return the table catalog rows (`rethinkdb.table_config`) of database `db`."""
        cursor = self._fetch(self._table_config().filter({"db": db}), f"read table catalog of {db}")
        return [CatalogRow(id=row["id"], name=row["name"], db=row["db"]) for row in cursor]

    def database_exists(self, name: str) -> bool:
        """Return True if at least one database is named `name`."""
        count = self._run(self._db_config().filter({"name": name}).count(), f"look up database {name}")
        return int(count) > 0

    def table_exists(self, db: str, name: str) -> bool:
        """Return True if at least one table in `db` is named `name`."""
        count = self._run(
            self._table_config().filter({"db": db, "name": name}).count(),
            f"look up table {db}.{name}",
        )
        return int(count) > 0

    def _update_by_id(self, catalog, row_id: str, changes: dict[str, Any], operation: str) -> None:
        result = self._run(catalog.get(row_id).update(changes), operation)
        if result.get("errors"):
            raise directory_error(ErrorKind.OTHER, f"{operation}: {result.get('first_error')}")
        if result.get("skipped"):
            raise directory_error(ErrorKind.NOT_FOUND, f"{operation}: row {row_id} does not exist")

    def rename_database_by_id(self, row_id: str, new_name: str) -> None:
        """Rename the database catalog row with id `row_id`."""
        self._update_by_id(
            self._db_config(), row_id, {"name": new_name}, f"rename database {row_id} to {new_name}"
        )

    def rename_table_by_id(self, row_id: str, new_name: str) -> None:
        """Rename the table catalog row with id `row_id`."""
        self._update_by_id(
            self._table_config(), row_id, {"name": new_name}, f"rename table {row_id} to {new_name}"
        )

    def relocate_table(self, source: TableRef, dest: TableRef) -> None:
        """Move a table to another database and/or name by editing its catalog row; data is untouched."""
        operation = f"rename table {source} to {dest}"
        result = self._run(
            self._table_config()
            .filter({"db": source.db, "name": source.table})
            .update({"db": dest.db, "name": dest.table}),
            operation,
        )
        if result.get("errors"):
            raise directory_error(ErrorKind.OTHER, f"{operation}: {result.get('first_error')}")
        if not result.get("replaced"):
            raise directory_error(ErrorKind.NOT_FOUND, f"{operation}: table {source} does not exist")

    def read_rows(self, db: str, table: str) -> list[dict[str, Any]]:
        """Return all documents of a table."""
        return self._fetch(self.r.db(db).table(table), f"read {db}.{table}")

    def insert_rows(
        self,
        db: str,
        table: str,
        rows: list[dict[str, Any]],
        policy: ConflictPolicy,
    ) -> int:
        """
        Insert `rows`, resolving primary key collisions with `policy`.

        Returns:
            Number of rows inserted or replaced; rows kept on collision are not counted.
        """
        if not rows:
            return 0
        if policy is ConflictPolicy.PREFER_SOURCE:
            conflict: Any = "replace"
        else:
            conflict = lambda _id, old_doc, _new_doc: old_doc  # noqa: E731
        operation = f"insert into {db}.{table}"
        result = self._run(self.r.db(db).table(table).insert(rows, conflict=conflict), operation)
        if result.get("errors"):
            raise directory_error(ErrorKind.OTHER, f"{operation}: {result.get('first_error')}")
        return int(result.get("inserted", 0)) + int(result.get("replaced", 0))

    def close(self) -> None:
        """Close the driver connection; errors while closing are only logged."""
        try:
            with self._io:
                self.conn.close()
        except (ReqlError, OSError) as exc:
            logger.debug("Error closing connection: %s", exc)
