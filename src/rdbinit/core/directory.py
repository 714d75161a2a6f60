"""Directory Service contract used by the reconciliation engine.

The Directory Service wraps the store's catalog and query primitives. Every
method raises `rdbinit.core.errors.DirectoryError` (tagged with an
`ErrorKind`) on failure; name-based methods raise the `AMBIGUOUS` kind when
the name matches more than one catalog row.
"""

from __future__ import annotations

from typing import Any, Protocol

from rdbinit.core.models import CatalogRow, ConflictPolicy, IndexSpec, TableRef, TableSpec


class DirectoryService(Protocol):
    """Catalog and data primitives of a document store."""

    def list_databases(self) -> list[str]:
        """Return the display names of all databases."""
        ...

    def create_database(self, name: str) -> None:
        """Create a database. ALREADY_EXISTS if the name is taken."""
        ...

    def drop_database(self, name: str) -> None:
        """Drop a database by name."""
        ...

    def list_tables(self, db: str) -> list[str]:
        """Return the table names of a database."""
        ...

    def create_table(self, db: str, spec: TableSpec) -> None:
        """Create a table with the options in `spec`. ALREADY_EXISTS if taken."""
        ...

    def drop_table(self, db: str, name: str) -> None:
        """Drop a table by name."""
        ...

    def create_index(self, db: str, table: str, index: IndexSpec) -> None:
        """Create a secondary index. ALREADY_EXISTS if taken."""
        ...

    def list_indexes(self, db: str, table: str) -> list[str]:
        """Return the secondary index names of a table."""
        ...

    def wait_ready(self, db: str, table: str | None = None) -> None:
        """Block until the database (or table) is queryable."""
        ...

    def count_rows(self, db: str, table: str) -> int:
        """Return the number of documents in a table."""
        ...

    def count_tables(self, db: str) -> int:
        """Return the number of catalog table rows whose database is `db`."""
        ...

    def database_rows(self) -> list[CatalogRow]:
        """Return every database catalog row."""
        ...

    def table_rows(self, db: str) -> list[CatalogRow]:
        """Return every table catalog row of database `db`."""
        ...

    def database_exists(self, name: str) -> bool:
        """Return True if at least one database catalog row is named `name`."""
        ...

    def table_exists(self, db: str, name: str) -> bool:
        """Return True if at least one table catalog row matches `db.name`."""
        ...

    def rename_database_by_id(self, row_id: str, new_name: str) -> None:
        """Rename the database catalog row with id `row_id`."""
        ...

    def rename_table_by_id(self, row_id: str, new_name: str) -> None:
        """Rename the table catalog row with id `row_id`."""
        ...

    def relocate_table(self, source: TableRef, dest: TableRef) -> None:
        """Move a table to another name/database by updating its catalog row."""
        ...

    def read_rows(self, db: str, table: str) -> list[dict[str, Any]]:
        """Return all documents of a table."""
        ...

    def insert_rows(
        self,
        db: str,
        table: str,
        rows: list[dict[str, Any]],
        policy: ConflictPolicy,
    ) -> int:
        """Insert documents, resolving primary-key conflicts by `policy`. Returns rows written."""
        ...

    def close(self) -> None:
        """Close the underlying session."""
        ...
