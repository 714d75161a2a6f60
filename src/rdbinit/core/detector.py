"""Duplicate detection for databases and tables.

The store resolves name-based reads lazily: two racing creators can both
commit a catalog row with the same display name before the catalog
converges. Any later name-based access then fails with an ambiguity fault
instead of silently picking one row. Detection therefore probes the name
with a cheap read and classifies the outcome.
"""

from __future__ import annotations

import logging
from typing import Iterable

from rdbinit.core.directory import DirectoryService
from rdbinit.core.errors import DirectoryError
from rdbinit.core.models import CatalogRow

logger = logging.getLogger(__name__)


def backup_name(name: str, row_id: str) -> str:
    """Return the deterministic backup name of a duplicate catalog row."""
    return f"{name}_{row_id.split('-')[0]}"


def _probe(probe, target: str) -> bool:
    try:
        probe()
    except DirectoryError as exc:
        if exc.is_not_found:
            logger.debug("%s does not exist yet, nothing to check", target)
            return False
        if exc.is_ambiguous:
            logger.warning("More than one catalog entry is named %s", target)
            return True
        raise
    return False


def is_database_duplicated(directory: DirectoryService, db: str) -> bool:
    """
    Return True if more than one database is named `db`.

    A missing database is not a duplicate. Any fault other than "not found"
    or "ambiguous" propagates.
    """
    return _probe(lambda: directory.list_tables(db), f"database '{db}'")


def is_table_duplicated(directory: DirectoryService, db: str, table: str) -> bool:
    """Return True if more than one table in `db` is named `table`."""
    return _probe(lambda: directory.count_rows(db, table), f"table '{db}.{table}'")


def find_stray_backups(rows: Iterable[CatalogRow], name: str) -> list[CatalogRow]:
    """
    Return rows left behind by an interrupted reconciliation of `name`.

    A row is a stray backup when its display name is exactly the backup name
    derived from its own id, which only the reconciler ever assigns.
    """
    return [row for row in rows if row.name != name and row.name == backup_name(name, row.id)]


def has_stray_database_backups(directory: DirectoryService, db: str) -> bool:
    return bool(find_stray_backups(directory.database_rows(), db))


def has_stray_table_backups(directory: DirectoryService, db: str, table: str) -> bool:
    return bool(find_stray_backups(directory.table_rows(db), table))


def database_needs_fix(directory: DirectoryService, db: str) -> bool:
    """Return True if `db` is ambiguous or has stray backups to fold back in."""
    return is_database_duplicated(directory, db) or has_stray_database_backups(directory, db)


def table_needs_fix(directory: DirectoryService, db: str, table: str) -> bool:
    """Return True if `db.table` is ambiguous or has stray backups to fold back in."""
    return is_table_duplicated(directory, db, table) or has_stray_table_backups(directory, db, table)
