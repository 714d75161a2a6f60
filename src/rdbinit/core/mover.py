"""Moving table contents between tables and databases.

Moves are copy-then-drop and not atomic: a crash between the copy and the
drop leaves the rows in both places (at-least-once), never in neither.
Re-running a database move is safe because already-moved tables no longer
appear in the source listing.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor

from rdbinit.core.directory import DirectoryService
from rdbinit.core.errors import DirectoryError
from rdbinit.core.models import ConflictPolicy, TableRef

logger = logging.getLogger(__name__)


def ensure_database(directory: DirectoryService, name: str) -> bool:
    """Create database `name` unless it exists. Returns True if it was created."""
    try:
        directory.create_database(name)
    except DirectoryError as exc:
        if not exc.is_already_exists:
            raise
        logger.debug("DB '%s' already exists.", name)
        return False
    logger.info("Created DB %s", name)
    return True


def move_table(
    directory: DirectoryService,
    source: TableRef,
    dest: TableRef,
    *,
    policy: ConflictPolicy = ConflictPolicy.KEEP_DESTINATION,
) -> TableRef:
    """
    Move all rows of `source` into `dest`.

    If `dest` exists the rows are copied with `policy` deciding primary-key
    collisions, then `source` is dropped. Otherwise `source` is renamed to
    `dest` in the catalog without touching the data.

    Returns:
        The destination reference.
    """
    if directory.table_exists(dest.db, dest.table):
        logger.debug("Table %s already exists, moving data", dest)
        directory.wait_ready(source.db, source.table)
        directory.wait_ready(dest.db, dest.table)
        rows = directory.read_rows(source.db, source.table)
        written = directory.insert_rows(dest.db, dest.table, rows, policy)
        if written < len(rows):
            logger.info(
                "Kept %d existing row(s) of %s on primary key collision (%s)",
                len(rows) - written,
                dest,
                policy.value,
            )
        directory.drop_table(source.db, source.table)
        logger.debug("Dropped table %s", source)
    else:
        logger.debug("Table %s doesn't exist, renaming %s", dest, source)
        directory.relocate_table(source, dest)
        logger.debug("Renamed table %s into %s", source, dest)
    return dest


def non_empty_tables(directory: DirectoryService, db: str) -> list[str]:
    """Return the tables of `db` that hold at least one row."""
    out: list[str] = []
    for table in directory.list_tables(db):
        try:
            directory.wait_ready(db, table)
            if directory.count_rows(db, table) > 0:
                out.append(table)
        except DirectoryError as exc:
            if not exc.is_not_found:
                raise
            logger.debug("Table %s.%s disappeared while scanning", db, table)
    return out


def move_tables(
    directory: DirectoryService,
    from_db: str,
    to_db: str,
    *,
    policy: ConflictPolicy = ConflictPolicy.KEEP_DESTINATION,
    max_parallel: int = 4,
) -> list[TableRef]:
    """
    Move every non-empty table of `from_db` into `to_db` under the same name.

    The destination database is created if missing. Tables are moved
    independently; there is no cross-table atomicity.

    Returns:
        The destination references of the moved tables.
    """
    if max_parallel < 1:
        raise ValueError("max_parallel must be >= 1")

    ensure_database(directory, to_db)
    directory.wait_ready(from_db)

    tables = non_empty_tables(directory, from_db)
    if not tables:
        return []

    moved: list[TableRef] = []
    with ThreadPoolExecutor(max_workers=min(max_parallel, len(tables))) as pool:
        futures = [
            pool.submit(
                move_table,
                directory,
                TableRef(from_db, t),
                TableRef(to_db, t),
                policy=policy,
            )
            for t in tables
        ]
        for f in futures:
            moved.append(f.result())

    logger.info("Moved %d table(s) from %s into %s", len(moved), from_db, to_db)
    return moved
