"""Schema initialization entry point.

`init()` connects to the store, takes the per-database lock, creates the
database, resolves duplicate databases, creates every table (resolving
duplicate tables) with its indexes, and releases the lock. Callers get the
live connection back, or an `InitializationError` whose message is one of a
few fixed templates and whose `__cause__` is the underlying fault.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, NoReturn

from rdbinit.core.config import InitSettings
from rdbinit.core.detector import database_needs_fix, table_needs_fix
from rdbinit.core.directory import DirectoryService
from rdbinit.core.errors import (
    DirectoryError,
    InitializationError,
    LockFailure,
    ReconciliationFailure,
)
from rdbinit.core.lock import SchemaLock
from rdbinit.core.models import (
    Connection,
    ConnectionConfig,
    TableSpec,
    parse_connection_config,
    parse_schema,
)
from rdbinit.core.mover import ensure_database
from rdbinit.core.reconciler import ReconcileReport, Reconciler
from rdbinit.core.state import Ledger

logger = logging.getLogger(__name__)

DirectoryFactory = Callable[[ConnectionConfig], DirectoryService]


@dataclass(frozen=True)
class TableResult:
    """
    Outcome of initializing one table.

    Attributes:
        table: Table name.
        created: True if this run created the table.
        skipped: True if the ledger already recorded the table.
        reconcile: Report of the duplicate resolution, if one was needed.
        indexes: Index names that exist after the run.
        index_errors: Messages of index creations that failed.
    """

    table: str
    created: bool = False
    skipped: bool = False
    reconcile: ReconcileReport | None = None
    indexes: tuple[str, ...] = ()
    index_errors: tuple[str, ...] = ()


@dataclass
class InitReport:
    """Summary of one initialization run."""

    db: str
    database_created: bool = False
    database_reconcile: ReconcileReport | None = None
    tables: list[TableResult] = field(default_factory=list)


def _default_factory(config: ConnectionConfig) -> DirectoryService:
    from rdbinit.core.adapters.rethink import RethinkDirectory

    return RethinkDirectory.connect(config)


class Initializer:
    """
    Creates one database and its tables on an open Directory Service session.

    With a `ledger` the initializer runs in ledger mode: tables already
    recorded are skipped and no duplicate detection or reconciliation
    happens. Without one, duplicates are detected and reconciled.
    """

    def __init__(
        self,
        directory: DirectoryService,
        db: str,
        *,
        settings: InitSettings | None = None,
        lock: SchemaLock | None = None,
        ledger: Ledger | None = None,
    ) -> None:
        self.directory = directory
        self.db = db
        self.settings = settings or InitSettings()
        self.lock = lock
        self.ledger = ledger
        self.report = InitReport(db=db)
        self.reconciler = Reconciler(
            directory,
            policy=self.settings.conflict_policy,
            max_attempts=self.settings.max_reconcile_attempts,
            max_parallel=self.settings.max_parallel,
            lease_check=lock.renew if lock is not None else None,
        )
        self._report_lock = threading.Lock()

    def _renew_lease(self) -> None:
        if self.lock is not None:
            self.lock.renew()

    def initialize_database(self) -> InitReport:
        """Create the database and resolve duplicates of it."""
        self.report.database_created = ensure_database(self.directory, self.db)
        if self.ledger is not None:
            return self.report

        target = f"database '{self.db}'"
        try:
            needs_fix = database_needs_fix(self.directory, self.db)
        except DirectoryError as exc:
            logger.error("Something wrong happened during checking for duplicate DBs '%s': %s", self.db, exc)
            raise ReconciliationFailure(target, "Could not check for duplicates") from exc

        if needs_fix:
            logger.warning("There is more than one DB named '%s', fixing", self.db)
            self.report.database_reconcile = self.reconciler.reconcile_database(self.db)
        self._renew_lease()
        return self.report

    def _create_table(self, spec: TableSpec) -> bool:
        self.directory.wait_ready(self.db)
        try:
            self.directory.create_table(self.db, spec)
        except DirectoryError as exc:
            if not exc.is_already_exists:
                raise
            logger.debug("Table %s.%s already exists", self.db, spec.name)
            return False
        logger.info("Created table %s.%s", self.db, spec.name)
        return True

    def _fix_table(self, spec: TableSpec) -> ReconcileReport | None:
        target = f"table '{self.db}.{spec.name}'"
        try:
            needs_fix = table_needs_fix(self.directory, self.db, spec.name)
        except DirectoryError as exc:
            logger.error(
                "Something wrong happened during checking for duplicate tables '%s.%s': %s",
                self.db,
                spec.name,
                exc,
            )
            raise ReconciliationFailure(target, "Could not check for duplicates") from exc
        if not needs_fix:
            return None
        logger.warning("There is more than one table named '%s.%s', fixing", self.db, spec.name)
        return self.reconciler.reconcile_table(self.db, spec)

    def _create_indexes(self, spec: TableSpec) -> tuple[list[str], list[str]]:
        present: list[str] = []
        errors: list[str] = []
        for index in spec.indexes:
            try:
                self.directory.wait_ready(self.db, spec.name)
                self.directory.create_index(self.db, spec.name, index)
                logger.debug("Created index %s on %s.%s", index.name, self.db, spec.name)
            except DirectoryError as exc:
                if not exc.is_already_exists:
                    logger.warning(
                        "Created table %s.%s, couldn't create index %s: %s",
                        self.db,
                        spec.name,
                        index.name,
                        exc,
                    )
                    errors.append(f"{index.name}: {exc}")
                    continue
                logger.debug("Index %s on %s.%s already exists", index.name, self.db, spec.name)
            present.append(index.name)
        return present, errors

    def initialize_table(self, spec: TableSpec) -> TableResult:
        """Create one table, resolve duplicates of it and create its indexes."""
        if self.ledger is not None and self.ledger.get(self.db, spec) is not None:
            logger.debug("Table %s.%s is recorded in the ledger, skipping", self.db, spec.name)
            return TableResult(table=spec.name, skipped=True)

        created = self._create_table(spec)
        reconcile = self._fix_table(spec) if self.ledger is None else None
        indexes, errors = self._create_indexes(spec)

        if self.ledger is not None and not errors:
            self.ledger.add(self.db, spec)
        self._renew_lease()

        return TableResult(
            table=spec.name,
            created=created,
            reconcile=reconcile,
            indexes=tuple(indexes),
            index_errors=tuple(errors),
        )

    def initialize_tables(self, specs: list[TableSpec]) -> list[TableResult]:
        """Initialize all tables concurrently; results keep the schema order."""
        if not specs:
            return []
        with ThreadPoolExecutor(max_workers=min(self.settings.max_parallel, len(specs))) as pool:
            futures = [pool.submit(self.initialize_table, spec) for spec in specs]
            results = [f.result() for f in futures]
        with self._report_lock:
            self.report.tables.extend(results)
        return results


def _fail(message: str, exc: BaseException) -> NoReturn:
    logger.error("%s: %s", message, exc)
    raise InitializationError(message) from exc


def _release_quietly(lock: SchemaLock) -> None:
    try:
        lock.release()
    except LockFailure as exc:
        logger.error("Cannot unset lock of '%s': %s", lock.key, exc)


def init(
    config: ConnectionConfig | dict[str, Any],
    schema: list[Any],
    *,
    settings: InitSettings | None = None,
    directory_factory: DirectoryFactory | None = None,
    ledger: Ledger | None = None,
    cancel: threading.Event | None = None,
) -> Connection:
    """
    Initialize a database and its tables and return the live connection.

    Args:
        config: Connection target; must name the database (`db`).
        schema: Ordered list of table descriptors (names or mappings).
        settings: Lock, reconciliation and concurrency settings. Defaults to
            `InitSettings.from_env()`.
        directory_factory: Opens the Directory Service session. Defaults to
            the RethinkDB adapter.
        ledger: Switches to ledger mode (no reconciliation) when given.
        cancel: Event that aborts waiting for the lock.

    Raises:
        SchemaError: `config` or `schema` is malformed.
        InitializationError: Anything else went wrong; see `__cause__`.
    """
    cfg = parse_connection_config(config)
    tables = parse_schema(schema)
    settings = settings or InitSettings.from_env()
    factory = directory_factory or _default_factory

    try:
        directory = factory(cfg)
    except Exception as exc:  # noqa: BLE001
        _fail("Cannot establish connection", exc)

    # The lock key comes from the requested config, never from the session.
    lock = SchemaLock(
        cfg.db,
        lock_dir=settings.lock_dir,
        prefix=settings.lock_prefix,
        poll_interval=settings.lock_poll_interval,
        lease_ttl=settings.lease_ttl,
    )
    try:
        lock.acquire(timeout=settings.lock_timeout, cancel=cancel)
    except Exception as exc:  # noqa: BLE001
        directory.close()
        _fail("Cannot acquire initialization lock", exc)

    initializer = Initializer(directory, cfg.db, settings=settings, lock=lock, ledger=ledger)
    succeeded = False
    try:
        try:
            initializer.initialize_database()
        except Exception as exc:  # noqa: BLE001
            _fail("Could not initialize DB", exc)

        try:
            results = initializer.initialize_tables(tables)
            if ledger is not None:
                ledger.save()
        except Exception as exc:  # noqa: BLE001
            _fail("Could not create tables", exc)

        logger.info(
            "Initialized %s with %d table(s)",
            cfg.db,
            sum(1 for r in results if not r.skipped),
        )
        succeeded = True
    finally:
        _release_quietly(lock)
        if not succeeded:
            directory.close()

    return Connection(db=cfg.db, directory=directory, report=initializer.report)
