"""Resolution of duplicate catalog entries.

When two initializers race, the catalog can end up with several rows that
share one display name but have distinct ids. The reconciler resolves such a
duplicate set deterministically:

  1) fetch every row named like the target (plus stray backups left by an
     interrupted earlier pass)
  2) rename each row by id to `<name>_<first id segment>`
  3) drop the backups that are empty, stage the others
  4) merge every staged backup into the canonical name
  5) recreate the canonical name if every duplicate was empty
  6) verify the name is unambiguous again, retrying a bounded number of times

Rows are addressed by id from step 2 on, so the per-row steps can run
concurrently and merges can happen in any order.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from rdbinit.core.detector import (
    backup_name,
    find_stray_backups,
    is_database_duplicated,
    is_table_duplicated,
)
from rdbinit.core.directory import DirectoryService
from rdbinit.core.errors import DirectoryError, ReconciliationFailure
from rdbinit.core.models import CatalogRow, ConflictPolicy, DuplicateRecord, TableRef, TableSpec
from rdbinit.core.mover import ensure_database, move_table, move_tables, non_empty_tables

logger = logging.getLogger(__name__)


class ReconcileState(str, Enum):
    """
    Lifecycle of one duplicate catalog row.

    DETECTED -> RENAMED -> EMPTY -> DROPPED
                        -> NONEMPTY -> STAGED -> MERGE_PENDING -> MERGED
    Rows that reach DROPPED or MERGED become VERIFIED once the name resolves
    to a single row again. FAILED marks the row being processed when an
    error aborted the pass.
    """

    DETECTED = "DETECTED"
    RENAMED = "RENAMED"
    EMPTY = "EMPTY"
    DROPPED = "DROPPED"
    NONEMPTY = "NONEMPTY"
    STAGED = "STAGED"
    MERGE_PENDING = "MERGE_PENDING"
    MERGED = "MERGED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"


_TRANSITIONS: dict[ReconcileState, frozenset[ReconcileState]] = {
    ReconcileState.DETECTED: frozenset({ReconcileState.RENAMED}),
    ReconcileState.RENAMED: frozenset({ReconcileState.EMPTY, ReconcileState.NONEMPTY}),
    ReconcileState.EMPTY: frozenset({ReconcileState.DROPPED}),
    ReconcileState.NONEMPTY: frozenset({ReconcileState.STAGED}),
    ReconcileState.STAGED: frozenset({ReconcileState.MERGE_PENDING}),
    ReconcileState.MERGE_PENDING: frozenset({ReconcileState.MERGED}),
    ReconcileState.DROPPED: frozenset({ReconcileState.VERIFIED}),
    ReconcileState.MERGED: frozenset({ReconcileState.VERIFIED}),
    ReconcileState.VERIFIED: frozenset(),
    ReconcileState.FAILED: frozenset(),
}


@dataclass
class RowOutcome:
    """Progress of one duplicate row through the reconciliation states."""

    row_id: str
    backup: str
    state: ReconcileState = ReconcileState.DETECTED
    history: list[ReconcileState] = field(default_factory=lambda: [ReconcileState.DETECTED])

    def advance(self, state: ReconcileState) -> None:
        if state is not ReconcileState.FAILED and state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid transition {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)


@dataclass
class ReconcileReport:
    """
    Result of reconciling one logical name.

    Attributes:
        target: Human-readable name of the reconciled database or table.
        attempts: Number of passes that were needed.
        outcomes: Per-row outcomes over all passes.
        merged: Backups whose contents were merged into the canonical name.
        leftovers: Backups that still hold data after merging.
        recreated: True if the canonical entity had to be created again.
        verified: True once the name resolved to exactly one row.
    """

    target: str
    attempts: int = 0
    outcomes: list[RowOutcome] = field(default_factory=list)
    merged: list[DuplicateRecord] = field(default_factory=list)
    leftovers: list[str] = field(default_factory=list)
    recreated: bool = False
    verified: bool = False

    @property
    def dropped(self) -> list[str]:
        return [
            o.backup
            for o in self.outcomes
            if ReconcileState.DROPPED in o.history
        ]


class CatalogScope(ABC):
    """
    The part of the catalog that one duplicate set lives in.

    Subclasses bind the generic algorithm to the database catalog or to the
    table catalog of one database.
    """

    name: str

    @property
    @abstractmethod
    def label(self) -> str: ...

    @abstractmethod
    def rows(self) -> list[CatalogRow]:
        """Return every catalog row in this scope."""

    @abstractmethod
    def rename(self, row_id: str, new_name: str) -> None: ...

    @abstractmethod
    def is_empty(self, name: str) -> bool: ...

    @abstractmethod
    def drop(self, name: str) -> None: ...

    @abstractmethod
    def merge(self, record: DuplicateRecord, report: ReconcileReport) -> None: ...

    @abstractmethod
    def exists(self) -> bool: ...

    @abstractmethod
    def recreate(self) -> None: ...

    @abstractmethod
    def duplicated(self) -> bool: ...

    def pending_rows(self) -> list[CatalogRow]:
        """Return the rows that have to go through a reconciliation pass."""
        rows = self.rows()
        named = [r for r in rows if r.name == self.name]
        strays = find_stray_backups(rows, self.name)
        if len(named) < 2:
            return strays
        return named + strays


class DatabaseScope(CatalogScope):
    def __init__(
        self,
        directory: DirectoryService,
        name: str,
        *,
        policy: ConflictPolicy,
        max_parallel: int,
    ) -> None:
        self.directory = directory
        self.name = name
        self.policy = policy
        self.max_parallel = max_parallel

    @property
    def label(self) -> str:
        return f"database '{self.name}'"

    def rows(self) -> list[CatalogRow]:
        return self.directory.database_rows()

    def rename(self, row_id: str, new_name: str) -> None:
        self.directory.rename_database_by_id(row_id, new_name)
        logger.debug("Renamed database %s/%s into %s", self.name, row_id, new_name)

    def is_empty(self, name: str) -> bool:
        return self.directory.count_tables(name) == 0

    def drop(self, name: str) -> None:
        self.directory.drop_database(name)

    def merge(self, record: DuplicateRecord, report: ReconcileReport) -> None:
        move_tables(
            self.directory,
            record.backup,
            record.origin,
            policy=self.policy,
            max_parallel=self.max_parallel,
        )
        # Whatever is left in the backup now is empty tables only.
        remaining = non_empty_tables(self.directory, record.backup)
        if remaining:
            logger.error(
                "Database %s still holds data after merging into %s: %s",
                record.backup,
                record.origin,
                ", ".join(remaining),
            )
            report.leftovers.append(record.backup)
            return
        self.drop(record.backup)
        logger.debug("Dropped merged duplicate database %s", record.backup)

    def exists(self) -> bool:
        return self.directory.database_exists(self.name)

    def recreate(self) -> None:
        ensure_database(self.directory, self.name)

    def duplicated(self) -> bool:
        return is_database_duplicated(self.directory, self.name)


class TableScope(CatalogScope):
    def __init__(
        self,
        directory: DirectoryService,
        db: str,
        spec: TableSpec,
        *,
        policy: ConflictPolicy,
    ) -> None:
        self.directory = directory
        self.db = db
        self.spec = spec
        self.name = spec.name
        self.policy = policy

    @property
    def label(self) -> str:
        return f"table '{self.db}.{self.name}'"

    def rows(self) -> list[CatalogRow]:
        return self.directory.table_rows(self.db)

    def rename(self, row_id: str, new_name: str) -> None:
        self.directory.rename_table_by_id(row_id, new_name)
        logger.debug("Renamed table %s.%s (%s) into %s", self.db, self.name, row_id, new_name)

    def is_empty(self, name: str) -> bool:
        try:
            self.directory.wait_ready(self.db, name)
            return self.directory.count_rows(self.db, name) == 0
        except DirectoryError as exc:
            if not exc.is_not_found:
                raise
            return True

    def drop(self, name: str) -> None:
        self.directory.drop_table(self.db, name)

    def merge(self, record: DuplicateRecord, report: ReconcileReport) -> None:
        move_table(
            self.directory,
            TableRef(self.db, record.backup),
            TableRef(self.db, record.origin),
            policy=self.policy,
        )

    def exists(self) -> bool:
        return self.directory.table_exists(self.db, self.name)

    def recreate(self) -> None:
        try:
            self.directory.create_table(self.db, self.spec)
        except DirectoryError as exc:
            if not exc.is_already_exists:
                raise
            logger.debug("Table %s.%s already exists", self.db, self.name)

    def duplicated(self) -> bool:
        return is_table_duplicated(self.directory, self.db, self.name)


class Reconciler:
    """
    Resolves duplicate databases and tables.

    Args:
        directory: Directory Service session.
        policy: Primary-key conflict policy used when merging rows.
        max_attempts: Upper bound on passes before giving up.
        max_parallel: Thread pool size for the per-row steps and table moves.
        lease_check: Optional callable invoked before every destructive step;
            it should raise if this process no longer holds the lock and
            extend the lease otherwise.
    """

    def __init__(
        self,
        directory: DirectoryService,
        *,
        policy: ConflictPolicy = ConflictPolicy.KEEP_DESTINATION,
        max_attempts: int = 3,
        max_parallel: int = 4,
        lease_check: Callable[[], object] | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if max_parallel < 1:
            raise ValueError("max_parallel must be >= 1")
        self.directory = directory
        self.policy = policy
        self.max_attempts = max_attempts
        self.max_parallel = max_parallel
        self.lease_check = lease_check

    def reconcile_database(self, db: str) -> ReconcileReport:
        """Resolve duplicate databases named `db`."""
        scope = DatabaseScope(
            self.directory, db, policy=self.policy, max_parallel=self.max_parallel
        )
        return self.run(scope)

    def reconcile_table(self, db: str, spec: TableSpec) -> ReconcileReport:
        """Resolve duplicate tables named `spec.name` inside `db`."""
        return self.run(TableScope(self.directory, db, spec, policy=self.policy))

    def _check_lease(self) -> None:
        if self.lease_check is not None:
            self.lease_check()

    def _stage_row(self, scope: CatalogScope, row: CatalogRow) -> tuple[RowOutcome, DuplicateRecord | None]:
        backup = backup_name(scope.name, row.id)
        outcome = RowOutcome(row_id=row.id, backup=backup)
        try:
            if row.name != backup:
                scope.rename(row.id, backup)
            outcome.advance(ReconcileState.RENAMED)

            if not scope.is_empty(backup):
                outcome.advance(ReconcileState.NONEMPTY)
                outcome.advance(ReconcileState.STAGED)
                logger.debug("%s copy %s (%s) is not empty, staging it", scope.label, backup, row.id)
                return outcome, DuplicateRecord(origin=scope.name, backup=backup, source_id=row.id)

            outcome.advance(ReconcileState.EMPTY)
            self._check_lease()
            try:
                scope.drop(backup)
            except DirectoryError as exc:
                if not exc.is_not_found:
                    raise
            outcome.advance(ReconcileState.DROPPED)
            logger.debug("Dropped empty duplicate %s (%s / %s)", backup, scope.name, row.id)
            return outcome, None
        except Exception:
            outcome.advance(ReconcileState.FAILED)
            raise

    def _stage(
        self, scope: CatalogScope, rows: list[CatalogRow], report: ReconcileReport
    ) -> list[DuplicateRecord]:
        with ThreadPoolExecutor(max_workers=min(self.max_parallel, len(rows))) as pool:
            futures = [pool.submit(self._stage_row, scope, row) for row in rows]
            results = [f.result() for f in futures]

        records: list[DuplicateRecord] = []
        for outcome, record in results:
            report.outcomes.append(outcome)
            if record is not None:
                records.append(record)
        return records

    def _merge(self, scope: CatalogScope, records: list[DuplicateRecord], report: ReconcileReport) -> None:
        by_id = {o.row_id: o for o in report.outcomes}
        for record in records:
            by_id[record.source_id].advance(ReconcileState.MERGE_PENDING)
        for record in records:
            self._check_lease()
            outcome = by_id[record.source_id]
            try:
                scope.merge(record, report)
            except Exception:
                outcome.advance(ReconcileState.FAILED)
                raise
            outcome.advance(ReconcileState.MERGED)
            report.merged.append(record)

    def _pass(self, scope: CatalogScope, report: ReconcileReport) -> bool:
        rows = scope.pending_rows()
        if rows:
            logger.info("Got %d duplicate(s) of %s", len(rows), scope.label)
            records = self._stage(scope, rows, report)
            self._merge(scope, records, report)

        if not scope.exists():
            scope.recreate()
            report.recreated = True

        return not scope.duplicated()

    def run(self, scope: CatalogScope) -> ReconcileReport:
        """
        Reconcile one duplicate set.

        Raises:
            ReconciliationFailure: A pass failed, or the name was still
                ambiguous after `max_attempts` passes. The underlying fault is
                chained as `__cause__`.
        """
        report = ReconcileReport(target=scope.label)
        try:
            for attempt in range(1, self.max_attempts + 1):
                report.attempts = attempt
                if self._pass(scope, report):
                    for outcome in report.outcomes:
                        if outcome.state in (ReconcileState.DROPPED, ReconcileState.MERGED):
                            outcome.advance(ReconcileState.VERIFIED)
                    report.verified = True
                    logger.info("Successfully fixed duplicate %s", scope.label)
                    return report
                logger.warning(
                    "%s became ambiguous again (attempt %d/%d)",
                    scope.label,
                    attempt,
                    self.max_attempts,
                )
        except Exception as exc:  # noqa: BLE001
            logger.error("Something wrong happened during fixing of duplicate %s: %s", scope.label, exc)
            raise ReconciliationFailure(scope.label, "Could not fix duplicates") from exc

        raise ReconciliationFailure(
            scope.label, f"Still ambiguous after {self.max_attempts} attempt(s)"
        )
