"""Commands for initializing a schema and resolving duplicate catalog entries."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import typer

from rdbinit.cli.common.context import AppContext
from rdbinit.cli.common.exits import die, exit_from_exc, ok_exit
from rdbinit.cli.common.options import (
    ConflictPolicyOpt,
    DbOpt,
    LedgerOpt,
    LockTimeoutOpt,
    StateFileOpt,
    TableOpt,
    YesOpt,
)
from rdbinit.cli.common.output import out
from rdbinit.core.detector import (
    database_needs_fix,
    find_stray_backups,
    is_database_duplicated,
    is_table_duplicated,
    table_needs_fix,
)
from rdbinit.core.errors import (
    DirectoryError,
    InitializationError,
    LockFailure,
    ReconciliationFailure,
    SchemaError,
    StateCorruption,
)
from rdbinit.core.initializer import init
from rdbinit.core.models import ConflictPolicy, TableSpec
from rdbinit.core.reconciler import ReconcileReport, Reconciler
from rdbinit.core.state import Ledger

logger = logging.getLogger(__name__)


def load_schema_file(path: Path) -> list:
    """Read a JSON schema descriptor (an array of table entries)."""
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, list):
        raise ValueError("Schema file must contain a JSON array of tables.")
    return data


def init_cmd(
    ctx: typer.Context,
    schema_file: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True, help="JSON schema descriptor"
    ),
    db: str = DbOpt,
    ledger: bool = LedgerOpt,
    state_file: str | None = StateFileOpt,
    conflict_policy: ConflictPolicy | None = ConflictPolicyOpt,
    lock_timeout: float | None = LockTimeoutOpt,
):
    """
    Create the database, tables and indexes of a schema, fixing duplicates.
    """
    appctx: AppContext = ctx.obj

    try:
        schema = load_schema_file(schema_file)
    except (OSError, ValueError) as exc:
        exit_from_exc(exc, message=f"Cannot read schema file {schema_file}: {exc}", code=2)

    settings = appctx.settings_with(
        conflict_policy=conflict_policy,
        lock_timeout=lock_timeout,
        state_file=state_file,
    )

    ledger_obj = None
    if ledger:
        try:
            ledger_obj = Ledger(settings.state_file)
        except StateCorruption as exc:
            exit_from_exc(exc, message=str(exc), code=1)

    try:
        with out.status(f"Initializing {db}..."):
            conn = init(
                appctx.config_for(db),
                schema,
                settings=settings,
                directory_factory=appctx.connect,
                ledger=ledger_obj,
            )
    except SchemaError as exc:
        exit_from_exc(exc, message=str(exc), code=2)
    except InitializationError as exc:
        exit_from_exc(exc, message=f"{exc}: {exc.__cause__}", code=1)

    report = conn.report
    conn.close()

    if report.database_reconcile is not None:
        out.warn(f"Duplicate databases named '{db}' were fixed")
    out.success(
        f"Database {db} {'created' if report.database_created else 'already existed'}"
    )
    if report.tables:
        out.table_results_table(report.tables, title=f"Tables of {db}")

    reports = [r.reconcile for r in report.tables if r.reconcile is not None]
    if report.database_reconcile is not None:
        reports.insert(0, report.database_reconcile)
    if reports:
        out.reconcile_table(reports)

    if any(r.leftovers for r in reports):
        die("Some duplicates still hold data that could not be merged.", code=1)


def check(
    ctx: typer.Context,
    db: str = DbOpt,
    table: list[str] = TableOpt,
):
    """
    Check a database (and optionally tables) for duplicate catalog entries.
    """
    appctx: AppContext = ctx.obj
    directory = appctx.open_directory(db)

    rows: list[tuple[str, str, list[str]]] = []
    try:
        with out.status(f"Checking {db}..."):
            db_duplicated = is_database_duplicated(directory, db)
            strays = [r.name for r in find_stray_backups(directory.database_rows(), db)]
            rows.append((db, "DUPLICATED" if db_duplicated else "OK", strays))

            for name in table:
                if db_duplicated:
                    rows.append((f"{db}.{name}", "SKIPPED", []))
                    continue
                duplicated = is_table_duplicated(directory, db, name)
                strays = [r.name for r in find_stray_backups(directory.table_rows(db), name)]
                rows.append((f"{db}.{name}", "DUPLICATED" if duplicated else "OK", strays))
    except DirectoryError as exc:
        exit_from_exc(exc, message=f"Cannot check {db}: {exc}", code=1)
    finally:
        directory.close()

    out.duplicates_table(rows, title=f"Duplicate check for {db}")

    if any(status != "OK" or strays for _, status, strays in rows):
        out.warn(f"Run `rdbinit fix --db {db}` to resolve the duplicates.")
        raise typer.Exit(1)
    out.success("No duplicates found")


def fix(
    ctx: typer.Context,
    db: str = DbOpt,
    table: list[str] = TableOpt,
    conflict_policy: ConflictPolicy | None = ConflictPolicyOpt,
    lock_timeout: float | None = LockTimeoutOpt,
    yes: bool = YesOpt,
):
    """
    Resolve duplicate databases/tables under the initialization lock.
    """
    appctx: AppContext = ctx.obj
    settings = appctx.settings_with(conflict_policy=conflict_policy, lock_timeout=lock_timeout)

    if not yes and not out.confirm(f"Rename, merge and drop duplicates of '{db}'?"):
        ok_exit("Cancelled")

    directory = appctx.open_directory(db)
    lock = appctx.lock_for(db, settings)
    reports: list[ReconcileReport] = []
    acquired = False

    try:
        try:
            with out.status(f"Waiting for lock {db}..."):
                lock.acquire(timeout=settings.lock_timeout)
        except LockFailure as exc:
            exit_from_exc(exc, message=str(exc), code=1)
        acquired = True

        reconciler = Reconciler(
            directory,
            policy=settings.conflict_policy,
            max_attempts=settings.max_reconcile_attempts,
            max_parallel=settings.max_parallel,
            lease_check=lock.renew,
        )
        try:
            with out.status(f"Fixing {db}..."):
                if database_needs_fix(directory, db):
                    reports.append(reconciler.reconcile_database(db))
                for name in table:
                    if table_needs_fix(directory, db, name):
                        reports.append(reconciler.reconcile_table(db, TableSpec(name=name)))
        except (ReconciliationFailure, DirectoryError) as exc:
            cause = exc.__cause__ or exc
            exit_from_exc(exc, message=f"{exc}: {cause}", code=1)
    finally:
        try:
            if acquired:
                lock.release()
        except LockFailure as exc:
            logger.error("Cannot unset lock of '%s': %s", db, exc)
        directory.close()

    if not reports:
        ok_exit("No duplicates found")

    out.reconcile_table(reports)
    if any(r.leftovers for r in reports):
        die("Some duplicates still hold data that could not be merged.", code=1)
    out.success(f"Fixed {len(reports)} duplicate set(s)")
