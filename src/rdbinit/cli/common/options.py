"""Common CLI options for the CLI."""

import typer

HostOpt = typer.Option(
    "localhost",
    "--host",
    "-H",
    envvar="RDB_HOST",
    help="RethinkDB host",
)

PortOpt = typer.Option(
    28015,
    "--port",
    envvar="RDB_PORT",
    help="RethinkDB client driver port",
)

UserOpt = typer.Option(
    "admin",
    "--user",
    "-u",
    envvar="RDB_USER",
    help="RethinkDB account",
)

PasswordOpt = typer.Option(
    "",
    "--password",
    envvar="RDB_PASSWORD",
    help="RethinkDB password (prefer the RDB_PASSWORD environment variable)",
    show_default=False,
)

LockDirOpt = typer.Option(
    None,
    "--lock-dir",
    help="Directory holding lock markers (default: system temp dir)",
)

VerboseOpt = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Log every step",
)

DbOpt = typer.Option(
    ...,
    "--db",
    "-d",
    help="Database to work on",
)

TableOpt = typer.Option(
    [],
    "--table",
    "-t",
    help="Table to check as well. This is reusable.",
    show_default=False,
)

ConflictPolicyOpt = typer.Option(
    None,
    "--conflict-policy",
    case_sensitive=False,
    help="Which row wins on primary key collisions while merging duplicates",
)

LockTimeoutOpt = typer.Option(
    None,
    "--lock-timeout",
    help="Give up waiting for the lock after this many seconds",
)

LedgerOpt = typer.Option(
    False,
    "--ledger/--no-ledger",
    help="Skip tables recorded in the local ledger instead of reconciling duplicates",
)

StateFileOpt = typer.Option(
    None,
    "--state-file",
    help="Ledger file (default: RDB_INIT_STATE_FILE or ./.rethinkdb-init-state.json)",
)

YesOpt = typer.Option(
    False,
    "--yes",
    "-y",
    help="Don't ask for confirmation",
)
