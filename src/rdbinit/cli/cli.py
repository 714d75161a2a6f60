"""CLI application for RethinkDB schema bootstrapping."""

import typer

from rdbinit.cli.commands.lock import lock_app
from rdbinit.cli.commands.schema import check, fix, init_cmd
from rdbinit.cli.common.context import build_context
from rdbinit.cli.common.logs import setup_logging
from rdbinit.cli.common.options import (
    HostOpt,
    LockDirOpt,
    PasswordOpt,
    PortOpt,
    UserOpt,
    VerboseOpt,
)

app = typer.Typer(
    help="rdbinit - create RethinkDB databases, tables and indexes, fixing duplicates",
    no_args_is_help=True,
)


@app.callback()
def _init(
    ctx: typer.Context,
    host: str = HostOpt,
    port: int = PortOpt,
    user: str = UserOpt,
    password: str = PasswordOpt,
    lock_dir: str | None = LockDirOpt,
    verbose: bool = VerboseOpt,
):
    """Initialize logging and the connection context."""
    setup_logging(verbose)
    ctx.obj = build_context(host=host, port=port, user=user, password=password, lock_dir=lock_dir)


app.command("init")(init_cmd)
app.command("check")(check)
app.command("fix")(fix)
app.add_typer(lock_app, name="lock")


if __name__ == "__main__":
    app()
