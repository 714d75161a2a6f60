"""Inspect and break the file lease that serializes schema work per database."""

from __future__ import annotations

import typer

from rdbinit.cli.common.context import AppContext
from rdbinit.cli.common.exits import exit_from_exc, ok_exit
from rdbinit.cli.common.options import YesOpt
from rdbinit.cli.common.output import out
from rdbinit.core.errors import LockFailure
from rdbinit.core.lock import force_release, marker_path, read_marker

lock_app = typer.Typer(
    help="Inspect or clear initialization locks.",
    no_args_is_help=True,
)


@lock_app.command("status")
def status(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Lock key (the database name)"),
):
    """Show who holds the initialization lock of a database."""
    appctx: AppContext = ctx.obj
    settings = appctx.settings
    lease = read_marker(name, lock_dir=settings.lock_dir, prefix=settings.lock_prefix)
    if lease is None:
        ok_exit(f"Lock '{name}' is free")

    out.header(str(marker_path(name, lock_dir=settings.lock_dir, prefix=settings.lock_prefix)))
    out.lease(name, lease)


@lock_app.command("release")
def release(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Lock key (the database name)"),
    yes: bool = YesOpt,
):
    """
    Remove a lock marker left behind by a crashed holder.

    The marker is removed whoever owns it; a live holder will notice on its
    next lease check and stop before any destructive step.
    """
    appctx: AppContext = ctx.obj
    settings = appctx.settings
    lease = read_marker(name, lock_dir=settings.lock_dir, prefix=settings.lock_prefix)
    if lease is None:
        ok_exit(f"Lock '{name}' is free")

    out.lease(name, lease)
    if not lease.expired:
        out.warn("The lease has not expired, its holder may still be running.")
    if not yes and not out.confirm(f"Remove lock '{name}'?"):
        ok_exit("Cancelled")

    try:
        force_release(name, lock_dir=settings.lock_dir, prefix=settings.lock_prefix)
    except LockFailure as exc:
        exit_from_exc(exc, message=str(exc), code=1)
    out.success(f"Released lock '{name}'")
