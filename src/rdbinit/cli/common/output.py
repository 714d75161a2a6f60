"""Output formatting utilities for the CLI."""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import questionary
from rich.console import Console
from rich.table import Table
from rich.theme import Theme

from rdbinit.cli.common.tui_style import QUESTIONARY_STYLE_CONFIRM

_THEME = Theme(
    {
        "ok": "bold green",
        "warn": "yellow",
        "err": "bold red",
        "title": "bold cyan",
        "meta": "dim",
    }
)

console = Console(theme=_THEME)


def _yes_no(value: bool) -> str:
    return "yes" if value else "no"


def _fmt_time(epoch: float) -> str:
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(epoch))


@dataclass(frozen=True)
class Out:
    """Output formatter for CLI messages and tables."""

    def _q(self, message: str) -> str:
        """Prefix Questionary prompts to be RDB-INIT consistent."""
        return f"[RDB-INIT] {message}"

    def info(self, msg: str) -> None:
        """Print an info message."""
        console.print(f"[title]›[/] {msg}")

    @contextmanager
    def status(self, msg: str):
        """Show a transient status spinner while work is in progress."""
        with console.status(msg, spinner="dots"):
            yield

    def success(self, msg: str) -> None:
        """Print a success message."""
        console.print(f"[ok]✓[/] {msg}")

    def warn(self, msg: str) -> None:
        """Print a warning message."""
        console.print(f"[warn]⚠[/] {msg}")

    def error(self, msg: str) -> None:
        """Print an error message."""
        console.print(f"[err]✗[/] {msg}")

    def header(self, title: str) -> None:
        """Print a header message."""
        console.print(f"[title]{title}[/]")

    def kv(self, items: Mapping[str, Any]) -> None:
        """Print key-value pairs."""
        for k, v in items.items():
            console.print(f"[meta]{k}[/]: {v}")

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """
        Ask the user for confirmation using a standardized Questionary prompt.

        Args:
            message: Confirmation question shown to the user.
            default: Default answer if the user just presses enter.

        Returns:
            True if the user confirms, False otherwise.
        """
        # Questionary renders `instruction=...` inline, next to the echoed answer.
        console.print("[meta]Use y/n then Enter[/]")

        prompt = questionary.confirm(
            self._q(message),
            default=default,
            style=QUESTIONARY_STYLE_CONFIRM,
            qmark="✦",
            auto_enter=False,
        )
        return bool(prompt.ask())

    def table_results_table(self, results: Iterable[Any], title: str = "Tables") -> None:
        """
        Render per-table initialization results.

        Expects objects with `.table`, `.created`, `.skipped`, `.reconcile`,
        `.indexes` and `.index_errors` (like rdbinit.core.initializer.TableResult).
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Table", style="ok")
        t.add_column("Created")
        t.add_column("Duplicates fixed")
        t.add_column("Indexes", style="meta")
        t.add_column("Error", style="err")

        for r in results:
            if getattr(r, "skipped", False):
                created = "[meta]in ledger[/]"
            else:
                created = _yes_no(getattr(r, "created", False))
            t.add_row(
                str(r.table),
                created,
                _yes_no(getattr(r, "reconcile", None) is not None),
                ", ".join(getattr(r, "indexes", ()) or ()),
                "; ".join(getattr(r, "index_errors", ()) or ()),
            )

        console.print(t)

    def duplicates_table(self, rows: Iterable[tuple[str, str, list[str]]], title: str = "Duplicates") -> None:
        """Render duplicate-check results as (object, status, stray backups) rows."""
        t = Table(title=title, show_lines=False)
        t.add_column("Object", style="ok")
        t.add_column("Status")
        t.add_column("Stray backups", style="meta")

        for name, status, strays in rows:
            style = "ok" if status == "OK" else "err" if status == "DUPLICATED" else "warn"
            t.add_row(name, f"[{style}]{status}[/{style}]", ", ".join(strays))

        console.print(t)

    def reconcile_table(self, reports: Iterable[Any], title: str = "Reconciliation") -> None:
        """
        Render reconciliation reports.

        Expects objects with `.target`, `.attempts`, `.dropped`, `.merged`,
        `.leftovers` and `.verified` (like rdbinit.core.reconciler.ReconcileReport).
        """
        t = Table(title=title, show_lines=False)
        t.add_column("Target", style="ok")
        t.add_column("Attempts")
        t.add_column("Dropped", style="meta")
        t.add_column("Merged", style="meta")
        t.add_column("Leftovers", style="err")
        t.add_column("Result")

        for r in reports:
            merged = ", ".join(m.backup for m in getattr(r, "merged", ()) or ())
            result = "[ok]OK[/]" if getattr(r, "verified", False) else "[err]FAIL[/]"
            t.add_row(
                str(r.target),
                str(r.attempts),
                ", ".join(r.dropped),
                merged,
                ", ".join(r.leftovers),
                result,
            )

        console.print(t)

    def lease(self, key: str, lease: Any) -> None:
        """Print the fields of a lock lease (rdbinit.core.lock.Lease)."""
        state = "[err]expired[/]" if lease.expired else "[ok]active[/]"
        self.kv(
            {
                "lock": key,
                "owner": lease.owner_id or "unknown",
                "token": lease.token,
                "acquired": _fmt_time(lease.acquired_at) if lease.acquired_at else "-",
                "expires": _fmt_time(lease.expires_at) if lease.expires_at else "-",
                "state": state,
            }
        )


out = Out()
