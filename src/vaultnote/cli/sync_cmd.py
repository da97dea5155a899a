"""Sync commands: run, status."""

from __future__ import annotations

import sys

import click

from ._common import (
    console,
    encryption_result_message,
    format_time,
    home_option,
    open_runtime,
    require_remote,
    run_async,
)
from ..sync.encryption import EncryptionLockedError, EncryptionNotReadyError
from ..sync.models import OutcomeKind
from ..sync.remote import RemoteError, friendly_error

from rich.panel import Panel
from rich.table import Table


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Synchronize with the remote repository."""

    @sync.command("run")
    @home_option
    @click.option(
        "--password",
        envvar="VAULTNOTE_PASSWORD",
        default=None,
        help="Master password when encryption is on (or $VAULTNOTE_PASSWORD).",
    )
    def sync_run(home, password):
        """Run one sync pass now."""
        runtime = open_runtime(home)
        require_remote(runtime)

        if runtime.store.load_encryption_settings().enabled:
            if password is None:
                password = click.prompt("Master password", hide_input=True)
            if not runtime.coordinator.unlock(password):
                console.print("  [bold red]Wrong password.[/]")
                sys.exit(1)

        async def _run(rt):
            await rt.coordinator.recover_stale_lock()
            return await rt.sync_now("cli")

        console.print("\n  Syncing...", end=" ")
        try:
            report = run_async(runtime, _run)
        except EncryptionNotReadyError as exc:
            console.print("[yellow]blocked[/]")
            console.print(f"  Encryption: {encryption_result_message(exc.result)}\n")
            sys.exit(1)
        except EncryptionLockedError:
            console.print("[yellow]blocked[/]")
            console.print("  Another device is changing the password. Try again shortly.\n")
            sys.exit(1)
        except RemoteError as exc:
            console.print("[red]failed[/]")
            console.print(f"  {friendly_error(exc)}\n")
            sys.exit(1)

        if report is None:
            console.print("[yellow]skipped[/] (another operation is running)\n")
            return
        if report.error:
            console.print("[red]failed[/]")
            console.print(f"  {report.error}\n")
            sys.exit(1)

        console.print("[green]done[/]")
        console.print(f"  [dim]{report.summary()}[/]")
        for outcome in report.failures:
            label = "conflict" if outcome.kind == OutcomeKind.CONFLICT else "failed"
            console.print(f"    [red]{label}[/] {outcome.path}: {outcome.message}")
        console.print()

    @sync.command("status")
    @home_option
    def sync_status(home):
        """Show sync state and pending work."""
        runtime = open_runtime(home)
        info = runtime.status()
        state = runtime.store.load_sync_state()

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold")
        table.add_column()
        table.add_row("Remote", f"{info['remote']} ({info['branch']})" if info["remote"] else "[dim]none[/]")
        table.add_row("Notes", str(info["notes"]))
        table.add_row("Bookmarks", str(info["bookmarks"]))
        table.add_row("Pending upload", str(info["dirty"]))
        table.add_row("Pending deletion", str(info["pending_deletions"]))
        table.add_row("Encryption", f"v{info['encryption_version']} " + ("[green]on[/]" if info["encryption_enabled"] else "[dim]off[/]"))
        table.add_row("Last sync", format_time(state.last_sync))
        table.add_row("Last success", format_time(state.last_success))
        table.add_row("Passes", str(state.passes))
        if state.last_error:
            table.add_row("Last error", f"[red]{state.last_error}[/]")

        console.print()
        console.print(Panel(table, title="VaultNote Sync", border_style="bright_blue"))
        console.print()
