"""Encryption commands: enable, disable, change-password, status, unlock."""

from __future__ import annotations

import sys

import click

from ._common import (
    console,
    encryption_result_message,
    home_option,
    open_runtime,
    password_result_message,
    prompt_password,
    run_async,
)
from ..sync.models import ChangePasswordResult
from ..sync.remote import RemoteError, friendly_error

from rich.table import Table


def _finish(result: ChangePasswordResult) -> None:
    console.print(f"  {password_result_message(result)}")
    if result != ChangePasswordResult.SUCCESS:
        sys.exit(1)


def register_encryption_commands(main: click.Group) -> None:
    """Register the encryption command group."""

    @main.group()
    def encryption():
        """End-to-end encryption of synced content."""

    @encryption.command("enable")
    @home_option
    @click.option("--password", default=None, help="New master password (prompted if omitted).")
    @click.option(
        "--rewrite-history",
        is_flag=True,
        help="Replace the remote history with one encrypted commit.",
    )
    def encryption_enable(home, password, rewrite_history):
        """Turn on encryption with a master password."""
        runtime = open_runtime(home)
        if password is None:
            password = click.prompt("New master password", hide_input=True, confirmation_prompt=True)
        if rewrite_history and not click.confirm(
            "  Rewriting history deletes every old commit on the branch. Continue?", default=False
        ):
            return
        result = run_async(runtime, lambda rt: rt.coordinator.enable(password, rewrite_history=rewrite_history))
        _finish(result)
        if not rewrite_history and runtime.is_remote_configured:
            console.print("  [dim]Run [bold]vaultnote sync run[/] to upload encrypted copies.[/]")
            console.print("  [dim]Old plaintext versions remain in the repository history.[/]")

    @encryption.command("disable")
    @home_option
    @click.option("--password", default=None, help="Current master password.")
    @click.option("--remove-config", is_flag=True, help="Delete the remote encryption config.")
    def encryption_disable(home, password, remove_config):
        """Turn off encryption on every device."""
        runtime = open_runtime(home)
        password = prompt_password(password)
        result = run_async(runtime, lambda rt: rt.coordinator.disable(password, remove_config=remove_config))
        _finish(result)

    @encryption.command("change-password")
    @home_option
    @click.option("--old-password", default=None)
    @click.option("--new-password", default=None)
    def encryption_change_password(home, old_password, new_password):
        """Replace the master password."""
        runtime = open_runtime(home)
        old_password = prompt_password(old_password, "Current master password")
        if new_password is None:
            new_password = click.prompt("New master password", hide_input=True, confirmation_prompt=True)
        result = run_async(runtime, lambda rt: rt.coordinator.change_password(old_password, new_password))
        _finish(result)

    @encryption.command("unlock")
    @home_option
    @click.option("--password", default=None, help="Master password.")
    def encryption_unlock(home, password):
        """Check the password, adopting the remote one if it changed."""
        runtime = open_runtime(home)
        password = prompt_password(password)

        async def _unlock(rt):
            if rt.is_remote_configured:
                cfg, _ = await rt.coordinator.read_config()
                local = rt.store.load_encryption_settings()
                if cfg and cfg.enabled and (not local.enabled or cfg.version > local.version):
                    return await rt.coordinator.setup_from_remote(password)
                if rt.coordinator.unlock(password):
                    return await rt.coordinator.verify_with_remote(password)
                return False
            return rt.coordinator.unlock(password)

        try:
            ok = run_async(runtime, _unlock)
        except RemoteError as exc:
            console.print(f"  [red]{friendly_error(exc)}[/]")
            sys.exit(1)
        if not ok:
            console.print("  [bold red]Wrong password.[/]")
            sys.exit(1)
        console.print("  [bold green]Password accepted.[/]")

    @encryption.command("status")
    @home_option
    def encryption_status(home):
        """Compare local and remote encryption state."""
        runtime = open_runtime(home)
        local = runtime.store.load_encryption_settings()

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold")
        table.add_column()
        table.add_row("Local", f"v{local.version} " + ("[green]enabled[/]" if local.enabled else "[dim]disabled[/]"))
        table.add_row("Device", local.device_id)

        if runtime.is_remote_configured:
            try:
                result = run_async(runtime, lambda rt: rt.coordinator.detect_remote_state())
            except RemoteError as exc:
                console.print(table)
                console.print(f"  [red]{friendly_error(exc)}[/]")
                sys.exit(1)
            cfg = runtime.coordinator.last_remote_config
            if cfg:
                remote_desc = f"v{cfg.version} " + ("[green]enabled[/]" if cfg.enabled else "[dim]disabled[/]")
                if cfg.locked:
                    remote_desc += f" [yellow]locked by {cfg.device}[/]"
            else:
                remote_desc = "[dim]no config[/]"
            table.add_row("Remote", remote_desc)
            table.add_row("State", encryption_result_message(result))
        console.print(table)
