"""Shared utilities for all CLI command modules.

Provides the Rich console instance, the runtime bridge into asyncio,
and formatting helpers used across every command group.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

import click

from .. import VAULTNOTE_HOME
from ..models import Bookmark, Item, Note
from ..runtime import VaultRuntime, get_runtime
from ..sync.models import ChangePasswordResult, EncryptionSyncResult

from rich.console import Console

console = Console()
logger = logging.getLogger("vaultnote.cli")

T = TypeVar("T")


def home_option(func: Callable) -> Callable:
    """The ``--home`` option every command accepts."""
    return click.option(
        "--home", default=VAULTNOTE_HOME, help="VaultNote home directory.", type=click.Path()
    )(func)


def open_runtime(home: str) -> VaultRuntime:
    """Load the runtime, exiting if the home has not been initialized."""
    home_path = Path(home).expanduser()
    if not (home_path / "config").exists():
        console.print("[bold red]No vault found.[/] Run [bold]vaultnote init[/] first.")
        sys.exit(1)
    return get_runtime(home_path)


def run_async(runtime: VaultRuntime, work: Callable[[VaultRuntime], Awaitable[T]]) -> T:
    """Run an async operation against the runtime, then shut it down."""

    async def _go() -> T:
        try:
            return await work(runtime)
        finally:
            await runtime.stop()

    return asyncio.run(_go())


def require_remote(runtime: VaultRuntime) -> None:
    if not runtime.is_remote_configured:
        console.print(
            "[bold red]No remote repository.[/] "
            "Run [bold]vaultnote remote set --owner OWNER --repo REPO[/] first."
        )
        sys.exit(1)


def item_title(item: Item) -> str:
    if isinstance(item, Bookmark):
        return item.title
    return item.title or "[dim](untitled)[/]"


def sync_badge(item: Item) -> str:
    return "[green]synced[/]" if item.is_synced else "[yellow]pending[/]"


def format_time(value: Any) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "never"


def note_preview(note: Note, width: int = 60) -> str:
    first = note.content.strip().splitlines()[0] if note.content.strip() else ""
    return first if len(first) <= width else first[: width - 3] + "..."


def password_result_message(result: ChangePasswordResult) -> str:
    """Map a password-operation outcome to console markup.

    Args:
        result: Coordinator outcome.

    Returns:
        str: Rich markup string.
    """
    return {
        ChangePasswordResult.SUCCESS: "[bold green]Done.[/]",
        ChangePasswordResult.WRONG_PASSWORD: "[bold red]Wrong password.[/]",
        ChangePasswordResult.LOCKED_BY_ANOTHER_DEVICE: (
            "[bold yellow]Another device is changing the password.[/] Try again shortly."
        ),
        ChangePasswordResult.ERROR: "[bold red]The remote update failed.[/] Nothing was changed.",
    }[result]


def encryption_result_message(result: EncryptionSyncResult) -> str:
    return {
        EncryptionSyncResult.OK: "[green]in sync[/]",
        EncryptionSyncResult.NEEDS_PASSWORD: (
            "[yellow]password needed[/] (run [bold]vaultnote encryption unlock[/])"
        ),
        EncryptionSyncResult.VERSION_MISMATCH: (
            "[yellow]password changed on another device[/] (run [bold]vaultnote encryption unlock[/])"
        ),
        EncryptionSyncResult.DISABLED_REMOTELY: "[red]remote encryption config is missing[/]",
        EncryptionSyncResult.NOT_CONFIGURED: "[dim]no remote[/]",
    }[result]


def prompt_password(password: Optional[str], label: str = "Master password") -> str:
    if password:
        return password
    return click.prompt(label, hide_input=True)
