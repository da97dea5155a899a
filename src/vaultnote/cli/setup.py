"""Setup commands: init."""

from __future__ import annotations

from pathlib import Path

import click

from ._common import console, home_option
from ..audit import audit_event
from ..config import CONFIG_RELATIVE_PATH, VaultConfig, save_config
from ..store import LocalStore


def register_setup_commands(main: click.Group) -> None:
    """Register the init command."""

    @main.command()
    @home_option
    def init(home: str):
        """Create a vault in the home directory."""
        home_path = Path(home).expanduser()
        config_file = home_path / CONFIG_RELATIVE_PATH

        store = LocalStore(home_path)
        store.initialize()
        device = store.load_encryption_settings().device_id

        if config_file.exists():
            console.print(f"  Vault already exists at [cyan]{home_path}[/]")
            return

        save_config(home_path, VaultConfig())
        audit_event(home_path, "INIT", "Vault created", {"device": device})
        console.print(f"\n  [bold green]Vault created[/] at [cyan]{home_path}[/]")
        console.print(f"  [dim]Device id: {device}[/]")
        console.print("  Next: [bold]vaultnote remote set --owner OWNER --repo REPO[/]\n")
