"""
VaultNote CLI — notes and bookmarks from the command line.

The main Click group is defined here and each command group lives in
its own module, registered via its register function.

Entry point: vaultnote.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="vaultnote")
@click.option("-v", "--verbose", is_flag=True, help="Log sync activity to stderr.")
def main(verbose: bool):
    """VaultNote — notes and bookmarks in your own Git repository."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups/commands from modular files
# ---------------------------------------------------------------------------

from .setup import register_setup_commands
from .remote import register_remote_commands
from .items import register_item_commands
from .sync_cmd import register_sync_commands
from .encryption import register_encryption_commands

register_setup_commands(main)
register_remote_commands(main)
register_item_commands(main)
register_sync_commands(main)
register_encryption_commands(main)
