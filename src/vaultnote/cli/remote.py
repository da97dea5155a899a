"""Remote repository commands: set, show, disconnect."""

from __future__ import annotations

from typing import Optional

import click

from ._common import console, home_option, open_runtime, run_async
from ..sync.models import DEFAULT_API_URL, RemoteConfig

from rich.table import Table


def register_remote_commands(main: click.Group) -> None:
    """Register the remote command group."""

    @main.group()
    def remote():
        """Configure the Git repository your vault syncs to."""

    @remote.command("set")
    @home_option
    @click.option("--owner", required=True, help="Repository owner or organization.")
    @click.option("--repo", required=True, help="Repository name.")
    @click.option("--branch", default="main", show_default=True)
    @click.option("--token", default=None, help="Access token (else read from --token-env).")
    @click.option("--token-env", default="VAULTNOTE_GITHUB_TOKEN", show_default=True)
    @click.option("--api-url", default=DEFAULT_API_URL, show_default=True)
    def remote_set(home, owner, repo, branch, token: Optional[str], token_env, api_url):
        """Point the vault at a repository."""
        runtime = open_runtime(home)
        config = RemoteConfig(
            owner=owner,
            repo=repo,
            branch=branch,
            token=token,
            token_env_var=token_env,
            api_url=api_url,
        )
        run_async(runtime, lambda rt: rt.configure_remote(config))
        console.print(f"  Remote set to [cyan]{config.repo_key}[/] ({branch})")
        if not config.resolved_token():
            console.print(f"  [yellow]No token yet.[/] Export [bold]{token_env}[/] before syncing.")

    @remote.command("show")
    @home_option
    def remote_show(home):
        """Show the configured repository."""
        runtime = open_runtime(home)
        cfg = runtime.config.remote
        if not cfg.owner:
            console.print("  [dim]No remote configured.[/]")
            return

        table = Table(show_header=False, box=None, padding=(0, 2))
        table.add_column(style="bold")
        table.add_column()
        table.add_row("Repository", cfg.repo_key)
        table.add_row("Branch", cfg.branch)
        table.add_row("API", cfg.api_url)
        table.add_row(
            "Token",
            "[green]set[/]" if cfg.resolved_token() else f"[red]missing[/] (${cfg.token_env_var})",
        )
        console.print(table)

    @remote.command("disconnect")
    @home_option
    @click.option("--force", is_flag=True, help="Skip confirmation.")
    def remote_disconnect(home, force):
        """Forget the repository. Local items are kept."""
        runtime = open_runtime(home)
        if not force and not click.confirm("  Disconnect from the remote repository?", default=False):
            return
        run_async(runtime, lambda rt: rt.disconnect())
        console.print("  [green]Disconnected.[/] All items will upload to the next remote.")
