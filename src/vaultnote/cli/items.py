"""Item commands: note add/list/show/rm and bookmark add/list/rm."""

from __future__ import annotations

import sys
from typing import Optional

import click

from ._common import (
    console,
    format_time,
    home_option,
    item_title,
    note_preview,
    open_runtime,
    sync_badge,
)
from ..models import Bookmark, ItemKind, Note

from rich.panel import Panel
from rich.table import Table


def register_item_commands(main: click.Group) -> None:
    """Register the note and bookmark command groups."""

    @main.group()
    def note():
        """Create, list, read and delete notes."""

    @note.command("add")
    @home_option
    @click.argument("title")
    @click.option("--content", "-c", default=None, help="Note body. Reads stdin when omitted.")
    @click.option("--tag", "-t", multiple=True, help="Tag (repeatable).")
    @click.option("--folder", "-f", default="", help="Folder name.")
    def note_add(home, title, content: Optional[str], tag, folder):
        """Add a note."""
        runtime = open_runtime(home)
        if content is None:
            content = "" if sys.stdin.isatty() else sys.stdin.read()
        created = runtime.add_note(title, content=content, tags=list(tag), folder=folder)
        console.print(f"  Added note [cyan]{created.id}[/] → {created.remote_path}")

    @note.command("list")
    @home_option
    @click.option("--folder", "-f", default=None, help="Only this folder.")
    @click.option("--tag", "-t", default=None, help="Only notes with this tag.")
    @click.option("--search", "-s", default=None, help="Search text.")
    def note_list(home, folder, tag, search):
        """List notes, pinned first."""
        runtime = open_runtime(home)
        if search:
            notes = runtime.search(search, ItemKind.NOTE)
        else:
            notes = runtime.store.notes()
        if folder is not None:
            notes = [n for n in notes if n.folder == folder]
        if tag:
            notes = [n for n in notes if tag in n.tags]

        if not notes:
            console.print("  [dim]No notes.[/]")
            return

        notes.sort(key=lambda n: (not n.is_pinned, -n.updated_at.timestamp()))
        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="bold")
        table.add_column("Folder")
        table.add_column("Preview", style="dim")
        table.add_column("Tags", style="dim")
        table.add_column("Updated", style="dim")
        table.add_column("Sync")
        for n in notes:
            title = ("* " if n.is_pinned else "") + item_title(n)
            table.add_row(
                n.id, title, n.folder or "-", note_preview(n, 40), ", ".join(n.tags), format_time(n.updated_at), sync_badge(n)
            )
        console.print(table)

    @note.command("show")
    @home_option
    @click.argument("note_id")
    def note_show(home, note_id):
        """Print a note."""
        runtime = open_runtime(home)
        found = runtime.store.get(ItemKind.NOTE, note_id)
        if not isinstance(found, Note):
            console.print(f"  [red]No note {note_id}.[/]")
            sys.exit(1)
        meta = f"[dim]{found.folder or 'Uncategorized'} · {', '.join(found.tags) or 'no tags'} · {format_time(found.updated_at)}[/]"
        console.print(Panel(f"{meta}\n\n{found.content}", title=item_title(found), border_style="bright_blue"))

    @note.command("rm")
    @home_option
    @click.argument("note_id")
    @click.option("--force", is_flag=True, help="Skip confirmation.")
    def note_rm(home, note_id, force):
        """Delete a note here and, on the next sync, remotely."""
        runtime = open_runtime(home)
        found = runtime.store.get(ItemKind.NOTE, note_id)
        if found is None:
            console.print(f"  [red]No note {note_id}.[/]")
            sys.exit(1)
        if not force and not click.confirm(f"  Delete '{found.title}'?", default=False):
            return
        runtime.delete(ItemKind.NOTE, note_id)
        console.print(f"  Deleted note [cyan]{note_id}[/]")

    @main.group()
    def bookmark():
        """Save, list and delete bookmarks."""

    @bookmark.command("add")
    @home_option
    @click.argument("url")
    @click.option("--title", default="", help="Title (defaults to the URL).")
    @click.option("--description", default=None)
    @click.option("--notes", default=None, help="Your annotation, encrypted when syncing.")
    @click.option("--tag", "-t", multiple=True, help="Tag (repeatable).")
    @click.option("--folder", "-f", default="Bookmarks", show_default=True)
    def bookmark_add(home, url, title, description, notes, tag, folder):
        """Save a bookmark."""
        runtime = open_runtime(home)
        try:
            created = runtime.add_bookmark(
                url, title, description=description, notes=notes, tags=list(tag), folder=folder
            )
        except ValueError as exc:
            console.print(f"  [red]Invalid bookmark:[/] {exc}")
            sys.exit(1)
        console.print(f"  Saved bookmark [cyan]{created.id}[/] → {created.remote_path}")

    @bookmark.command("list")
    @home_option
    @click.option("--folder", "-f", default=None, help="Only this folder.")
    @click.option("--search", "-s", default=None, help="Search text.")
    def bookmark_list(home, folder, search):
        """List bookmarks."""
        runtime = open_runtime(home)
        if search:
            bookmarks = runtime.search(search, ItemKind.BOOKMARK)
        else:
            bookmarks = runtime.store.bookmarks()
        if folder is not None:
            bookmarks = [b for b in bookmarks if b.folder == folder]

        if not bookmarks:
            console.print("  [dim]No bookmarks.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("ID", style="cyan")
        table.add_column("Title", style="bold")
        table.add_column("URL")
        table.add_column("Folder", style="dim")
        table.add_column("Sync")
        for b in bookmarks:
            if isinstance(b, Bookmark):
                table.add_row(b.id, item_title(b), b.url, b.folder, sync_badge(b))
        console.print(table)

    @bookmark.command("rm")
    @home_option
    @click.argument("bookmark_id")
    def bookmark_rm(home, bookmark_id):
        """Delete a bookmark."""
        runtime = open_runtime(home)
        if not runtime.delete(ItemKind.BOOKMARK, bookmark_id):
            console.print(f"  [red]No bookmark {bookmark_id}.[/]")
            sys.exit(1)
        console.print(f"  Deleted bookmark [cyan]{bookmark_id}[/]")
