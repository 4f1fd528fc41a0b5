"""Command-line access to a notes directory.

Usage:
    marginalia annotations <note> [--root DIR]
    marginalia reorganize <note> [--root DIR] [--dry-run]
    marginalia progress <note> [--root DIR]

``<note>`` is the companion note's path relative to ``--root`` (default:
the current directory).
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from marginalia.store import FileSystemStore

console = Console()


def _format_timestamp(timestamp: int) -> str:
    try:
        created = datetime.fromtimestamp(timestamp / 1000, tz=UTC)
    except (OverflowError, OSError, ValueError):
        return str(timestamp)
    return created.strftime("%Y-%m-%d %H:%M")


def _build_parser() -> argparse.ArgumentParser:
    """Build argparse parser for marginalia subcommands."""
    parser = argparse.ArgumentParser(
        prog="marginalia",
        description="Inspect and tidy EPUB annotations kept in Markdown notes.",
    )
    parser.add_argument(
        "--root", default=".", help="Notes directory (default: current directory)"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Write a debug log to logs/"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    list_p = sub.add_parser("annotations", help="List the annotations in a note")
    list_p.add_argument("note", help="Companion note path")

    reorg_p = sub.add_parser(
        "reorganize", help="Rebuild the colour sections of a note"
    )
    reorg_p.add_argument("note", help="Companion note path")
    reorg_p.add_argument(
        "--dry-run", action="store_true", help="Print the result instead of saving"
    )

    progress_p = sub.add_parser("progress", help="Show the saved reading position")
    progress_p.add_argument("note", help="Companion note path")

    return parser


async def _cmd_annotations(
    store: FileSystemStore, note: str, *, console: Console | None = None
) -> None:
    """List annotations as a Rich table."""
    from marginalia.annotations import find_mapping, parse_annotations
    from marginalia.config import get_settings

    con = console or globals()["console"]
    highlights = get_settings().highlights
    annotations = parse_annotations(await store.read_text(note))

    if not annotations:
        con.print(f"[yellow]No annotations in {note}.[/]")
        return

    table = Table(title=f"Annotations in {note}")
    table.add_column("Created")
    table.add_column("Section", style="cyan")
    table.add_column("Text")
    table.add_column("Note")

    for record in annotations:
        mapping = find_mapping(
            highlights.color_mappings, record.color, highlights.fallback_section_title
        )
        table.add_row(
            _format_timestamp(record.timestamp),
            mapping.section_title.lstrip("# "),
            record.text,
            record.note or "",
        )

    con.print(table)


async def _cmd_reorganize(
    store: FileSystemStore,
    note: str,
    *,
    dry_run: bool = False,
    console: Console | None = None,
) -> None:
    """Rewrite a note's colour sections from the annotations it holds."""
    from marginalia.annotations import parse_annotations, reorganize
    from marginalia.config import get_settings

    con = console or globals()["console"]
    settings = get_settings()
    content = await store.read_text(note)
    annotations = parse_annotations(content)
    new_content = reorganize(
        content,
        settings.highlights.color_mappings,
        annotations,
        companion_path=note,
        fallback_title=settings.highlights.fallback_section_title,
        protocol=settings.links.protocol,
    )

    if dry_run:
        con.print(new_content, markup=False, highlight=False)
        return
    if new_content == content.rstrip():
        con.print(f"[dim]{note} is already organized.[/]")
        return

    await store.write_text(note, new_content)
    await store.set_metadata_field(
        note, settings.properties.annotations_property, len(annotations)
    )
    con.print(f"[green]Reorganized[/] {len(annotations)} annotations in {note}")


async def _cmd_progress(
    store: FileSystemStore, note: str, *, console: Console | None = None
) -> None:
    """Show the linked book and the saved position of a note."""
    from marginalia.config import get_settings
    from marginalia.reader.links import DocumentLinkError, resolve_book_link

    con = console or globals()["console"]
    properties = get_settings().properties
    metadata = await store.get_metadata(note)

    raw_link = metadata.get(properties.link_property)
    try:
        book = await resolve_book_link(raw_link, note, store)
    except DocumentLinkError as exc:
        con.print(f"[red]Error:[/] {exc}")
        sys.exit(1)

    position = metadata.get(properties.progress_property)
    con.print(f"[bold]Book:[/] {book}")
    con.print(f"[bold]Position:[/] {position or '[dim]not started[/]'}")


def main() -> None:
    """Entry point for the ``marginalia`` console script."""
    from marginalia import setup_logging
    from marginalia.store import FileSystemStore

    parser = _build_parser()
    args = parser.parse_args(sys.argv[1:])

    if args.verbose:
        setup_logging()

    store = FileSystemStore(args.root)

    async def _run() -> None:
        match args.command:
            case "annotations":
                await _cmd_annotations(store, args.note)
            case "reorganize":
                await _cmd_reorganize(store, args.note, dry_run=args.dry_run)
            case "progress":
                await _cmd_progress(store, args.note)

    try:
        asyncio.run(_run())
    except FileNotFoundError as exc:
        console.print(f"[red]Error:[/] no such note: {exc.filename}")
        sys.exit(1)


if __name__ == "__main__":
    main()
