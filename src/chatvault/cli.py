"""CLI interface for chatvault."""

from __future__ import annotations

import logging
import shutil
import sys
from pathlib import Path

import click

from . import __version__
from .config import DATASET_DIR, DEFAULT_GLOB, DEFAULT_MODE, IMPORT_MODES, SQLITE_PATH, STORE_KIND, STORE_KINDS
from .models import ImportProgress, ImportResult

store_option = click.option(
    "--store",
    "store_kind",
    type=click.Choice(STORE_KINDS),
    default=STORE_KIND,
    show_default=True,
    help="Dataset backend.",
)
data_option = click.option(
    "--data",
    "data_path",
    type=click.Path(path_type=Path),
    default=None,
    help="Dataset location (directory, or database file for --store sqlite).",
)


def _default_location(store_kind: str) -> Path:
    return SQLITE_PATH if store_kind == "sqlite" else DATASET_DIR


def _open_existing(store_kind: str, data_path: Path | None):
    from .storage import open_store

    location = data_path or _default_location(store_kind)
    if not location.exists():
        raise click.ClickException(
            f"No dataset found at {location}. Import an export first:\n"
            "  chatvault import ~/Downloads/chatgpt-export.zip"
        )
    return open_store(store_kind, location)


@click.group()
@click.version_option(version=__version__, prog_name="chatvault")
@click.option("-v", "--verbose", is_flag=True, help="Log progress and warnings to stderr.")
def cli(verbose: bool):
    """chatvault: import, search and merge your ChatGPT data exports.

    Import one or more export ZIPs (or extracted export folders) into a local
    dataset, then search it from the command line or through the MCP server.
    """
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            stream=sys.stderr,
        )


def _echo_progress(progress: ImportProgress) -> None:
    prefix = f"[{progress.archive_index}/{progress.archives_total}] {progress.archive_name}"
    if progress.phase == "archive-start":
        click.echo(f"{prefix}: reading...", err=True)
    elif progress.phase == "archive-complete":
        click.echo(
            f"{prefix}: {progress.conversations_processed} conversations, "
            f"{progress.assets_processed} assets",
            err=True,
        )


def _echo_result(result: ImportResult) -> None:
    click.echo()
    click.echo(click.style("Import complete" if result.complete else "Import incomplete", bold=True))
    click.echo(f"  Mode:                   {result.mode}")
    click.echo(f"  Archives processed:     {result.archives_processed}")
    if result.archives_skipped:
        click.echo(f"  Archives skipped:       {result.archives_skipped}")
    click.echo(f"  Conversations written:  {result.conversations_written:,}")
    click.echo(f"  Assets written:         {result.assets_written:,}")
    click.echo(f"  Conversations in total: {result.conversations:,}")
    click.echo(f"  Assets in total:        {result.assets:,}")
    click.echo()


@cli.command("import")
@click.argument("patterns", nargs=-1)
@click.option(
    "--out",
    "output",
    type=click.Path(path_type=Path),
    default=None,
    help="Dataset location to write (defaults to the data directory).",
)
@click.option(
    "--mode",
    default=DEFAULT_MODE,
    show_default=True,
    help=f"How to merge with the existing dataset: {', '.join(IMPORT_MODES)}.",
)
@store_option
def import_cmd(patterns: tuple[str, ...], output: Path | None, mode: str, store_kind: str):
    """Import ChatGPT data exports matching PATTERNS (default: ./*.zip).

    Get your export from ChatGPT: Settings → Data Controls → Export Data.
    Each pattern may match export ZIP files, already-extracted folders, or
    dataset ZIPs written by `chatvault export`.

    Example:
        chatvault import ~/Downloads/chatgpt-*.zip --mode upsert
    """
    from .errors import DestinationError
    from .pipeline import import_datasets

    output = output or _default_location(store_kind)
    try:
        result = import_datasets(
            list(patterns) or [DEFAULT_GLOB],
            output,
            mode=mode,
            store_kind=store_kind,
            on_progress=_echo_progress,
        )
    except DestinationError as e:
        if e.partial is not None:
            _echo_result(e.partial)
        raise
    _echo_result(result)


@cli.command()
@click.argument("query")
@click.option("--limit", default=20, show_default=True, help="Maximum number of hits.")
@data_option
@store_option
def search(query: str, limit: int, data_path: Path | None, store_kind: str):
    """Search imported conversations for an exact phrase (case-insensitive)."""
    with _open_existing(store_kind, data_path) as store:
        hits = store.search_index().search(query, limit=limit)

    if not hits:
        click.echo(f"No matches for '{query}'.")
        return

    for hit in hits:
        click.echo(click.style(hit.conversation_title, bold=True) + f"  ({hit.conversation_id})")
        for line in hit.snippet.context_before:
            click.echo(f"    {line}")
        click.echo(
            "  > " + hit.snippet.before + click.style(hit.snippet.match, fg="yellow", bold=True) + hit.snippet.after
        )
        for line in hit.snippet.context_after:
            click.echo(f"    {line}")
        click.echo()


@cli.command()
@data_option
@store_option
def stats(data_path: Path | None, store_kind: str):
    """Show statistics about the imported dataset."""
    with _open_existing(store_kind, data_path) as store:
        s = store.get_stats()

    click.echo()
    click.echo(click.style("chatvault Dataset Statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Assets:         {s['total_assets']:,}")
    click.echo(f"  Indexed lines:  {s['indexed_lines']:,}")
    click.echo(f"  Distinct grams: {s['distinct_grams']:,}")
    if s["date_range_start"]:
        click.echo(f"  Date range:     {s['date_range_start']} → {s['date_range_end']}")
    click.echo(f"  Store:          {s['store']}")
    click.echo(f"  Location:       {s['location']}")
    click.echo()


@cli.command()
@click.argument("conversation_id")
@data_option
@store_option
def delete(conversation_id: str, data_path: Path | None, store_kind: str):
    """Delete one conversation with its search data and unused assets."""
    with _open_existing(store_kind, data_path) as store:
        removed = store.delete_conversation(conversation_id)
    if not removed:
        raise click.ClickException(f"Conversation not found: {conversation_id}")
    click.echo(f"Deleted {conversation_id}")


@cli.command("export")
@click.argument("destination", type=click.Path(dir_okay=False, path_type=Path))
@data_option
@store_option
def export_cmd(destination: Path, data_path: Path | None, store_kind: str):
    """Pack the dataset into a portable ZIP at DESTINATION.

    The ZIP uses the directory dataset layout and can be imported again,
    into either backend:
        chatvault import vault-backup.zip --store directory
    """
    with _open_existing(store_kind, data_path) as store:
        count = store.export_zip(destination)
    click.echo(f"Exported {count} conversations to {destination}")


@cli.command()
@data_option
@store_option
@click.confirmation_option(prompt="This will delete all imported data. Are you sure?")
def reset(data_path: Path | None, store_kind: str):
    """Delete all imported data and start fresh."""
    location = data_path or _default_location(store_kind)
    if not location.exists():
        click.echo("No data to delete.")
        return
    if location.is_dir():
        shutil.rmtree(location)
    else:
        location.unlink()
        for suffix in ("-wal", "-shm"):
            Path(f"{location}{suffix}").unlink(missing_ok=True)
    click.echo(f"Deleted {location}")


@cli.command()
@data_option
@store_option
def serve(data_path: Path | None, store_kind: str):
    """Start the MCP server (stdio transport).

    This is used by MCP clients to browse and search the imported dataset.
    You usually don't need to run this manually.
    """
    location = data_path or _default_location(store_kind)
    if not location.exists():
        click.echo("Warning: No data imported yet. Import your ChatGPT export first:", err=True)
        click.echo("  chatvault import ~/Downloads/chatgpt-export.zip", err=True)

    from . import server

    server.configure(store_kind, location)
    server.mcp.run(transport="stdio")
