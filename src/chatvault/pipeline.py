"""Batch import entry point shared by the CLI and library callers."""

from __future__ import annotations

import glob
import logging
import threading
from pathlib import Path
from typing import Iterable

from .config import DEFAULT_GLOB, DEFAULT_MODE, IMPORT_MODES, STORE_KINDS
from .errors import ArchiveError, DestinationError, ImportInProgressError, InvalidModeError
from .importer import ProgressCallback, parse_export_archives
from .models import ImportResult
from .reconcile import apply_write_set, plan_write_set
from .storage import open_store

logger = logging.getLogger(__name__)

_job_lock = threading.Lock()


def discover_sources(patterns: Iterable[str] | None = None) -> list[Path]:
    """Expand glob patterns into existing files or directories, deduplicated in order."""
    patterns = list(patterns or []) or [DEFAULT_GLOB]
    found: dict[Path, None] = {}
    for pattern in patterns:
        matches = sorted(glob.glob(str(Path(pattern).expanduser())))
        if not matches:
            logger.warning("No files match %s", pattern)
        for match in matches:
            path = Path(match)
            if path.is_file() or path.is_dir():
                found.setdefault(path.resolve(), None)
    return list(found)


def import_datasets(
    patterns: Iterable[str] | None,
    output: Path,
    mode: str = DEFAULT_MODE,
    store_kind: str = "directory",
    on_progress: ProgressCallback | None = None,
) -> ImportResult:
    """Import every matching export into the dataset at ``output``.

    Only one import runs at a time; a concurrent call fails immediately
    with :class:`ImportInProgressError` instead of waiting.
    """
    if mode not in IMPORT_MODES:
        raise InvalidModeError(mode)
    if store_kind not in STORE_KINDS:
        raise DestinationError(f"Unknown store kind: {store_kind!r}")
    if not _job_lock.acquire(blocking=False):
        raise ImportInProgressError()
    try:
        return _run_import(patterns, Path(output), mode, store_kind, on_progress)
    finally:
        _job_lock.release()


def _run_import(
    patterns: Iterable[str] | None,
    output: Path,
    mode: str,
    store_kind: str,
    on_progress: ProgressCallback | None,
) -> ImportResult:
    sources = discover_sources(patterns)
    if not sources:
        raise ArchiveError("No export archives or directories matched the given patterns.")
    logger.info("Importing %d source(s) into %s (%s, %s)", len(sources), output, store_kind, mode)

    bundle = parse_export_archives(sources, on_progress=on_progress)
    if not bundle.conversations:
        raise ArchiveError(
            f"No conversations found in {len(sources)} source(s) ({bundle.archives_skipped} skipped)."
        )

    with open_store(store_kind, output) as store:
        write_set = plan_write_set(bundle, store.load_summaries(), mode)
        try:
            result = apply_write_set(store, write_set, bundle.assets, bundle.asset_mime)
        except DestinationError as e:
            if e.partial is not None:
                e.partial.archives_processed = bundle.archives_total - bundle.archives_skipped
                e.partial.archives_skipped = bundle.archives_skipped
            raise

    result.archives_processed = bundle.archives_total - bundle.archives_skipped
    result.archives_skipped = bundle.archives_skipped
    logger.info(
        "Import finished: %d conversations written, %d assets written, %d in dataset",
        result.conversations_written,
        result.assets_written,
        result.conversations,
    )
    return result
