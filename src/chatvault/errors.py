"""Exceptions surfaced to callers of the import pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from .models import ImportResult


class ChatVaultError(click.ClickException):
    """Base class for every user-facing chatvault failure."""


class ArchiveError(ChatVaultError):
    """No usable export could be read from the given sources."""


class InvalidModeError(ChatVaultError):
    def __init__(self, mode: str):
        super().__init__(f"Unknown import mode: {mode!r} (expected upsert, replace or clone)")
        self.mode = mode


class ImportInProgressError(ChatVaultError):
    def __init__(self):
        super().__init__("Another import is already running; wait for it to finish.")


class DestinationError(ChatVaultError):
    """The persisted dataset could not be opened or written.

    ``partial`` holds the counts that were written before the failure, since
    earlier writes are never rolled back.
    """

    def __init__(self, message: str, partial: ImportResult | None = None):
        super().__init__(message)
        self.partial = partial
