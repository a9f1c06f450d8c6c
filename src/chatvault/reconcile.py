"""Merge an imported batch into a persisted dataset under an import mode."""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Mapping

from .config import GENERATED_ASSET_OWNER_ID, IMPORT_MODES
from .errors import DestinationError, InvalidModeError
from .extras import merge_extras, merge_generated_assets
from .models import (
    ConversationPayload,
    ConversationSummary,
    ExtraData,
    ImportBundle,
    ImportMode,
    ImportResult,
)
from .paths import is_safe_relative_path

if TYPE_CHECKING:
    from .storage import DatasetStore

logger = logging.getLogger(__name__)

_CLONE_ID_RE = re.compile(r"^(.*)_v(\d+)$")


# --- precedence -------------------------------------------------------------


def _precedence(record: ConversationPayload | ConversationSummary) -> tuple[int, int, int]:
    if isinstance(record, ConversationSummary):
        # Persisted records always rank before anything in the current batch.
        return record.last_message_time, record.mapping_node_count, -1
    return record.summary.last_message_time, record.mapping_node_count, record.import_order


def should_replace(
    current: ConversationPayload | ConversationSummary,
    incoming: ConversationPayload | ConversationSummary,
) -> bool:
    """True when ``incoming`` is strictly newer than ``current``.

    Greater ``last_message_time`` wins, then greater node count, then the
    later import order.
    """
    return _precedence(incoming) > _precedence(current)


def merge_payload(merged: dict[str, ConversationPayload], payload: ConversationPayload) -> None:
    conversation_id = payload.conversation.id
    current = merged.get(conversation_id)
    if current is None or should_replace(current, payload):
        merged[conversation_id] = payload


# --- clone ids --------------------------------------------------------------


def split_clone_id(conversation_id: str) -> tuple[str, int]:
    """``abc_v3`` -> ``("abc", 3)``; an unsuffixed id counts as suffix 1."""
    match = _CLONE_ID_RE.match(conversation_id)
    if match and match.group(1):
        return match.group(1), int(match.group(2))
    return conversation_id, 1


def rename_payload(payload: ConversationPayload, new_id: str) -> ConversationPayload:
    renamed = payload.model_copy(deep=True)
    renamed.conversation.id = new_id
    renamed.summary.id = new_id
    for line in renamed.search_lines:
        line.loc.conversation_id = new_id
    return renamed


class CloneTracker:
    """Hands out ``<base>_v<n>`` ids that never collide with existing ones."""

    def __init__(self, existing_ids):
        self.used: set[str] = set()
        self.highest: dict[str, int] = {}
        for conversation_id in existing_ids:
            self._claim(conversation_id)

    def _claim(self, conversation_id: str) -> None:
        self.used.add(conversation_id)
        base, suffix = split_clone_id(conversation_id)
        self.highest[base] = max(self.highest.get(base, 1), suffix)

    def next_id(self, conversation_id: str) -> str:
        base, suffix = split_clone_id(conversation_id)
        n = max(self.highest.get(base, 1), suffix) + 1
        while f"{base}_v{n}" in self.used:
            n += 1
        return f"{base}_v{n}"

    def assign(self, payload: ConversationPayload) -> ConversationPayload:
        conversation_id = payload.conversation.id
        if conversation_id not in self.used:
            self._claim(conversation_id)
            return payload
        new_id = self.next_id(conversation_id)
        self._claim(new_id)
        logger.debug("Cloning %s as %s", conversation_id, new_id)
        return rename_payload(payload, new_id)


# --- planning ---------------------------------------------------------------


@dataclass
class WriteSet:
    mode: ImportMode
    purge: bool = False
    payloads: list[ConversationPayload] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    extras: ExtraData = field(default_factory=ExtraData)


def plan_write_set(
    bundle: ImportBundle,
    snapshot: Mapping[str, ConversationSummary],
    mode: str,
) -> WriteSet:
    """Decide which payloads to write, and under which ids."""
    if mode not in IMPORT_MODES:
        raise InvalidModeError(mode)

    write_set = WriteSet(mode=mode, purge=mode == "replace", extras=bundle.extras)
    incoming = sorted(bundle.conversations, key=lambda p: p.import_order)

    if mode == "replace":
        write_set.payloads = incoming
    elif mode == "clone":
        tracker = CloneTracker(snapshot)
        write_set.payloads = [tracker.assign(payload) for payload in incoming]
    else:
        for payload in incoming:
            existing = snapshot.get(payload.conversation.id)
            if existing is None or should_replace(existing, payload):
                write_set.payloads.append(payload)
            else:
                write_set.skipped.append(payload.conversation.id)

    logger.info(
        "Planned %s import: %d to write, %d unchanged%s",
        mode,
        len(write_set.payloads),
        len(write_set.skipped),
        " (dataset will be cleared)" if write_set.purge else "",
    )
    return write_set


# --- applying ---------------------------------------------------------------


def _merged_extras(store: DatasetStore, write_set: WriteSet) -> ExtraData:
    if write_set.purge:
        return write_set.extras
    current = store.load_extras()
    previous_gallery = current.generated_assets or []
    merge_extras(current, write_set.extras)
    if write_set.extras.generated_assets and previous_gallery:
        gallery = {asset.path: asset for asset in previous_gallery}
        merge_generated_assets(gallery, write_set.extras.generated_assets)
        current.generated_assets = list(gallery.values())
    return current


def apply_write_set(
    store: DatasetStore,
    write_set: WriteSet,
    assets: Mapping[str, bytes],
    asset_mime: Mapping[str, str] | None = None,
) -> ImportResult:
    """Write every planned payload, its assets and the extras to ``store``.

    Each conversation is written as one unit. Nothing is rolled back on
    failure: the store is committed regardless and the raised
    :class:`DestinationError` carries what was written so far.
    """
    asset_mime = asset_mime or {}
    result = ImportResult(mode=write_set.mode)

    def save_asset(key: str, owner_id: str) -> None:
        if not is_safe_relative_path(key):
            logger.warning("Refusing to write unsafe asset key: %s", key)
            return
        data = assets.get(key)
        if data is None:
            return
        if store.save_asset(key, data, owner_id, asset_mime.get(key)):
            result.assets_written += 1

    try:
        try:
            if write_set.purge:
                store.purge()
            for payload in write_set.payloads:
                if not store.write_conversation(payload):
                    continue
                result.conversations_written += 1
                for key in payload.asset_keys:
                    save_asset(key, payload.conversation.id)
            for generated in write_set.extras.generated_assets or []:
                save_asset(generated.path, GENERATED_ASSET_OWNER_ID)
            store.save_extras(_merged_extras(store, write_set))
        finally:
            store.commit()
    except DestinationError as e:
        result.complete = False
        e.partial = result
        raise
    except (OSError, sqlite3.Error) as e:
        result.complete = False
        raise DestinationError(f"Failed to write dataset: {e}", partial=result) from e

    result.conversations = len(store.load_summaries())
    result.assets = store.asset_count()
    return result
