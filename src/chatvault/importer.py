"""Import pipeline: archive unpacking → graph extraction → conversion → indexing."""

from __future__ import annotations

import json
import logging
import stat
import zipfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from .config import (
    ASSETS_MARKER,
    CHAT_HTML_NAME,
    CONVERSATION_FILE_NAME,
    CONVERSATIONS_JSON_NAME,
    CONVERSATIONS_MARKER,
    DATASET_CONVERSATIONS_DIR,
    MAX_ZIP_MEMBERS,
    MAX_ZIP_UNCOMPRESSED_BYTES,
    PROGRESS_EVERY,
)
from .errors import ArchiveError
from .extras import (
    collect_generated_assets,
    extract_extra_data,
    merge_extras,
    merge_generated_assets,
    read_generated_assets,
)
from .indexer import build_search_data
from .models import (
    Conversation,
    ConversationPayload,
    ConversationSummary,
    GeneratedAsset,
    ImportBundle,
    ImportProgress,
)
from .parser import ConversionResult, convert_conversation
from .paths import (
    AssetResolver,
    find_asset_entry,
    guess_mime_by_path,
    has_traversal,
    is_safe_conversation_id,
    is_safe_relative_path,
    normalize_path,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ImportProgress], None]


@dataclass
class ArchiveData:
    name: str
    conversations: list[dict[str, Any]]
    assets_index: dict[str, Any]
    entries: dict[str, bytes] = field(repr=False)
    dataset: bool = False


# --- unpacking --------------------------------------------------------------


def _is_special_member(info: zipfile.ZipInfo) -> bool:
    mode = (info.external_attr >> 16) & 0xFFFF
    file_type = stat.S_IFMT(mode) if mode else 0
    return bool(file_type) and file_type not in (stat.S_IFREG, stat.S_IFDIR)


def _entry_key(name: str) -> str | None:
    key = normalize_path(name)
    if not key or has_traversal(key) or "\0" in key:
        return None
    return key


def load_zip_entries(zip_path: Path) -> dict[str, bytes]:
    """Read every regular member of a ZIP into a flat name → bytes map."""
    entries: dict[str, bytes] = {}
    try:
        with zipfile.ZipFile(str(zip_path), "r") as zf:
            infos = zf.infolist()
            if len(infos) > MAX_ZIP_MEMBERS:
                raise ArchiveError(f"ZIP member limit exceeded in {zip_path}: {len(infos)} > {MAX_ZIP_MEMBERS}")
            total = 0
            for info in infos:
                if info.is_dir():
                    continue
                if _is_special_member(info):
                    logger.warning("Skipping special ZIP member %s in %s", info.filename, zip_path.name)
                    continue
                key = _entry_key(info.filename)
                if key is None:
                    logger.warning("Skipping unsafe ZIP member %r in %s", info.filename, zip_path.name)
                    continue
                total += max(int(info.file_size), 0)
                if total > MAX_ZIP_UNCOMPRESSED_BYTES:
                    raise ArchiveError(f"ZIP uncompressed size limit exceeded in {zip_path}")
                entries[key] = zf.read(info)
    except (zipfile.BadZipFile, zipfile.LargeZipFile, OSError, EOFError) as e:
        raise ArchiveError(f"Failed to read ZIP archive {zip_path}: {e}") from e
    return entries


def load_directory_entries(root: Path) -> dict[str, bytes]:
    """Read an already-extracted export directory the same way as a ZIP."""
    entries: dict[str, bytes] = {}
    try:
        for path in sorted(root.rglob("*")):
            if not path.is_file() or path.is_symlink():
                continue
            key = _entry_key(path.relative_to(root).as_posix())
            if key is not None:
                entries[key] = path.read_bytes()
    except OSError as e:
        raise ArchiveError(f"Failed to read export directory {root}: {e}") from e
    return entries


# --- chat.html / conversations.json ------------------------------------------


def extract_marked_json(html: str, marker: str, opener: str) -> Any | None:
    """Decode the JSON literal that follows ``marker`` in ``html``.

    Brackets are matched with string-aware depth counting so braces inside
    message text do not end the literal early. Returns None when the marker
    is missing, the literal is unterminated, or it does not parse.
    """
    closer = "]" if opener == "[" else "}"
    marker_index = html.find(marker)
    if marker_index == -1:
        return None
    start = html.find(opener, marker_index + len(marker))
    if start == -1:
        return None

    depth = 0
    in_string = False
    escaped = False
    end = -1
    for index in range(start, len(html)):
        char = html[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                end = index + 1
                break
    if end == -1:
        logger.warning("Unterminated JSON literal after %r", marker)
        return None
    try:
        return json.loads(html[start:end])
    except ValueError:
        logger.warning("Failed to parse JSON literal after %r", marker)
        return None


def extract_conversations_from_chat(html: str) -> list[dict[str, Any]] | None:
    data = extract_marked_json(html, CONVERSATIONS_MARKER, "[")
    return data if isinstance(data, list) else None


def extract_assets_json(html: str) -> dict[str, Any]:
    data = extract_marked_json(html, ASSETS_MARKER, "{")
    return data if isinstance(data, dict) else {}


def _find_entry(entries: dict[str, bytes], filename: str) -> bytes | None:
    if filename in entries:
        return entries[filename]
    for key in sorted(entries, key=lambda k: (k.count("/"), k)):
        if key.endswith("/" + filename):
            return entries[key]
    return None


def _decode(payload: bytes | None) -> str:
    if payload is None:
        return ""
    return payload.decode("utf-8", errors="replace")


# --- dataset exports ----------------------------------------------------------


def _read_dataset_listing(entries: dict[str, bytes], archive_name: str) -> list[dict[str, Any]]:
    try:
        data = json.loads(_decode(entries[CONVERSATIONS_JSON_NAME]))
    except ValueError:
        logger.warning("%s in %s is not valid JSON", CONVERSATIONS_JSON_NAME, archive_name)
        return []
    return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []


def _dataset_record_name(conversation_id: str) -> str:
    return f"{DATASET_CONVERSATIONS_DIR}/{conversation_id}/{CONVERSATION_FILE_NAME}"


def is_dataset_export(entries: dict[str, bytes]) -> bool:
    """True for a ZIP or folder laid out like a chatvault directory dataset."""
    if CONVERSATIONS_JSON_NAME not in entries:
        return False
    prefix = DATASET_CONVERSATIONS_DIR + "/"
    suffix = "/" + CONVERSATION_FILE_NAME
    return any(key.startswith(prefix) and key.endswith(suffix) for key in entries)


def load_dataset_payload(raw: dict[str, Any], entries: dict[str, bytes], import_order: int) -> ConversationPayload | None:
    """Rebuild a payload from one summary of a dataset export and its record."""
    summary = ConversationSummary.model_validate(raw)
    if not is_safe_conversation_id(summary.id):
        logger.warning("Skipping conversation with unsafe id: %r", summary.id)
        return None
    record = entries.get(_dataset_record_name(summary.id))
    if record is None:
        logger.warning("Dataset export has no record for conversation %s", summary.id)
        return None
    conversation = Conversation.model_validate_json(record)
    if conversation.id != summary.id:
        logger.warning("Record id %r does not match summary id %r, skipping", conversation.id, summary.id)
        return None
    lines, grams = build_search_data(conversation)
    return ConversationPayload(
        summary=summary.model_copy(update={"saved_at": None}),
        conversation=conversation,
        search_lines=lines,
        grams=grams,
        asset_keys=list(dict.fromkeys((conversation.assets_map or {}).values())),
        mapping_node_count=summary.mapping_node_count,
        import_order=import_order,
    )


# --- archives ---------------------------------------------------------------


def read_archive(source: Path) -> ArchiveData | None:
    """Unpack one export. Returns None (after a warning) when it has no conversations."""
    entries = load_directory_entries(source) if source.is_dir() else load_zip_entries(source)

    if is_dataset_export(entries):
        listing = _read_dataset_listing(entries, source.name)
        if listing:
            return ArchiveData(name=source.name, conversations=listing, assets_index={}, entries=entries, dataset=True)

    chat_html = _decode(_find_entry(entries, CHAT_HTML_NAME))
    conversations = extract_conversations_from_chat(chat_html) if chat_html else None
    if not conversations:
        raw_json = _find_entry(entries, CONVERSATIONS_JSON_NAME)
        if raw_json is not None:
            try:
                data = json.loads(_decode(raw_json))
            except ValueError:
                logger.warning("%s in %s is not valid JSON", CONVERSATIONS_JSON_NAME, source.name)
                data = None
            conversations = data if isinstance(data, list) else None

    if not conversations:
        logger.warning("%s has no %s data or %s, skipping", source.name, CHAT_HTML_NAME, CONVERSATIONS_JSON_NAME)
        return None

    return ArchiveData(
        name=source.name,
        conversations=[c for c in conversations if isinstance(c, dict)],
        assets_index=extract_assets_json(chat_html) if chat_html else {},
        entries=entries,
    )


# --- conversion -------------------------------------------------------------


def build_payload(result: ConversionResult, import_order: int) -> ConversationPayload:
    conversation = result.conversation
    lines, grams = build_search_data(conversation)
    summary = ConversationSummary(
        id=conversation.id,
        title=conversation.title or "Untitled",
        snippet=result.snippet,
        last_message_time=conversation.last_message_time,
        create_time=conversation.create_time,
        update_time=conversation.update_time,
        mapping_node_count=result.mapping_node_count,
    )
    return ConversationPayload(
        summary=summary,
        conversation=conversation,
        search_lines=lines,
        grams=grams,
        asset_keys=result.asset_keys,
        mapping_node_count=result.mapping_node_count,
        import_order=import_order,
    )


def _emit(on_progress: ProgressCallback | None, progress: ImportProgress) -> None:
    if on_progress is None:
        return
    try:
        on_progress(progress)
    except Exception:
        logger.warning("Progress callback failed for phase %s", progress.phase, exc_info=True)


def parse_export_archives(
    sources: Iterable[Path],
    on_progress: ProgressCallback | None = None,
) -> ImportBundle:
    """Parse every export in order into one merged :class:`ImportBundle`.

    Conversations that appear in more than one archive are merged with the
    same newer-wins rule the reconciler uses, so archive order only matters
    for exact ties.
    """
    from .reconcile import merge_payload

    sources = list(sources)
    bundle = ImportBundle(archives_total=len(sources))
    merged: dict[str, ConversationPayload] = {}
    generated: dict[str, GeneratedAsset] = {}
    order = 0

    for archive_index, source in enumerate(sources, start=1):
        progress = ImportProgress(
            phase="archive-start",
            archive_index=archive_index,
            archives_total=len(sources),
            archive_name=source.name,
        )
        _emit(on_progress, progress)

        try:
            archive = read_archive(source)
        except ArchiveError as e:
            logger.warning("%s", e.message)
            archive = None
        if archive is None:
            bundle.archives_skipped += 1
            _emit(on_progress, progress.model_copy(update={"phase": "archive-complete"}))
            continue

        extras = extract_extra_data(archive.entries)
        merge_extras(bundle.extras, extras)
        if archive.dataset:
            gallery = read_generated_assets(archive.entries)
        else:
            user = extras.user if extras.user is not None else bundle.extras.user
            gallery = collect_generated_assets(archive.entries, archive.assets_index, user)
        merge_generated_assets(generated, gallery)

        total = len(archive.conversations)
        progress = progress.model_copy(update={"phase": "archive-conversations", "conversations_total": total})
        _emit(on_progress, progress)

        resolver = AssetResolver(archive.assets_index, archive.entries)
        processed = 0
        archive_asset_keys: list[str] = []
        for raw in archive.conversations:
            try:
                if archive.dataset:
                    payload = load_dataset_payload(raw, archive.entries, order)
                else:
                    result = convert_conversation(raw, resolver)
                    payload = build_payload(result, order) if result is not None else None
            except Exception:
                logger.warning("Failed to convert conversation '%s'", raw.get("title", "unknown"), exc_info=True)
                payload = None
            if payload is not None:
                if is_safe_conversation_id(payload.conversation.id):
                    order += 1
                    merge_payload(merged, payload)
                    archive_asset_keys.extend(payload.asset_keys)
                else:
                    logger.warning("Skipping conversation with unsafe id: %r", payload.conversation.id)
            processed += 1
            if processed % PROGRESS_EVERY == 0 or processed == total:
                progress = progress.model_copy(update={"conversations_processed": processed})
                _emit(on_progress, progress)

        assets_processed = 0
        wanted = {key: None for key in archive_asset_keys}
        wanted.update((asset.path, asset.mime) for asset in gallery)
        for asset_key, mime in wanted.items():
            if _collect_asset(bundle, archive.entries, asset_key, mime):
                assets_processed += 1
                progress = progress.model_copy(update={"phase": "archive-assets", "assets_processed": assets_processed})
                _emit(on_progress, progress)

        _emit(on_progress, progress.model_copy(update={"phase": "archive-complete", "assets_processed": assets_processed}))

    bundle.conversations = list(merged.values())
    if generated:
        bundle.extras.generated_assets = list(generated.values())
    return bundle


def _collect_asset(bundle: ImportBundle, entries: dict[str, bytes], asset_key: str, mime: str | None = None) -> bool:
    """Copy one asset payload into the bundle. True when newly collected."""
    if not is_safe_relative_path(asset_key):
        logger.warning("Skipping unsafe asset key: %s", asset_key)
        return False
    if asset_key in bundle.assets:
        return False
    data = find_asset_entry(entries, asset_key)
    if data is None:
        logger.warning("Missing asset data for %s", asset_key)
        return False
    bundle.assets[asset_key] = data
    bundle.asset_mime[asset_key] = mime or guess_mime_by_path(asset_key)
    return True
