"""Asset path validation and lookup.

Every path that ends up as a storage key or a file on disk passes through
:func:`is_safe_relative_path` first. The same policy is applied when a pointer
is resolved from export metadata and again right before a store writes the
payload, because both places touch the filesystem independently.
"""

from __future__ import annotations

import logging
import posixpath
import re
from pathlib import Path
from typing import Any, Mapping

logger = logging.getLogger(__name__)

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_ASSETS_PREFIX = "assets/"

_MIME_BY_SUFFIX = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".mp3": "audio/mpeg",
    ".wav": "audio/wav",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".json": "application/json",
    ".txt": "text/plain",
}

_MEDIA_BY_SUFFIX = {
    **{s: "image" for s in (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg")},
    **{s: "audio" for s in (".mp3", ".wav", ".m4a", ".ogg")},
    **{s: "video" for s in (".mp4", ".webm", ".mov")},
}


def normalize_path(value: str) -> str:
    """Forward slashes, no leading ``./`` or ``/``, no empty or ``.`` segments.

    ``..`` segments are not interpreted here; callers must reject them with
    :func:`is_safe_relative_path` before trusting the result.
    """
    parts = value.replace("\\", "/").split("/")
    return "/".join(part for part in parts if part and part != ".")


def has_traversal(value: str) -> bool:
    return any(segment == ".." for segment in value.split("/"))


def is_safe_relative_path(value: str) -> bool:
    if not value or not isinstance(value, str):
        return False
    if "\0" in value or "\\" in value:
        return False
    if value.startswith("/") or _DRIVE_RE.match(value):
        return False
    if has_traversal(value):
        return False
    return bool(normalize_path(value))


def is_safe_conversation_id(conversation_id: str) -> bool:
    """A single safe path segment, usable as a folder or row key."""
    if not isinstance(conversation_id, str) or "/" in conversation_id:
        return False
    return is_safe_relative_path(conversation_id) and normalize_path(conversation_id) == conversation_id


def safe_join_under(root: Path, relative: str) -> Path | None:
    """Join ``relative`` under ``root``, or None when it would escape."""
    if not is_safe_relative_path(relative):
        return None
    root_resolved = root.resolve()
    target = (root_resolved / normalize_path(relative)).resolve()
    try:
        target.relative_to(root_resolved)
    except ValueError:
        return None
    if target == root_resolved:
        return None
    return target


def find_asset_entry(entries: Mapping[str, bytes], asset_key: str) -> bytes | None:
    """Locate the payload for ``asset_key`` among extracted archive entries.

    Exporter versions nest assets differently, so try the exact key, then with
    and without an ``assets/`` prefix, then a suffix match on entry names.
    """
    normalized = normalize_path(asset_key)
    if not normalized:
        return None
    direct = entries.get(normalized)
    if direct is not None:
        return direct
    trimmed = normalized[len(_ASSETS_PREFIX):] if normalized.startswith(_ASSETS_PREFIX) else normalized
    if trimmed != normalized and trimmed in entries:
        return entries[trimmed]
    prefixed = _ASSETS_PREFIX + normalized
    if prefixed in entries:
        return entries[prefixed]
    for key in sorted(entries):
        if key.endswith("/" + normalized) or key.endswith("/" + trimmed):
            return entries[key]
    return None


def guess_mime_by_path(path: str) -> str:
    suffix = posixpath.splitext(path.lower())[1]
    return _MIME_BY_SUFFIX.get(suffix, "application/octet-stream")


def detect_media_type(path: str) -> str:
    suffix = posixpath.splitext(path.lower())[1]
    return _MEDIA_BY_SUFFIX.get(suffix, "file")


def _descriptor_path(descriptor: Any) -> str | None:
    if isinstance(descriptor, str):
        return descriptor
    if isinstance(descriptor, dict):
        for field in ("file_path", "download_url"):
            value = descriptor.get(field)
            if isinstance(value, str) and value:
                return value
    return None


def _pointer_file_id(pointer: str) -> str | None:
    """``file-service://file-AbC`` / ``sediment://file_00ab`` -> the file id."""
    _, sep, tail = pointer.partition("://")
    file_id = tail if sep else pointer
    file_id = file_id.strip("/")
    if not file_id or "/" in file_id:
        return None
    return file_id


class AssetResolver:
    """Resolve asset pointers to normalized, validated relative paths.

    ``index`` is the pointer -> descriptor map shipped with the export. When
    ``entries`` is given, a resolved path must also have a payload in the
    archive, otherwise the pointer counts as unresolved.
    """

    def __init__(self, index: Mapping[str, Any] | None = None, entries: Mapping[str, bytes] | None = None):
        self.index = dict(index or {})
        self.entries = entries
        self._basenames: dict[str, str] | None = None

    def resolve(self, pointer: str) -> str | None:
        if pointer in self.index:
            claimed = _descriptor_path(self.index[pointer])
            if claimed is None:
                return None
            if not is_safe_relative_path(claimed):
                logger.warning("Rejecting unsafe asset path %r for %s", claimed, pointer)
                return None
            key = normalize_path(claimed)
            if self.entries is not None and find_asset_entry(self.entries, key) is None:
                logger.warning("Missing asset payload for %s", key)
                return None
            return key
        return self._resolve_by_file_id(pointer)

    def _resolve_by_file_id(self, pointer: str) -> str | None:
        # conversations.json-only exports ship files as "<file id>-<name>.<ext>"
        if self.entries is None:
            return None
        file_id = _pointer_file_id(pointer)
        if not file_id:
            return None
        if self._basenames is None:
            self._basenames = {}
            for key in sorted(self.entries):
                self._basenames.setdefault(posixpath.basename(key), key)
        for basename, key in self._basenames.items():
            if basename == file_id or basename.startswith(file_id + "-") or basename.startswith(file_id + "."):
                return key if is_safe_relative_path(key) else None
        return None
