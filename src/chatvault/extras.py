"""Auxiliary per-archive metadata: user profile, feedback, gallery assets."""

from __future__ import annotations

import json
import logging
import posixpath
import re
from typing import Any, Mapping

from pydantic import ValidationError

from .config import EXTRA_FILE_ENTRIES, GENERATED_ASSETS_FILE
from .models import ExtraData, GeneratedAsset
from .paths import guess_mime_by_path, is_safe_relative_path

logger = logging.getLogger(__name__)

_USER_FOLDER_RE = re.compile(r"(user-[A-Za-z0-9_-]+)")


def _read_json_entry(entries: Mapping[str, bytes], name: str) -> Any | None:
    for key in (name, f"tmp/{name}"):
        payload = entries.get(key)
        if payload is None:
            continue
        try:
            return json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            logger.warning("Failed to parse %s, ignoring it", key)
            return None
    return None


def extract_extra_data(entries: Mapping[str, bytes]) -> ExtraData:
    values = {field: _read_json_entry(entries, name) for field, name in EXTRA_FILE_ENTRIES}
    return ExtraData(**values)


def merge_extras(target: ExtraData, incoming: ExtraData) -> ExtraData:
    """Later archives overwrite earlier ones, one field at a time."""
    for field in ExtraData.model_fields:
        value = getattr(incoming, field)
        if value is not None:
            setattr(target, field, value)
    return target


def _user_folder(user: Any, entries: Mapping[str, bytes]) -> str | None:
    user_id = user.get("id") if isinstance(user, dict) else None
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    for key in sorted(entries):
        match = _USER_FOLDER_RE.search(key)
        if match:
            return match.group(1)
    return None


def _user_relative_path(raw_key: str, folder: str) -> str | None:
    normalized = raw_key.replace("\\", "/")
    idx = normalized.find(folder)
    if idx == -1:
        return None
    if idx > 0 and normalized[idx - 1] != "/":
        return None
    suffix = normalized[idx:]
    if "/" not in suffix:
        return None
    return suffix


def _descriptor_path(descriptor: Any) -> str | None:
    if isinstance(descriptor, str):
        return descriptor
    if isinstance(descriptor, dict):
        for field in ("file_path", "download_url"):
            if isinstance(descriptor.get(field), str):
                return descriptor[field]
    return None


def collect_generated_assets(
    entries: Mapping[str, bytes],
    assets_index: Mapping[str, Any],
    user: Any = None,
) -> list[GeneratedAsset]:
    """List files under the ``user-*`` folder, with the pointers naming them."""
    folder = _user_folder(user, entries)
    if not folder:
        return []

    pointers_by_path: dict[str, set[str]] = {}
    for pointer, descriptor in assets_index.items():
        path = _descriptor_path(descriptor)
        rel = _user_relative_path(path, folder) if path else None
        if rel:
            pointers_by_path.setdefault(rel, set()).add(pointer)

    files: dict[str, GeneratedAsset] = {}
    for key in sorted(entries):
        if key.endswith("/"):
            continue
        rel = _user_relative_path(key, folder)
        if not rel or not is_safe_relative_path(rel):
            continue
        pointers = pointers_by_path.get(rel)
        asset = GeneratedAsset(
            path=rel,
            file_name=posixpath.basename(rel),
            size=len(entries[key]),
            mime=guess_mime_by_path(rel),
            pointers=sorted(pointers) if pointers else None,
        )
        merge_generated_assets(files, [asset])
    return list(files.values())


def merge_generated_assets(store: dict[str, GeneratedAsset], incoming: list[GeneratedAsset]) -> None:
    for asset in incoming:
        existing = store.get(asset.path)
        if existing is None:
            store[asset.path] = asset.model_copy()
            continue
        if asset.pointers:
            existing.pointers = sorted(set(existing.pointers or []) | set(asset.pointers))
        if existing.size is None and asset.size is not None:
            existing.size = asset.size
        if not existing.mime and asset.mime:
            existing.mime = asset.mime


def read_generated_assets(entries: Mapping[str, bytes]) -> list[GeneratedAsset]:
    """The gallery listing a dataset export carries in ``generated_files.json``."""
    raw = _read_json_entry(entries, GENERATED_ASSETS_FILE)
    if not isinstance(raw, list):
        return []
    assets: list[GeneratedAsset] = []
    for item in raw:
        try:
            asset = GeneratedAsset.model_validate(item)
        except ValidationError:
            logger.warning("Ignoring malformed gallery entry in %s", GENERATED_ASSETS_FILE)
            continue
        if is_safe_relative_path(asset.path):
            assets.append(asset)
    return assets
