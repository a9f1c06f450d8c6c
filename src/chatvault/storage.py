"""Dataset persistence: a directory tree or a single SQLite file."""

from __future__ import annotations

import abc
import contextlib
import json
import logging
import os
import shutil
import sqlite3
import tempfile
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from pydantic import TypeAdapter, ValidationError

from .config import (
    CONVERSATION_FILE_NAME,
    CONVERSATIONS_JSON_NAME,
    DATASET_ASSETS_DIR,
    DATASET_CONVERSATIONS_DIR,
    EXTRA_FILE_ENTRIES,
    GENERATED_ASSET_OWNER_ID,
    GENERATED_ASSETS_FILE,
    SEARCH_INDEX_NAME,
)
from .errors import DestinationError
from .indexer import SearchIndex, grams_by_conversation
from .models import (
    Conversation,
    ConversationPayload,
    ConversationSummary,
    ExtraData,
    GeneratedAsset,
    SearchBundle,
    SearchLine,
    SearchLocation,
    SummaryRef,
)
from .paths import guess_mime_by_path, is_safe_conversation_id, safe_join_under

logger = logging.getLogger(__name__)

_summary_list = TypeAdapter(list[ConversationSummary])
_generated_list = TypeAdapter(list[GeneratedAsset])


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dump_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _model_json(model) -> str:
    return _dump_json(model.model_dump(mode="json", exclude_none=True))


def _ordered(summaries) -> dict[str, ConversationSummary]:
    items = sorted(summaries, key=lambda s: (-s.last_message_time, s.id))
    return {summary.id: summary for summary in items}


class AssetHandleRegistry:
    """Temporary files standing in for stored asset payloads.

    Handles are created on demand by :meth:`acquire` and must be released
    explicitly. The owning store releases a key whenever the asset is
    removed and disposes the whole registry on close.
    """

    def __init__(self, loader: Callable[[str], bytes | None]):
        self._loader = loader
        self._handles: dict[str, Path] = {}
        self._tmpdir: Path | None = None

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, key: str) -> bool:
        return key in self._handles

    def acquire(self, key: str) -> Path | None:
        handle = self._handles.get(key)
        if handle is not None and handle.exists():
            return handle
        data = self._loader(key)
        if data is None:
            return None
        if self._tmpdir is None:
            self._tmpdir = Path(tempfile.mkdtemp(prefix="chatvault-assets-"))
        handle = self._tmpdir / f"{len(self._handles):06d}-{Path(key).name}"
        handle.write_bytes(data)
        self._handles[key] = handle
        return handle

    def release(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.unlink(missing_ok=True)

    def dispose(self) -> None:
        for key in list(self._handles):
            self.release(key)
        if self._tmpdir is not None:
            shutil.rmtree(self._tmpdir, ignore_errors=True)
            self._tmpdir = None


class DatasetStore(abc.ABC):
    """Persistence interface shared by every dataset backend."""

    kind = "abstract"

    def __init__(self):
        self.handles = AssetHandleRegistry(self.get_asset)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if exc_type is None:
                self.commit()
        finally:
            self.close()

    @property
    @abc.abstractmethod
    def location(self) -> Path: ...

    @abc.abstractmethod
    def load_summaries(self) -> dict[str, ConversationSummary]:
        """All summaries, newest first."""

    def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        return self.load_summaries().get(conversation_id)

    @abc.abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    def write_conversation(self, payload: ConversationPayload) -> bool:
        """Write the record, summary and search data of one conversation.

        Returns False, without touching the dataset, when the id cannot be
        stored safely.
        """
        conversation_id = payload.conversation.id
        if not is_safe_conversation_id(conversation_id):
            logger.warning("Skipping conversation with unsafe id: %r", conversation_id)
            return False
        self._write_conversation(payload)
        return True

    @abc.abstractmethod
    def _write_conversation(self, payload: ConversationPayload) -> None: ...

    @abc.abstractmethod
    def delete_conversation(self, conversation_id: str) -> bool: ...

    @abc.abstractmethod
    def save_asset(self, key: str, data: bytes, owner_id: str, mime: str | None = None) -> bool:
        """Link ``key`` to ``owner_id``; True when the payload was newly written."""

    @abc.abstractmethod
    def get_asset(self, key: str) -> bytes | None: ...

    @abc.abstractmethod
    def asset_count(self) -> int: ...

    @abc.abstractmethod
    def asset_keys(self) -> list[str]: ...

    @abc.abstractmethod
    def load_extras(self) -> ExtraData: ...

    @abc.abstractmethod
    def save_extras(self, extras: ExtraData) -> None: ...

    @abc.abstractmethod
    def load_search_bundle(self) -> SearchBundle: ...

    @abc.abstractmethod
    def purge(self) -> None:
        """Remove every conversation, asset, index entry and extras file."""

    def commit(self) -> None:
        pass

    def close(self) -> None:
        self.handles.dispose()

    def open_asset(self, key: str) -> Path | None:
        """A local file holding the asset payload, valid until released."""
        return self.handles.acquire(key)

    def search_index(self) -> SearchIndex:
        return SearchIndex(self.load_search_bundle())

    def get_stats(self) -> dict:
        summaries = self.load_summaries()
        bundle = self.load_search_bundle()
        times = [s.last_message_time for s in summaries.values() if s.last_message_time]
        return {
            "store": self.kind,
            "location": str(self.location),
            "total_conversations": len(summaries),
            "total_assets": self.asset_count(),
            "indexed_lines": sum(len(lines) for lines in bundle.lines_by_conversation.values()),
            "distinct_grams": len(bundle.grams),
            "date_range_start": _format_ts(min(times)) if times else None,
            "date_range_end": _format_ts(max(times)) if times else None,
        }

    def export_zip(self, path: Path) -> int:
        """Pack the dataset into a ZIP laid out like a directory dataset.

        The archive can be fed back to ``chatvault import`` for either
        backend. Returns the number of conversations exported.
        """
        path = Path(path)
        summaries = self.load_summaries()
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
            os.close(fd)
            try:
                with zipfile.ZipFile(tmp, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                    self._write_export(zf, summaries)
                os.replace(tmp, path)
            except BaseException:
                with contextlib.suppress(OSError):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise DestinationError(f"Cannot write dataset export {path}: {e}") from e
        logger.info("Exported %d conversations to %s", len(summaries), path)
        return len(summaries)

    def _write_export(self, zf: zipfile.ZipFile, summaries: dict[str, ConversationSummary]) -> None:
        listing = [s.model_dump(mode="json", exclude_none=True) for s in summaries.values()]
        zf.writestr(CONVERSATIONS_JSON_NAME, json.dumps(listing, ensure_ascii=False, indent=2))
        for conversation_id in summaries:
            conversation = self.get_conversation(conversation_id)
            if conversation is None:
                logger.warning("No record for conversation %s, leaving it out of the export", conversation_id)
                continue
            name = f"{DATASET_CONVERSATIONS_DIR}/{conversation_id}/{CONVERSATION_FILE_NAME}"
            zf.writestr(name, _model_json(conversation))
        for key in self.asset_keys():
            data = self.get_asset(key)
            if data is not None:
                zf.writestr(f"{DATASET_ASSETS_DIR}/{key}", data)
        zf.writestr(SEARCH_INDEX_NAME, _model_json(self.load_search_bundle()))

        extras = self.load_extras()
        for field, name in EXTRA_FILE_ENTRIES:
            value = getattr(extras, field)
            if value is not None:
                zf.writestr(name, json.dumps(value, ensure_ascii=False, indent=2))
        if extras.generated_assets is not None:
            payload = _generated_list.dump_python(extras.generated_assets, mode="json", exclude_none=True)
            zf.writestr(GENERATED_ASSETS_FILE, json.dumps(payload, ensure_ascii=False, indent=2))


# --- directory tree ---------------------------------------------------------


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


class DirectoryStore(DatasetStore):
    """Dataset laid out as plain files under ``root``.

    ``conversations.json`` and ``search_index.json`` are held in memory and
    rewritten on :meth:`commit`; each ``conversation.json`` is written
    atomically as soon as the conversation is.
    """

    kind = "directory"

    def __init__(self, root: Path):
        super().__init__()
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DestinationError(f"Cannot create dataset directory {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise DestinationError(f"Dataset directory is not writable: {self.root}")

        self.summaries_path = self.root / CONVERSATIONS_JSON_NAME
        self.index_path = self.root / SEARCH_INDEX_NAME
        self.conversations_dir = self.root / DATASET_CONVERSATIONS_DIR
        self.assets_dir = self.root / DATASET_ASSETS_DIR

        self._summaries = {s.id: s for s in self._read_summaries()}
        bundle = self._read_bundle()
        self._lines: dict[str, list[SearchLine]] = dict(bundle.lines_by_conversation)
        self._grams: dict[str, list[str]] = grams_by_conversation(bundle.grams)
        self._owners: dict[str, set[str]] | None = None
        self._dirty = False

    @property
    def location(self) -> Path:
        return self.root

    # reading

    def _read_summaries(self) -> list[ConversationSummary]:
        if not self.summaries_path.exists():
            return []
        try:
            return _summary_list.validate_json(self.summaries_path.read_bytes())
        except ValidationError:
            logger.warning("Ignoring malformed %s", self.summaries_path)
            return []

    def _read_bundle(self) -> SearchBundle:
        if not self.index_path.exists():
            return SearchBundle()
        try:
            return SearchBundle.model_validate_json(self.index_path.read_bytes())
        except ValidationError:
            logger.warning("Ignoring malformed %s", self.index_path)
            return SearchBundle()

    def _conversation_path(self, conversation_id: str) -> Path | None:
        folder = safe_join_under(self.conversations_dir, conversation_id)
        return folder / CONVERSATION_FILE_NAME if folder else None

    def _asset_path(self, key: str) -> Path | None:
        return safe_join_under(self.assets_dir, key)

    def _asset_owners(self) -> dict[str, set[str]]:
        if self._owners is None:
            owners: dict[str, set[str]] = {}
            for conversation_id in self._summaries:
                conversation = self.get_conversation(conversation_id)
                for key in (conversation.assets_map or {}).values() if conversation else ():
                    owners.setdefault(key, set()).add(conversation_id)
            for asset in self.load_extras().generated_assets or []:
                owners.setdefault(asset.path, set()).add(GENERATED_ASSET_OWNER_ID)
            self._owners = owners
        return self._owners

    def load_summaries(self) -> dict[str, ConversationSummary]:
        return _ordered(self._summaries.values())

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        path = self._conversation_path(conversation_id)
        if path is None or not path.exists():
            return None
        try:
            return Conversation.model_validate_json(path.read_bytes())
        except ValidationError:
            logger.warning("Ignoring malformed conversation file %s", path)
            return None

    def get_asset(self, key: str) -> bytes | None:
        path = self._asset_path(key)
        if path is None or not path.is_file():
            return None
        return path.read_bytes()

    def asset_count(self) -> int:
        if not self.assets_dir.exists():
            return 0
        return sum(1 for path in self.assets_dir.rglob("*") if path.is_file())

    def asset_keys(self) -> list[str]:
        if not self.assets_dir.exists():
            return []
        return sorted(p.relative_to(self.assets_dir).as_posix() for p in self.assets_dir.rglob("*") if p.is_file())

    def load_extras(self) -> ExtraData:
        values: dict[str, Any] = {}
        for field, name in EXTRA_FILE_ENTRIES:
            path = self.root / name
            if path.exists():
                try:
                    values[field] = json.loads(path.read_text(encoding="utf-8"))
                except ValueError:
                    logger.warning("Ignoring malformed %s", path)
        gallery_path = self.root / GENERATED_ASSETS_FILE
        if gallery_path.exists():
            try:
                values["generated_assets"] = _generated_list.validate_json(gallery_path.read_bytes())
            except ValidationError:
                logger.warning("Ignoring malformed %s", gallery_path)
        return ExtraData(**values)

    def load_search_bundle(self) -> SearchBundle:
        postings: dict[str, list[str]] = {}
        for conversation_id in sorted(self._grams):
            for gram in self._grams[conversation_id]:
                postings.setdefault(gram, []).append(conversation_id)
        return SearchBundle(
            grams=dict(sorted(postings.items())),
            lines_by_conversation={cid: self._lines.get(cid, []) for cid in self._summaries},
            summary_map={
                cid: SummaryRef(title=s.title, last_message_time=s.last_message_time)
                for cid, s in self._summaries.items()
            },
        )

    # writing

    def _unlink_owner(self, key: str, owner_id: str) -> None:
        owners = self._asset_owners()
        linked = owners.get(key)
        if linked is None:
            return
        linked.discard(owner_id)
        if linked:
            return
        del owners[key]
        path = self._asset_path(key)
        if path is not None:
            path.unlink(missing_ok=True)
        self.handles.release(key)

    def _write_conversation(self, payload: ConversationPayload) -> None:
        conversation_id = payload.conversation.id
        path = self._conversation_path(conversation_id)
        if path is None:
            raise DestinationError(f"Conversation folder escapes {self.conversations_dir}: {conversation_id!r}")

        owners = self._asset_owners()
        keep = set(payload.asset_keys)
        for key in [k for k, ids in owners.items() if conversation_id in ids and k not in keep]:
            self._unlink_owner(key, conversation_id)

        _atomic_write(path, _model_json(payload.conversation).encode("utf-8"))
        summary = payload.summary.model_copy(update={"saved_at": _now_ms()})
        self._summaries[conversation_id] = summary
        self._lines[conversation_id] = list(payload.search_lines)
        self._grams[conversation_id] = list(payload.grams)
        self._dirty = True

    def delete_conversation(self, conversation_id: str) -> bool:
        if conversation_id not in self._summaries:
            return False
        path = self._conversation_path(conversation_id)
        if path is not None and path.parent.exists():
            shutil.rmtree(path.parent)
        for key in [k for k, ids in self._asset_owners().items() if conversation_id in ids]:
            self._unlink_owner(key, conversation_id)
        del self._summaries[conversation_id]
        self._lines.pop(conversation_id, None)
        self._grams.pop(conversation_id, None)
        self._dirty = True
        return True

    def save_asset(self, key: str, data: bytes, owner_id: str, mime: str | None = None) -> bool:
        path = self._asset_path(key)
        if path is None:
            logger.warning("Refusing to write asset outside dataset: %s", key)
            return False
        self._asset_owners().setdefault(key, set()).add(owner_id)
        if path.exists():
            return False
        _atomic_write(path, data)
        return True

    def save_extras(self, extras: ExtraData) -> None:
        for field, name in EXTRA_FILE_ENTRIES:
            path = self.root / name
            value = getattr(extras, field)
            if value is None:
                path.unlink(missing_ok=True)
            else:
                _atomic_write(path, json.dumps(value, ensure_ascii=False, indent=2).encode("utf-8"))

        gallery_path = self.root / GENERATED_ASSETS_FILE
        owners = self._asset_owners()
        previous = {key for key, ids in owners.items() if GENERATED_ASSET_OWNER_ID in ids}
        current = {asset.path for asset in extras.generated_assets or []}
        for key in previous - current:
            self._unlink_owner(key, GENERATED_ASSET_OWNER_ID)
        if extras.generated_assets is None:
            gallery_path.unlink(missing_ok=True)
        else:
            payload = _generated_list.dump_python(extras.generated_assets, mode="json", exclude_none=True)
            _atomic_write(gallery_path, json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8"))

    def purge(self) -> None:
        for folder in (self.conversations_dir, self.assets_dir):
            if folder.exists():
                shutil.rmtree(folder)
        for _field, name in EXTRA_FILE_ENTRIES:
            (self.root / name).unlink(missing_ok=True)
        for path in (self.root / GENERATED_ASSETS_FILE, self.summaries_path, self.index_path):
            path.unlink(missing_ok=True)
        self.handles.dispose()
        self._summaries = {}
        self._lines = {}
        self._grams = {}
        self._owners = {}
        self._dirty = True

    def commit(self) -> None:
        if not self._dirty:
            return
        summaries = [s.model_dump(mode="json", exclude_none=True) for s in self.load_summaries().values()]
        _atomic_write(self.summaries_path, json.dumps(summaries, ensure_ascii=False, indent=2).encode("utf-8"))
        _atomic_write(self.index_path, _model_json(self.load_search_bundle()).encode("utf-8"))
        self._dirty = False
        logger.debug("Committed %d conversations to %s", len(self._summaries), self.root)


# --- sqlite -----------------------------------------------------------------


class SqliteStore(DatasetStore):
    """SQLite-backed dataset; every conversation write is one transaction."""

    kind = "sqlite"

    def __init__(self, db_path: Path):
        super().__init__()
        self.db_path = Path(db_path)
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path))
            self.conn.row_factory = sqlite3.Row
            self.conn.execute("PRAGMA journal_mode=WAL")
            self._migrate()
        except (OSError, sqlite3.Error) as e:
            raise DestinationError(f"Cannot open dataset database {self.db_path}: {e}") from e

    @property
    def location(self) -> Path:
        return self.db_path

    def _migrate(self):
        self.conn.executescript("""
            CREATE TABLE IF NOT EXISTS summaries (
                id TEXT PRIMARY KEY,
                last_message_time INTEGER NOT NULL,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS conversations (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS assets (
                key TEXT PRIMARY KEY,
                mime TEXT,
                data BLOB NOT NULL
            );

            CREATE TABLE IF NOT EXISTS asset_owners (
                asset_key TEXT NOT NULL,
                owner_id TEXT NOT NULL,
                PRIMARY KEY (asset_key, owner_id)
            );

            CREATE INDEX IF NOT EXISTS idx_asset_owners_owner
                ON asset_owners(owner_id);

            CREATE TABLE IF NOT EXISTS search_lines (
                conversation_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                message_id TEXT NOT NULL,
                block_index INTEGER NOT NULL,
                line_no INTEGER NOT NULL,
                text TEXT NOT NULL,
                PRIMARY KEY (conversation_id, seq)
            );

            CREATE TABLE IF NOT EXISTS search_postings (
                gram TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                PRIMARY KEY (gram, conversation_id)
            );

            CREATE INDEX IF NOT EXISTS idx_search_postings_conv
                ON search_postings(conversation_id);

            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            );
        """)
        self.conn.commit()

    # reading

    def load_summaries(self) -> dict[str, ConversationSummary]:
        rows = self.conn.execute("SELECT data FROM summaries ORDER BY last_message_time DESC, id").fetchall()
        return {s.id: s for s in (ConversationSummary.model_validate_json(r["data"]) for r in rows)}

    def get_summary(self, conversation_id: str) -> ConversationSummary | None:
        row = self.conn.execute("SELECT data FROM summaries WHERE id = ?", (conversation_id,)).fetchone()
        return ConversationSummary.model_validate_json(row["data"]) if row else None

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self.conn.execute("SELECT data FROM conversations WHERE id = ?", (conversation_id,)).fetchone()
        return Conversation.model_validate_json(row["data"]) if row else None

    def get_asset(self, key: str) -> bytes | None:
        row = self.conn.execute("SELECT data FROM assets WHERE key = ?", (key,)).fetchone()
        return bytes(row["data"]) if row else None

    def get_asset_mime(self, key: str) -> str | None:
        row = self.conn.execute("SELECT mime FROM assets WHERE key = ?", (key,)).fetchone()
        return row["mime"] if row else None

    def asset_count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM assets").fetchone()[0]

    def asset_keys(self) -> list[str]:
        return [r["key"] for r in self.conn.execute("SELECT key FROM assets ORDER BY key")]

    def load_extras(self) -> ExtraData:
        values: dict[str, Any] = {}
        rows = self.conn.execute("SELECT key, value FROM metadata").fetchall()
        stored = {r["key"]: r["value"] for r in rows}
        for field, name in EXTRA_FILE_ENTRIES:
            if name in stored:
                values[field] = json.loads(stored[name])
        if GENERATED_ASSETS_FILE in stored:
            values["generated_assets"] = _generated_list.validate_json(stored[GENERATED_ASSETS_FILE])
        return ExtraData(**values)

    def load_search_bundle(self) -> SearchBundle:
        bundle = SearchBundle()
        for row in self.conn.execute("SELECT gram, conversation_id FROM search_postings ORDER BY gram, conversation_id"):
            bundle.grams.setdefault(row["gram"], []).append(row["conversation_id"])
        rows = self.conn.execute(
            "SELECT conversation_id, message_id, block_index, line_no, text FROM search_lines ORDER BY conversation_id, seq"
        )
        for row in rows:
            loc = SearchLocation(
                conversation_id=row["conversation_id"],
                message_id=row["message_id"],
                block_index=row["block_index"],
                line_no=row["line_no"],
            )
            bundle.lines_by_conversation.setdefault(loc.conversation_id, []).append(SearchLine(loc=loc, text=row["text"]))
        for summary in self.load_summaries().values():
            bundle.summary_map[summary.id] = SummaryRef(title=summary.title, last_message_time=summary.last_message_time)
            bundle.lines_by_conversation.setdefault(summary.id, [])
        return bundle

    def get_stats(self) -> dict:
        stats = super().get_stats()
        stats["indexed_lines"] = self.conn.execute("SELECT COUNT(*) FROM search_lines").fetchone()[0]
        stats["distinct_grams"] = self.conn.execute("SELECT COUNT(DISTINCT gram) FROM search_postings").fetchone()[0]
        return stats

    # writing

    def _prune_assets(self, keys) -> None:
        for key in keys:
            owned = self.conn.execute("SELECT 1 FROM asset_owners WHERE asset_key = ? LIMIT 1", (key,)).fetchone()
            if owned is None:
                self.conn.execute("DELETE FROM assets WHERE key = ?", (key,))
                self.handles.release(key)

    def _delete_search_data(self, conversation_id: str) -> None:
        self.conn.execute("DELETE FROM search_lines WHERE conversation_id = ?", (conversation_id,))
        self.conn.execute("DELETE FROM search_postings WHERE conversation_id = ?", (conversation_id,))

    def _write_conversation(self, payload: ConversationPayload) -> None:
        conversation_id = payload.conversation.id
        summary = payload.summary.model_copy(update={"saved_at": _now_ms()})
        with self.conn:
            self._delete_search_data(conversation_id)
            self.conn.execute(
                "INSERT OR REPLACE INTO summaries (id, last_message_time, data) VALUES (?, ?, ?)",
                (conversation_id, summary.last_message_time, _model_json(summary)),
            )
            self.conn.execute(
                "INSERT OR REPLACE INTO conversations (id, data) VALUES (?, ?)",
                (conversation_id, _model_json(payload.conversation)),
            )
            self.conn.executemany(
                """INSERT INTO search_lines (conversation_id, seq, message_id, block_index, line_no, text)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (conversation_id, seq, line.loc.message_id, line.loc.block_index, line.loc.line_no, line.text)
                    for seq, line in enumerate(payload.search_lines)
                ],
            )
            self.conn.executemany(
                "INSERT OR IGNORE INTO search_postings (gram, conversation_id) VALUES (?, ?)",
                [(gram, conversation_id) for gram in payload.grams],
            )
            owned = [
                r["asset_key"]
                for r in self.conn.execute("SELECT asset_key FROM asset_owners WHERE owner_id = ?", (conversation_id,))
            ]
            stale = [key for key in owned if key not in set(payload.asset_keys)]
            self.conn.executemany(
                "DELETE FROM asset_owners WHERE asset_key = ? AND owner_id = ?",
                [(key, conversation_id) for key in stale],
            )
            self._prune_assets(stale)

    def delete_conversation(self, conversation_id: str) -> bool:
        with self.conn:
            cursor = self.conn.execute("DELETE FROM summaries WHERE id = ?", (conversation_id,))
            if cursor.rowcount == 0:
                return False
            self.conn.execute("DELETE FROM conversations WHERE id = ?", (conversation_id,))
            self._delete_search_data(conversation_id)
            owned = [
                r["asset_key"]
                for r in self.conn.execute("SELECT asset_key FROM asset_owners WHERE owner_id = ?", (conversation_id,))
            ]
            self.conn.execute("DELETE FROM asset_owners WHERE owner_id = ?", (conversation_id,))
            self._prune_assets(owned)
        return True

    def save_asset(self, key: str, data: bytes, owner_id: str, mime: str | None = None) -> bool:
        with self.conn:
            self.conn.execute(
                "INSERT OR IGNORE INTO asset_owners (asset_key, owner_id) VALUES (?, ?)",
                (key, owner_id),
            )
            cursor = self.conn.execute(
                "INSERT OR IGNORE INTO assets (key, mime, data) VALUES (?, ?, ?)",
                (key, mime or guess_mime_by_path(key), sqlite3.Binary(data)),
            )
        return cursor.rowcount == 1

    def save_extras(self, extras: ExtraData) -> None:
        with self.conn:
            for field, name in EXTRA_FILE_ENTRIES:
                value = getattr(extras, field)
                if value is None:
                    self.conn.execute("DELETE FROM metadata WHERE key = ?", (name,))
                else:
                    self.conn.execute(
                        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                        (name, _dump_json(value)),
                    )

            current = {asset.path for asset in extras.generated_assets or []}
            previous = [
                r["asset_key"]
                for r in self.conn.execute(
                    "SELECT asset_key FROM asset_owners WHERE owner_id = ?", (GENERATED_ASSET_OWNER_ID,)
                )
            ]
            stale = [key for key in previous if key not in current]
            self.conn.executemany(
                "DELETE FROM asset_owners WHERE asset_key = ? AND owner_id = ?",
                [(key, GENERATED_ASSET_OWNER_ID) for key in stale],
            )
            self._prune_assets(stale)
            if extras.generated_assets is None:
                self.conn.execute("DELETE FROM metadata WHERE key = ?", (GENERATED_ASSETS_FILE,))
            else:
                payload = _generated_list.dump_python(extras.generated_assets, mode="json", exclude_none=True)
                self.conn.execute(
                    "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
                    (GENERATED_ASSETS_FILE, _dump_json(payload)),
                )

    def purge(self) -> None:
        with self.conn:
            for table in ("summaries", "conversations", "assets", "asset_owners", "search_lines", "search_postings", "metadata"):
                self.conn.execute(f"DELETE FROM {table}")
        self.handles.dispose()

    def commit(self) -> None:
        self.conn.commit()

    def close(self) -> None:
        super().close()
        self.conn.close()


def open_store(kind: str, location: Path) -> DatasetStore:
    if kind == "sqlite":
        return SqliteStore(location)
    if kind == "directory":
        return DirectoryStore(location)
    raise ValueError(f"Unknown store kind: {kind!r}")


def _format_ts(ts_ms: int | None) -> str | None:
    if ts_ms is None:
        return None
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")
