"""FastMCP server with conversation search tools."""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .config import DATASET_DIR, SQLITE_PATH, STORE_KIND
from .indexer import SearchIndex
from .models import AssetBlock, Conversation
from .storage import DatasetStore, open_store

# Logging to stderr only, stdout is the MCP JSON-RPC transport
logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)

mcp = FastMCP(
    "chatvault",
    instructions=(
        "Search and read the user's imported ChatGPT conversation history. "
        "Use search_conversations to find exact phrases across all conversations. "
        "Use get_conversation to read a full conversation transcript. "
        "Use list_conversations to browse conversations by recency or title. "
        "Use get_stats for an overview of the imported data."
    ),
)

# Singletons reused across tool calls
_store_kind = STORE_KIND
_location: Path = SQLITE_PATH if STORE_KIND == "sqlite" else DATASET_DIR
_store: DatasetStore | None = None
_index: SearchIndex | None = None

MAX_TRANSCRIPT_CHARS = 50_000


def configure(store_kind: str, location: Path) -> None:
    """Point the server at a dataset; drops any store opened before."""
    global _store_kind, _location, _store, _index
    if _store is not None:
        _store.close()
    _store_kind, _location = store_kind, Path(location)
    _store = None
    _index = None


def _get_store() -> DatasetStore:
    global _store
    if _store is None:
        _store = open_store(_store_kind, _location)
    return _store


def _get_index() -> SearchIndex:
    global _index
    if _index is None:
        _index = _get_store().search_index()
    return _index


def _format_ts(ts_ms: int | None) -> str:
    if not ts_ms:
        return "Unknown date"
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def _check_data_exists() -> str | None:
    """Return an error message if no data has been imported."""
    if not _location.exists():
        return (
            "No imported data found. Please import your ChatGPT export first:\n"
            "  chatvault import ~/Downloads/chatgpt-export.zip"
        )
    return None


def _render_blocks(conversation: Conversation, blocks) -> str:
    parts = []
    for block in blocks:
        if isinstance(block, AssetBlock):
            path = (conversation.assets_map or {}).get(block.asset_pointer, block.asset_pointer)
            parts.append(f"[{block.media_type}: {block.alt or path}]")
        elif block.type == "code":
            parts.append(f"```{block.lang}\n{block.text}\n```")
        else:
            parts.append(block.text)
    return "\n\n".join(parts)


@mcp.tool()
def search_conversations(query: str, limit: int = 10) -> str:
    """Search all imported conversations for an exact phrase (case-insensitive).

    Args:
        query: Phrase to look for; at least 3 characters
        limit: Maximum number of matching lines (default 10)
    """
    err = _check_data_exists()
    if err:
        return err

    hits = _get_index().search(query, limit=limit)
    if not hits:
        return f"No conversations found matching '{query}'."

    lines = [f"Found {len(hits)} matching lines for '{query}':\n"]
    for i, hit in enumerate(hits, 1):
        lines.append(f"{i}. **{hit.conversation_title}** ({_format_ts(hit.conversation_time)})")
        lines.append(f"   ID: `{hit.conversation_id}` | message `{hit.message_id}`, line {hit.line_no + 1}")
        for context in hit.snippet.context_before:
            lines.append(f"   | {context}")
        lines.append(f"   > {hit.snippet.before}**{hit.snippet.match}**{hit.snippet.after}")
        for context in hit.snippet.context_after:
            lines.append(f"   | {context}")
        lines.append("")

    lines.append("Use get_conversation(conversation_id) to read the full transcript.")
    return "\n".join(lines)


@mcp.tool()
def get_conversation(conversation_id: str) -> str:
    """Retrieve a full conversation transcript.

    Args:
        conversation_id: The conversation id (from search results)
    """
    err = _check_data_exists()
    if err:
        return err

    conv = _get_store().get_conversation(conversation_id)
    if not conv:
        return f"Conversation not found: {conversation_id}"

    lines = [
        f"# {conv.title}",
        f"Date: {_format_ts(conv.create_time or conv.last_message_time)}",
        f"Messages: {len(conv.messages)}",
        "",
        "---",
        "",
    ]

    char_count = 0
    for msg in conv.messages:
        content = _render_blocks(conv, msg.blocks)
        if not content:
            continue
        role = "**User**" if msg.role == "user" else f"**{msg.role.capitalize()}**"
        header = role + (f" ({_format_ts(msg.time)})" if msg.time else "")

        remaining_budget = MAX_TRANSCRIPT_CHARS - char_count
        if remaining_budget <= 0 or len(content) > remaining_budget:
            if remaining_budget > 0:
                lines.append(f"{header}:")
                lines.append(content[:remaining_budget])
            lines.append(
                f"\n... [Truncated: conversation exceeds {MAX_TRANSCRIPT_CHARS:,} chars. "
                f"Total: {len(conv.messages)} messages]"
            )
            break

        char_count += len(content)
        lines.append(f"{header}:")
        lines.append(content)
        lines.append("")

    return "\n".join(lines)


@mcp.tool()
def list_conversations(limit: int = 20, offset: int = 0, keyword: str | None = None) -> str:
    """Browse conversations, newest first.

    Args:
        limit: Maximum results (default 20)
        offset: Skip this many results (for pagination)
        keyword: Optional filter; matches titles and indexed text
    """
    err = _check_data_exists()
    if err:
        return err

    summaries = list(_get_store().load_summaries().values())
    if keyword:
        needle = keyword.lower()
        matching = _get_index().candidates(keyword)
        summaries = [s for s in summaries if needle in s.title.lower() or s.id in matching]
    page = summaries[offset : offset + limit]

    if not page:
        if keyword:
            return f"No conversations found matching '{keyword}'."
        return "No conversations found."

    lines = []
    if keyword:
        lines.append(f"Conversations matching '{keyword}':\n")
    else:
        lines.append(f"Conversations (showing {offset + 1}–{offset + len(page)} of {len(summaries)}):\n")

    for i, s in enumerate(page, offset + 1):
        lines.append(f"{i}. **{s.title}** ({_format_ts(s.last_message_time)})")
        lines.append(f"   ID: `{s.id}`" + (f" | {s.snippet}" if s.snippet else ""))

    if offset + limit < len(summaries):
        lines.append(f"\nMore available, use offset={offset + limit} to see the next page.")

    return "\n".join(lines)


@mcp.tool()
def get_stats() -> str:
    """Get statistics about the imported conversation dataset."""
    err = _check_data_exists()
    if err:
        return err

    stats = _get_store().get_stats()
    lines = [
        "# chatvault Dataset Statistics",
        "",
        f"- **Conversations**: {stats['total_conversations']:,}",
        f"- **Assets**: {stats['total_assets']:,}",
        f"- **Indexed lines**: {stats['indexed_lines']:,}",
        f"- **Distinct grams**: {stats['distinct_grams']:,}",
    ]
    if stats["date_range_start"]:
        lines.append(f"- **Date range**: {stats['date_range_start']} → {stats['date_range_end']}")

    lines.append(f"\n*Data stored in: {stats['location']} ({stats['store']})*")
    return "\n".join(lines)
