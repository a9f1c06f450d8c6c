"""Convert ChatGPT export graph conversations into slim, linear conversations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .config import FALLBACK_TITLE, KNOWN_ROLES, SNIPPET_MAX_CHARS, TIMESTAMP_MS_THRESHOLD
from .models import Conversation, MarkdownBlock, Message, Variant
from .paths import AssetResolver
from .segmenter import build_details, convert_content
from .text import collapse_whitespace, sanitize_rendered_markdown

logger = logging.getLogger(__name__)


@dataclass
class ConversionResult:
    conversation: Conversation
    snippet: str
    mapping_node_count: int
    asset_keys: list[str]


def normalize_ms(value: Any) -> int | None:
    """Seconds or milliseconds -> milliseconds. Missing or zero -> None."""
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not value:
        return None
    if value > TIMESTAMP_MS_THRESHOLD:
        return int(value)
    return int(round(value * 1000))


def build_snippet(text: str) -> str:
    return collapse_whitespace(sanitize_rendered_markdown(text))[:SNIPPET_MAX_CHARS]


def _traverse_tree(mapping: dict[str, Any], current_node: str) -> list[str]:
    """Walk from current_node back to root via parent pointers, return node IDs root-first."""
    path: list[str] = []
    visited: set[str] = set()
    node_id = current_node

    while node_id and node_id in mapping:
        if node_id in visited:
            logger.debug("Circular reference detected at node %s", node_id)
            break
        visited.add(node_id)
        path.append(node_id)
        node = mapping[node_id]
        node_id = node.get("parent") if isinstance(node, dict) else None

    path.reverse()
    return path


def _message_role(message: dict[str, Any]) -> str:
    author = message.get("author")
    role = author.get("role") if isinstance(author, dict) else None
    return role if role in KNOWN_ROLES else "user"


def _message_time(message: dict[str, Any]) -> int | None:
    return normalize_ms(message.get("create_time") or message.get("update_time"))


def _is_hidden(message: dict[str, Any]) -> bool:
    metadata = message.get("metadata")
    return isinstance(metadata, dict) and bool(metadata.get("is_visually_hidden_from_conversation"))


def _collect_assistant_variants(node_id: str, mapping: dict[str, Any]) -> list[tuple[str, dict[str, Any]]]:
    """Sibling assistant nodes under the same parent, excluding the node itself."""
    parent_id = mapping[node_id].get("parent")
    parent = mapping.get(parent_id) if parent_id else None
    children = parent.get("children") if isinstance(parent, dict) else None
    if not isinstance(children, list):
        return []
    variants = []
    for child_id in children:
        if child_id == node_id:
            continue
        child = mapping.get(child_id)
        if not isinstance(child, dict):
            continue
        message = child.get("message")
        if isinstance(message, dict) and _message_role(message) == "assistant":
            variants.append((child_id, child))
    return variants


def _transform_message(
    node_id: str,
    mapping: dict[str, Any],
    resolver: AssetResolver,
    assets_map: dict[str, str],
) -> Message | None:
    node = mapping[node_id]
    raw = node.get("message")
    blocks = convert_content(raw.get("content"), resolver, assets_map)
    if not blocks and _is_hidden(raw):
        return None

    message = Message(
        id=str(raw.get("id") or node.get("id") or node_id),
        role=_message_role(raw),
        time=_message_time(raw),
        recipient=raw.get("recipient") if isinstance(raw.get("recipient"), str) else None,
        blocks=blocks,
        details=build_details(raw),
    )
    if message.role == "assistant":
        variants = []
        for sibling_id, sibling in _collect_assistant_variants(node_id, mapping):
            sibling_message = sibling["message"]
            variants.append(
                Variant(
                    id=str(sibling_message.get("id") or sibling.get("id") or sibling_id),
                    time=_message_time(sibling_message),
                    blocks=convert_content(sibling_message.get("content"), resolver, assets_map),
                    details=build_details(sibling_message),
                )
            )
        message.variants = variants or None
    return message


def _first_markdown_text(message: Message) -> str | None:
    for block in message.blocks:
        if isinstance(block, MarkdownBlock) and block.text:
            return block.text
    return None


def _conversation_snippet(messages: list[Message]) -> str:
    for message in messages:
        if message.role == "user":
            text = _first_markdown_text(message)
            if text:
                return build_snippet(text)
            break
    for message in messages:
        text = _first_markdown_text(message)
        if text:
            return build_snippet(text)
    return ""


def _title_from_messages(messages: list[Message]) -> str:
    first_user = next((m for m in messages if m.role == "user"), None)
    text = _first_markdown_text(first_user) if first_user else None
    return build_snippet(text) if text else FALLBACK_TITLE


def convert_conversation(raw: dict[str, Any], resolver: AssetResolver | None = None) -> ConversionResult | None:
    """Convert a single export graph into a slim conversation.

    Returns None if the graph has no mapping, its current node is missing, or
    nothing displayable is left on the active path.
    """
    resolver = resolver or AssetResolver()
    mapping = raw.get("mapping")
    current_node = raw.get("current_node")
    title = raw.get("title") if isinstance(raw.get("title"), str) else ""

    if not isinstance(mapping, dict) or not mapping:
        logger.debug("Skipping conversation '%s' with missing mapping", title)
        return None
    if not current_node or current_node not in mapping:
        logger.warning("Conversation '%s': current_node not found in mapping", title)
        return None

    messages: list[Message] = []
    assets_map: dict[str, str] = {}
    last_message_time = normalize_ms(raw.get("update_time")) or normalize_ms(raw.get("create_time")) or 0

    for node_id in _traverse_tree(mapping, current_node):
        node = mapping[node_id]
        if not isinstance(node, dict) or not isinstance(node.get("message"), dict):
            continue
        message = _transform_message(node_id, mapping, resolver, assets_map)
        if message is None:
            continue
        if message.time and message.time > last_message_time:
            last_message_time = message.time
        messages.append(message)

    if not messages:
        logger.debug("Conversation '%s' has no displayable messages, skipping", title)
        return None

    conversation = Conversation(
        id=str(raw.get("conversation_id") or raw.get("id") or messages[0].id),
        title=title or _title_from_messages(messages),
        create_time=normalize_ms(raw.get("create_time")),
        update_time=normalize_ms(raw.get("update_time")),
        last_message_time=last_message_time,
        assets_map=assets_map or None,
        messages=messages,
    )
    return ConversionResult(
        conversation=conversation,
        snippet=_conversation_snippet(messages),
        mapping_node_count=len(mapping),
        asset_keys=sorted(set(assets_map.values())),
    )


def parse_conversations(data: list[dict[str, Any]], resolver: AssetResolver | None = None) -> list[ConversionResult]:
    """Convert a full conversations array, skipping entries that fail."""
    results: list[ConversionResult] = []

    for conv_dict in data:
        if not isinstance(conv_dict, dict):
            continue
        try:
            result = convert_conversation(conv_dict, resolver)
            if result is not None:
                results.append(result)
        except Exception:
            title = conv_dict.get("title", "unknown")
            logger.warning("Failed to convert conversation '%s'", title, exc_info=True)

    return results
