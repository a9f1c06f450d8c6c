"""Builders for synthetic ChatGPT export graphs and archives."""

from __future__ import annotations

import json
import zipfile
from pathlib import Path
from typing import Any

from chatvault.models import (
    Conversation,
    ConversationPayload,
    ConversationSummary,
    MarkdownBlock,
    Message,
    SearchLine,
    SearchLocation,
)
from chatvault.text import build_trigrams

BASE_TIME = 1_700_000_000  # seconds, like real exports


def text_message(
    message_id: str,
    role: str,
    text: str,
    create_time: float | None = None,
    **extra: Any,
) -> dict[str, Any]:
    message = {
        "id": message_id,
        "author": {"role": role},
        "create_time": create_time,
        "content": {"content_type": "text", "parts": [text]},
        "recipient": "all",
        "metadata": {},
    }
    message.update(extra)
    return message


def image_message(message_id: str, pointer: str, caption: str, create_time: float | None = None) -> dict[str, Any]:
    return {
        "id": message_id,
        "author": {"role": "user"},
        "create_time": create_time,
        "content": {
            "content_type": "multimodal_text",
            "parts": [
                {"content_type": "image_asset_pointer", "asset_pointer": pointer, "width": 64, "height": 64},
                caption,
            ],
        },
        "recipient": "all",
        "metadata": {},
    }


def linear_graph(
    conversation_id: str,
    title: str,
    messages: list[dict[str, Any]],
    update_time: float | None = None,
) -> dict[str, Any]:
    """Chain messages under an empty root node, last one is the current node."""
    mapping: dict[str, Any] = {"root": {"id": "root", "parent": None, "children": [], "message": None}}
    parent = "root"
    for message in messages:
        node_id = message["id"]
        mapping[node_id] = {"id": node_id, "parent": parent, "children": [], "message": message}
        mapping[parent]["children"].append(node_id)
        parent = node_id
    times = [m["create_time"] for m in messages if m.get("create_time")]
    return {
        "id": conversation_id,
        "conversation_id": conversation_id,
        "title": title,
        "create_time": times[0] if times else None,
        "update_time": update_time if update_time is not None else (times[-1] if times else None),
        "current_node": parent,
        "mapping": mapping,
    }


def sample_conversation(index: int) -> tuple[dict[str, Any], str, str]:
    """One conversation with an image; returns (graph, pointer, asset file name)."""
    pointer = f"file-service://file-img{index}"
    file_name = f"file-img{index}-photo.png"
    start = BASE_TIME + index * 3600
    graph = linear_graph(
        f"conv-{index}",
        f"Conversation number {index}",
        [
            image_message(f"m{index}-1", pointer, f"What is in picture {index}?", start),
            text_message(
                f"m{index}-2",
                "assistant",
                f"Picture {index} shows a harbor.\nThe quick brown fox jumps over boat {index}.",
                start + 60,
            ),
        ],
    )
    return graph, pointer, file_name


def chat_html(conversations: list[dict[str, Any]], assets: dict[str, Any]) -> str:
    return (
        "<html><head><script>\n"
        f"var jsonData = {json.dumps(conversations)};\n"
        f"var assetsJson = {json.dumps(assets)};\n"
        "</script></head><body></body></html>"
    )


def write_zip(path: Path, entries: dict[str, bytes | str]) -> Path:
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in entries.items():
            zf.writestr(name, data)
    return path


def build_export(path: Path, count: int = 10, with_user: bool = True) -> Path:
    """A chat.html export with ``count`` conversations, each owning one image."""
    conversations = []
    assets: dict[str, Any] = {}
    entries: dict[str, bytes | str] = {}
    for index in range(count):
        graph, pointer, file_name = sample_conversation(index)
        conversations.append(graph)
        assets[pointer] = file_name
        entries[file_name] = b"\x89PNG fake image " + str(index).encode()
    entries["chat.html"] = chat_html(conversations, assets)
    if with_user:
        entries["user.json"] = json.dumps({"id": "user-abc123", "email": "someone@example.com"})
        entries["user-abc123/file_gen01-sunset.png"] = b"\x89PNG generated"
    return write_zip(path, entries)


def make_payload(conversation_id: str, last_message_time: int, nodes: int = 3, order: int = 0, assets=()):
    """A ready-to-write payload with one "hello world" line."""
    conversation = Conversation(
        id=conversation_id,
        title=f"Title {conversation_id}",
        last_message_time=last_message_time,
        assets_map={f"ptr-{key}": key for key in assets} or None,
        messages=[Message(id="m1", role="user", blocks=[MarkdownBlock(text="hello world")])],
    )
    return ConversationPayload(
        summary=ConversationSummary(
            id=conversation_id,
            title=conversation.title,
            last_message_time=last_message_time,
            mapping_node_count=nodes,
        ),
        conversation=conversation,
        search_lines=[
            SearchLine(
                loc=SearchLocation(conversation_id=conversation_id, message_id="m1", block_index=0, line_no=0),
                text="hello world",
            )
        ],
        grams=sorted(set(build_trigrams("hello world"))),
        asset_keys=list(assets),
        mapping_node_count=nodes,
        import_order=order,
    )
