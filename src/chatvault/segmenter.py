"""Split raw message content into typed blocks and side-channel details."""

from __future__ import annotations

import copy
import enum
import logging
import re
from typing import Any

from .models import AssetBlock, CodeBlock, ContentBlock, Details, MarkdownBlock, SearchDetails, TranscriptBlock
from .paths import AssetResolver, detect_media_type
from .text import lines_from_text, sanitize_rendered_markdown, try_parse_json_text

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(.*)$")

ASSET_CONTENT_TYPES = {
    "image_asset_pointer",
    "asset_pointer",
    "image_file",
    "file",
    "audio_asset_pointer",
    "video_container_asset_pointer",
    "real_time_user_audio_video_asset_pointer",
}
THOUGHT_CONTENT_TYPES = {"thought", "thoughts"}
NO_BODY_CONTENT_TYPES = {"thoughts", "reasoning_recap"}
SEARCH_RECIPIENTS = {"web", "web.search", "browser", "web.run"}


class PartKind(enum.Enum):
    """Closed set of raw content part shapes."""

    TEXT = "text"  # bare string
    MULTIMODAL = "multimodal"  # multimodal_text with nested parts
    CODE = "code"
    ASSET = "asset"
    TRANSCRIPT = "transcript"
    THOUGHT = "thought"
    NESTED = "nested"  # unknown type that still carries parts
    STRUCTURED_TEXT = "structured_text"  # dict with text / tts.text
    UNKNOWN = "unknown"


def classify_part(part: Any) -> PartKind:
    if isinstance(part, str):
        return PartKind.TEXT
    if not isinstance(part, dict):
        return PartKind.UNKNOWN
    content_type = part.get("content_type")
    nested = part.get("parts")
    if content_type == "multimodal_text" and isinstance(nested, list):
        return PartKind.MULTIMODAL
    if content_type == "code":
        return PartKind.CODE
    if content_type in ASSET_CONTENT_TYPES or (content_type is None and isinstance(part.get("asset_pointer"), str)):
        return PartKind.ASSET
    if content_type in THOUGHT_CONTENT_TYPES:
        return PartKind.THOUGHT
    if content_type in ("transcript", "audio_transcription") or isinstance(part.get("transcript"), str):
        return PartKind.TRANSCRIPT
    if isinstance(nested, list) and nested:
        return PartKind.NESTED
    if isinstance(part.get("text"), str) or isinstance((part.get("tts") or {}).get("text"), str):
        return PartKind.STRUCTURED_TEXT
    return PartKind.UNKNOWN


def split_markdown_into_blocks(text: str) -> list[ContentBlock]:
    """Split text on ``` fences into markdown and code blocks."""
    sanitized = sanitize_rendered_markdown(text)
    if not sanitized:
        return []
    blocks: list[ContentBlock] = []
    buffer: list[str] = []
    fence_buffer: list[str] = []
    fence_lang = ""
    in_fence = False
    for line in lines_from_text(sanitized):
        match = _FENCE_RE.match(line)
        if match:
            if in_fence:
                blocks.append(CodeBlock(lang=fence_lang or "text", text="\n".join(fence_buffer)))
                fence_buffer = []
                fence_lang = ""
                in_fence = False
            else:
                if buffer:
                    blocks.append(MarkdownBlock(text="\n".join(buffer)))
                    buffer = []
                in_fence = True
                fence_lang = match.group(1).strip()
            continue
        if in_fence:
            fence_buffer.append(line)
        else:
            buffer.append(line)
    # unterminated fence keeps its code
    if in_fence and fence_buffer:
        blocks.append(CodeBlock(lang=fence_lang or "text", text="\n".join(fence_buffer)))
    if buffer:
        blocks.append(MarkdownBlock(text="\n".join(buffer)))
    if not blocks:
        blocks.append(MarkdownBlock(text=sanitized))
    return blocks


def convert_content(content: Any, resolver: AssetResolver, assets_map: dict[str, str]) -> list[ContentBlock]:
    """Convert a message ``content`` record into blocks.

    Resolved asset pointers are recorded in ``assets_map``.
    """
    if not isinstance(content, dict):
        return []
    content_type = content.get("content_type")
    if content_type in NO_BODY_CONTENT_TYPES:
        return []
    parts = content.get("parts")
    if isinstance(parts, list):
        blocks: list[ContentBlock] = []
        for part in parts:
            blocks.extend(convert_part(part, resolver, assets_map))
        return blocks
    if content_type == "code" and isinstance(content.get("text"), str):
        return _code_block(content)
    text = content.get("text")
    if isinstance(text, str) and text:
        return split_markdown_into_blocks(text)
    transcript = content.get("transcript")
    if isinstance(transcript, str) and transcript:
        return split_markdown_into_blocks(transcript)
    return []


def convert_part(part: Any, resolver: AssetResolver, assets_map: dict[str, str]) -> list[ContentBlock]:
    kind = classify_part(part)
    if kind is PartKind.TEXT:
        return split_markdown_into_blocks(part) if part.strip() else []
    if kind in (PartKind.MULTIMODAL, PartKind.NESTED):
        blocks: list[ContentBlock] = []
        for inner in part["parts"]:
            blocks.extend(convert_part(inner, resolver, assets_map))
        return blocks
    if kind is PartKind.CODE:
        return _code_block(part)
    if kind is PartKind.ASSET:
        return _asset_block(part, resolver, assets_map)
    if kind is PartKind.TRANSCRIPT:
        transcript = part.get("transcript")
        if not isinstance(transcript, str):
            transcript = part.get("text") if isinstance(part.get("text"), str) else ""
        return [TranscriptBlock(text=transcript)]
    if kind is PartKind.STRUCTURED_TEXT:
        text = part.get("text")
        if not isinstance(text, str):
            text = (part.get("tts") or {}).get("text", "")
        return split_markdown_into_blocks(text) if text else []
    # THOUGHT parts go to details; UNKNOWN parts carry nothing renderable
    return []


def _code_block(record: dict[str, Any]) -> list[ContentBlock]:
    lang = record.get("language")
    text = record.get("text")
    if not isinstance(text, str):
        text = record.get("code") if isinstance(record.get("code"), str) else ""
    return [CodeBlock(lang=lang if isinstance(lang, str) and lang else "text", text=text)]


def _asset_block(part: dict[str, Any], resolver: AssetResolver, assets_map: dict[str, str]) -> list[ContentBlock]:
    pointer = part.get("asset_pointer")
    if not isinstance(pointer, str) or not pointer:
        return []
    asset_key = resolver.resolve(pointer)
    if not asset_key:
        logger.warning("Dropping unresolved asset pointer %s", pointer)
        return []
    assets_map[pointer] = asset_key
    metadata = part.get("metadata")
    alt = metadata.get("name") if isinstance(metadata, dict) else None
    return [
        AssetBlock(
            asset_pointer=pointer,
            media_type=detect_media_type(asset_key),
            alt=alt if isinstance(alt, str) else None,
        )
    ]


# --- details side channel ---------------------------------------------------


def build_details(message: dict[str, Any] | None) -> Details | None:
    if not isinstance(message, dict):
        return None
    details = Details()
    details.thinking = extract_thinking(message.get("content"))
    metadata = message.get("metadata")
    metadata = metadata if isinstance(metadata, dict) else None
    details.search = extract_search_details(metadata) or _search_details_from_payload(message)
    if metadata:
        details.data = copy.deepcopy(metadata)
    if details.thinking is None and details.search is None and details.data is None:
        return None
    return details


def extract_thinking(content: Any) -> str | None:
    if not isinstance(content, dict):
        return None
    segments: list[str] = []
    thoughts = content.get("thoughts")
    if content.get("content_type") == "thoughts" and isinstance(thoughts, list):
        for thought in thoughts:
            if not isinstance(thought, dict):
                continue
            candidate = thought.get("content")
            if not isinstance(candidate, str):
                candidate = thought.get("summary")
            if isinstance(candidate, str) and candidate.strip():
                segments.append(candidate.strip())
    parts = content.get("parts")
    if isinstance(parts, list) and not segments:
        _collect_thinking_from_parts(parts, segments)
    return "\n\n".join(segments) if segments else None


def _collect_thinking_from_parts(parts: list[Any], bucket: list[str]) -> None:
    for part in parts:
        if not isinstance(part, dict):
            continue
        if classify_part(part) is PartKind.THOUGHT:
            text = part.get("text")
            if not isinstance(text, str):
                meta = part.get("metadata")
                text = meta.get("summary") if isinstance(meta, dict) else None
            if isinstance(text, str) and text.strip():
                bucket.append(text.strip())
        nested = part.get("parts")
        if isinstance(nested, list):
            _collect_thinking_from_parts(nested, bucket)


def extract_search_details(metadata: dict[str, Any] | None) -> SearchDetails | None:
    if not metadata:
        return None
    queries: list[str] = []
    raw_queries = metadata.get("search_queries")
    if isinstance(raw_queries, list):
        for entry in raw_queries:
            q = entry.get("q") if isinstance(entry, dict) else None
            if isinstance(q, str) and q.strip():
                queries.append(q.strip())

    domains: list[str] = []
    groups = metadata.get("search_result_groups")
    if isinstance(groups, list):
        for group in groups:
            domain = group.get("domain") if isinstance(group, dict) else None
            if isinstance(domain, str) and domain and domain not in domains:
                domains.append(domain)
    sources = metadata.get("retrieval_search_sources")
    if isinstance(sources, list):
        for source in sources:
            if not isinstance(source, dict):
                continue
            label = source.get("display_name") or source.get("id")
            if isinstance(label, str) and label and label not in domains:
                domains.append(label)

    kind = metadata.get("search_display_string")
    if not isinstance(kind, str) or not kind:
        kind = "deep-research" if isinstance(metadata.get("deep_research_version"), str) else None

    if not queries and not domains and not kind:
        return None
    return SearchDetails(
        kind=kind,
        content=_format_search_sections(queries, domains),
        queries=queries,
        sources=domains or None,
    )


def _format_search_sections(queries: list[str], domains: list[str]) -> str | None:
    sections = []
    if queries:
        sections.append("\n".join(["Queries:", *(f"• {q}" for q in queries)]))
    if domains:
        sections.append("\n".join(["Sources:", *(f"• {d}" for d in domains)]))
    return "\n\n".join(sections) if sections else None


def parse_search_payload(text: str) -> list[str] | None:
    """Pull query strings out of a JSON search-tool payload embedded in text.

    Accepts ``{"search_query": [...]}``, ``{"queries": [...]}`` or a bare list,
    and also a payload whose outer braces were dropped by the exporter.
    Anything malformed yields None.
    """
    trimmed = text.strip()
    if not trimmed:
        return None
    candidates = [trimmed]
    if '"search_query"' in trimmed:
        wrapped = trimmed if trimmed.startswith("{") else "{" + trimmed
        if not wrapped.endswith("}"):
            wrapped += "}"
        if wrapped != trimmed:
            candidates.append(wrapped)
    for candidate in candidates:
        payload = try_parse_json_text(candidate)
        entries = None
        if isinstance(payload, list):
            entries = payload
        elif isinstance(payload, dict):
            for key in ("search_query", "queries"):
                if isinstance(payload.get(key), list):
                    entries = payload[key]
                    break
        if not entries:
            continue
        queries = []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            raw = entry.get("q") or entry.get("query") or entry.get("search") or entry.get("prompt") or entry.get("text")
            if raw:
                queries.append(str(raw))
        if queries:
            return queries
    return None


def _search_details_from_payload(message: dict[str, Any]) -> SearchDetails | None:
    recipient = message.get("recipient")
    if recipient not in SEARCH_RECIPIENTS:
        return None
    content = message.get("content")
    if not isinstance(content, dict):
        return None
    text = content.get("text")
    if not isinstance(text, str):
        parts = content.get("parts")
        text = "\n".join(p for p in parts if isinstance(p, str)) if isinstance(parts, list) else ""
    queries = parse_search_payload(text)
    if not queries:
        return None
    return SearchDetails(content=_format_search_sections(queries, []), queries=queries)
