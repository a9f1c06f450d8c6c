"""Per-line search records and trigram postings for slim conversations."""

from __future__ import annotations

import re
from typing import Iterable

from .config import FALLBACK_TITLE, GRAM_SIZE, SEARCH_CONTEXT_LINES, SEARCH_RESULT_LIMIT
from .models import (
    CodeBlock,
    Conversation,
    ConversationPayload,
    HitSnippet,
    MarkdownBlock,
    Message,
    SearchBundle,
    SearchHit,
    SearchLine,
    SearchLocation,
    SummaryRef,
    TranscriptBlock,
)
from .text import build_trigrams, is_structured_json_text, lines_from_text, normalize_search_text


def should_index_message(message: Message) -> bool:
    if message.role == "user":
        return True
    if message.role == "assistant":
        return not message.recipient or message.recipient == "all"
    return False


def build_search_data(conversation: Conversation) -> tuple[list[SearchLine], list[str]]:
    """Return the conversation's search lines and its deduplicated gram set."""
    lines: list[SearchLine] = []
    gram_source: list[str] = []

    for message in conversation.messages:
        if not should_index_message(message):
            continue
        for block_index, block in enumerate(message.blocks):
            if not isinstance(block, (MarkdownBlock, CodeBlock, TranscriptBlock)):
                continue
            if isinstance(block, MarkdownBlock) and is_structured_json_text(block.text):
                continue
            for line_no, line in enumerate(lines_from_text(block.text)):
                lines.append(
                    SearchLine(
                        loc=SearchLocation(
                            conversation_id=conversation.id,
                            message_id=message.id,
                            block_index=block_index,
                            line_no=line_no,
                        ),
                        text=line,
                    )
                )
            gram_source.append(block.text)

    grams = sorted(set(build_trigrams("\n".join(gram_source))))
    return lines, grams


def build_search_bundle(payloads: Iterable[ConversationPayload]) -> SearchBundle:
    """Fold per-conversation search data into the dataset-level bundle."""
    bundle = SearchBundle()
    postings: dict[str, set[str]] = {}
    for payload in payloads:
        conversation_id = payload.conversation.id
        bundle.lines_by_conversation[conversation_id] = payload.search_lines
        bundle.summary_map[conversation_id] = SummaryRef(
            title=payload.summary.title,
            last_message_time=payload.summary.last_message_time,
        )
        for gram in payload.grams:
            postings.setdefault(gram, set()).add(conversation_id)
    bundle.grams = {gram: sorted(ids) for gram, ids in sorted(postings.items())}
    return bundle


def grams_by_conversation(grams: dict[str, list[str]]) -> dict[str, list[str]]:
    """Invert gram postings back into per-conversation gram lists."""
    membership: dict[str, set[str]] = {}
    for gram, ids in grams.items():
        for conversation_id in ids:
            membership.setdefault(conversation_id, set()).add(gram)
    return {conversation_id: sorted(members) for conversation_id, members in membership.items()}


def _block_key(loc: SearchLocation) -> tuple[str, str, int]:
    return loc.conversation_id, loc.message_id, loc.block_index


class SearchIndex:
    """In-memory trigram index over a loaded :class:`SearchBundle`."""

    def __init__(self, bundle: SearchBundle):
        self.bundle = bundle
        self.postings: dict[str, set[str]] = {gram: set(ids) for gram, ids in bundle.grams.items()}
        self.lines: dict[str, list[SearchLine]] = {}
        self.blocks: dict[tuple[str, str, int], list[SearchLine]] = {}
        for conversation_id, lines in bundle.lines_by_conversation.items():
            self.lines[conversation_id] = list(lines)
            for line in lines:
                self.blocks.setdefault(_block_key(line.loc), []).append(line)
        for block in self.blocks.values():
            block.sort(key=lambda line: line.loc.line_no)

    def candidates(self, query: str) -> set[str]:
        """Conversation ids containing every trigram of the query."""
        normalized = normalize_search_text(query)
        if len(normalized) < GRAM_SIZE:
            return set()
        posting_sets = []
        for gram in set(build_trigrams(normalized)):
            ids = self.postings.get(gram)
            if not ids:
                return set()
            posting_sets.append(ids)
        posting_sets.sort(key=len)
        result = set(posting_sets[0])
        for ids in posting_sets[1:]:
            result &= ids
            if not result:
                break
        return result

    def _ordered(self, ids: set[str]) -> list[str]:
        def key(conversation_id: str):
            ref = self.bundle.summary_map.get(conversation_id)
            return (-(ref.last_message_time if ref else 0), conversation_id)

        return sorted(ids, key=key)

    def search(self, query: str, limit: int = SEARCH_RESULT_LIMIT) -> list[SearchHit]:
        needle = query.strip()
        candidate_ids = self.candidates(needle)
        if not candidate_ids or limit <= 0:
            return []
        pattern = re.compile(re.escape(needle), re.IGNORECASE)
        hits: list[SearchHit] = []
        for conversation_id in self._ordered(candidate_ids):
            ref = self.bundle.summary_map.get(conversation_id)
            for line in self.lines.get(conversation_id, []):
                found = pattern.search(line.text)
                if found is None:
                    continue
                hits.append(
                    SearchHit(
                        conversation_id=conversation_id,
                        conversation_title=ref.title if ref else FALLBACK_TITLE,
                        conversation_time=ref.last_message_time if ref else None,
                        message_id=line.loc.message_id,
                        block_index=line.loc.block_index,
                        line_no=line.loc.line_no,
                        snippet=self._snippet(line, found.start(), found.end()),
                    )
                )
                if len(hits) >= limit:
                    return hits
        return hits

    def _snippet(self, line: SearchLine, start: int, end: int) -> HitSnippet:
        block = self.blocks.get(_block_key(line.loc), [line])
        index = next((i for i, entry in enumerate(block) if entry.loc.line_no == line.loc.line_no), 0)
        before_lines = block[max(0, index - SEARCH_CONTEXT_LINES) : index]
        after_lines = block[index + 1 : index + 1 + SEARCH_CONTEXT_LINES]
        return HitSnippet(
            before=line.text[:start],
            match=line.text[start:end],
            after=line.text[end:],
            context_before=[entry.text for entry in before_lines],
            context_after=[entry.text for entry in after_lines],
        )
