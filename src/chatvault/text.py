"""Text normalization shared by conversion and search."""

from __future__ import annotations

import json
import re
import unicodedata
from typing import Any

from .config import GRAM_SIZE

_WHITESPACE_RE = re.compile(r"\s+")
_LINE_SPLIT_RE = re.compile(r"\r?\n")
# Private-use citation markers such as U+E200 cite ... U+E201
_CITATION_RE = re.compile("\ue200[^\ue201]*\ue201")
_PRIVATE_USE_RE = re.compile("[\ue200-\ue2ff]")
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def normalize_search_text(text: str) -> str:
    """NFKC-fold, lowercase and collapse whitespace."""
    folded = unicodedata.normalize("NFKC", text).lower()
    return _WHITESPACE_RE.sub(" ", folded).strip()


def build_trigrams(text: str) -> list[str]:
    """Every overlapping gram of the normalized text, in order, with repeats."""
    normalized = normalize_search_text(text)
    if len(normalized) < GRAM_SIZE:
        return []
    return [normalized[i : i + GRAM_SIZE] for i in range(len(normalized) - GRAM_SIZE + 1)]


def lines_from_text(text: str) -> list[str]:
    return _LINE_SPLIT_RE.split(text)


def sanitize_rendered_markdown(text: str) -> str:
    """Strip exporter citation artifacts and squeeze blank-line runs."""
    cleaned = _CITATION_RE.sub("", text)
    cleaned = _PRIVATE_USE_RE.sub("", cleaned)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def try_parse_json_text(text: str) -> Any | None:
    """Parse text that looks like a JSON object/array; None otherwise."""
    trimmed = text.strip()
    if not trimmed:
        return None
    if trimmed[0] not in "{[" or trimmed[-1] not in "}]":
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


def is_structured_json_text(text: str) -> bool:
    return try_parse_json_text(text) is not None
