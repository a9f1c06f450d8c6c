"""Data models for slim conversations, search records and import results."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field

Role = Literal["user", "assistant", "system", "tool"]
MediaType = Literal["image", "audio", "video", "file"]
ImportMode = Literal["upsert", "replace", "clone"]
ProgressPhase = Literal["archive-start", "archive-conversations", "archive-assets", "archive-complete"]


# --- content blocks ---------------------------------------------------------


class MarkdownBlock(BaseModel):
    type: Literal["markdown"] = "markdown"
    text: str


class CodeBlock(BaseModel):
    type: Literal["code"] = "code"
    lang: str = "text"
    text: str


class AssetBlock(BaseModel):
    type: Literal["asset"] = "asset"
    asset_pointer: str
    media_type: MediaType = "file"
    alt: str | None = None


class TranscriptBlock(BaseModel):
    type: Literal["transcript"] = "transcript"
    text: str


ContentBlock = Annotated[
    Union[MarkdownBlock, CodeBlock, AssetBlock, TranscriptBlock],
    Field(discriminator="type"),
]


# --- slim conversation ------------------------------------------------------


class SearchDetails(BaseModel):
    kind: str | None = None
    content: str | None = None
    queries: list[str] = []
    sources: list[str] | None = None


class Details(BaseModel):
    """Side-channel data that is never rendered or indexed as body text."""

    thinking: str | None = None
    search: SearchDetails | None = None
    data: dict[str, Any] | None = None


class Variant(BaseModel):
    id: str
    time: int | None = None
    blocks: list[ContentBlock] = []
    details: Details | None = None


class Message(BaseModel):
    id: str
    role: Role
    time: int | None = None
    recipient: str | None = None
    blocks: list[ContentBlock] = []
    details: Details | None = None
    variants: list[Variant] | None = None


class Conversation(BaseModel):
    schema_version: int = 1
    id: str
    title: str
    create_time: int | None = None
    update_time: int | None = None
    last_message_time: int
    assets_map: dict[str, str] | None = None
    messages: list[Message] = []


class ConversationSummary(BaseModel):
    id: str
    title: str
    snippet: str = ""
    last_message_time: int
    create_time: int | None = None
    update_time: int | None = None
    mapping_node_count: int = 0
    source: str = "import"
    saved_at: int | None = None


# --- search -----------------------------------------------------------------


class SearchLocation(BaseModel):
    conversation_id: str
    message_id: str
    block_index: int
    line_no: int


class SearchLine(BaseModel):
    loc: SearchLocation
    text: str


class SummaryRef(BaseModel):
    title: str
    last_message_time: int


class SearchBundle(BaseModel):
    grams: dict[str, list[str]] = {}
    lines_by_conversation: dict[str, list[SearchLine]] = {}
    summary_map: dict[str, SummaryRef] = {}


class HitSnippet(BaseModel):
    before: str
    match: str
    after: str
    context_before: list[str] = []
    context_after: list[str] = []


class SearchHit(BaseModel):
    conversation_id: str
    conversation_title: str
    conversation_time: int | None = None
    message_id: str
    block_index: int
    line_no: int
    snippet: HitSnippet


# --- import pipeline --------------------------------------------------------


class ConversationPayload(BaseModel):
    """Everything written for one conversation, as a single unit."""

    summary: ConversationSummary
    conversation: Conversation
    search_lines: list[SearchLine] = []
    grams: list[str] = []
    asset_keys: list[str] = []
    mapping_node_count: int = 0
    import_order: int = 0


class GeneratedAsset(BaseModel):
    path: str
    file_name: str
    size: int | None = None
    mime: str | None = None
    pointers: list[str] | None = None


class ExtraData(BaseModel):
    user: Any = None
    message_feedback: Any = None
    group_chats: Any = None
    shopping: Any = None
    basis_points: Any = None
    sora: Any = None
    generated_assets: list[GeneratedAsset] | None = None


class ImportProgress(BaseModel):
    phase: ProgressPhase
    archive_index: int
    archives_total: int
    archive_name: str
    conversations_processed: int = 0
    conversations_total: int = 0
    assets_processed: int = 0


class ImportBundle(BaseModel):
    conversations: list[ConversationPayload] = []
    assets: dict[str, bytes] = {}
    asset_mime: dict[str, str] = {}
    extras: ExtraData = Field(default_factory=ExtraData)
    archives_total: int = 0
    archives_skipped: int = 0


class ImportResult(BaseModel):
    mode: ImportMode
    conversations: int = 0
    assets: int = 0
    conversations_written: int = 0
    assets_written: int = 0
    archives_processed: int = 0
    archives_skipped: int = 0
    complete: bool = True
