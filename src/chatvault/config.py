"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory, override with CHATVAULT_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("CHATVAULT_DATA_DIR", str(Path.home() / ".chatvault"))
)

# Default persistence locations
SQLITE_PATH = DATA_DIR / "chatvault.db"
DATASET_DIR = DATA_DIR / "dataset"

# Batch import defaults
DEFAULT_GLOB = "./*.zip"
DEFAULT_MODE = "upsert"
IMPORT_MODES = ("upsert", "replace", "clone")
STORE_KINDS = ("directory", "sqlite")

# Conversion
SNIPPET_MAX_CHARS = 120
FALLBACK_TITLE = "Conversation"
TIMESTAMP_MS_THRESHOLD = 10_000_000_000  # values above this are already milliseconds
KNOWN_ROLES = {"user", "assistant", "system", "tool"}

# Search
GRAM_SIZE = 3
SEARCH_RESULT_LIMIT = 40
SEARCH_CONTEXT_LINES = 2

# Progress cadence while converting conversations
PROGRESS_EVERY = 25

# ZIP safety limits
MAX_ZIP_MEMBERS = 200_000
MAX_ZIP_UNCOMPRESSED_BYTES = 20 * 1024 * 1024 * 1024

# Archive markers inside chat.html
CHAT_HTML_NAME = "chat.html"
CONVERSATIONS_JSON_NAME = "conversations.json"
CONVERSATIONS_MARKER = "var jsonData"
ASSETS_MARKER = "var assetsJson"

# Sidecar metadata: (ExtraData field, file name in archive and dataset)
EXTRA_FILE_ENTRIES = (
    ("user", "user.json"),
    ("message_feedback", "message_feedback.json"),
    ("group_chats", "group_chats.json"),
    ("shopping", "shopping.json"),
    ("basis_points", "basispoints.json"),
    ("sora", "sora.json"),
)
GENERATED_ASSETS_FILE = "generated_files.json"
GENERATED_ASSET_OWNER_ID = "__generated_gallery__"

# Dataset layout, shared by the directory store and dataset ZIP exports
SEARCH_INDEX_NAME = "search_index.json"
DATASET_CONVERSATIONS_DIR = "conversations"
DATASET_ASSETS_DIR = "assets"
CONVERSATION_FILE_NAME = "conversation.json"

# Dataset backend used by the MCP server and CLI defaults
STORE_KIND = os.environ.get("CHATVAULT_STORE", "directory")
