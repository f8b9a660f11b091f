"""Central configuration for paths, endpoints and constants."""

import os
from pathlib import Path

# Data directory, override with HATZCHAT_DATA_DIR env var
DATA_DIR = Path(os.environ.get("HATZCHAT_DATA_DIR", str(Path.home() / ".hatzchat")))

# Local state files, relative to the data directory
CHATS_FILENAME = "chats.json"
SETTINGS_FILENAME = "settings.json"

# Remote API
API_BASE_URL = os.environ.get("HATZCHAT_API_BASE_URL", "https://ai.hatz.ai/v1").rstrip("/")
# Absolute on purpose: "files/" relative to the versioned base would drop "/v1"
FILES_URL = f"{API_BASE_URL}/files/"
API_KEY_HEADER = "X-API-KEY"

CONNECT_TIMEOUT_SECONDS = 10.0
WRITE_TIMEOUT_SECONDS = 10.0

# Credential storage
KEYRING_SERVICE = "HatzChat"
KEYRING_ACCOUNT = "HATZ_API_KEY"

# Conversations
DEFAULT_MODEL = "gpt-4o"
DEFAULT_TITLE = "New Chat"
TITLE_MAX_CHARS = 48

# Streaming
FLUSH_INTERVAL_SECONDS = 0.08

SYSTEM_PROMPT = """You are a helpful assistant.
Format ALL responses as clean Markdown:
- Use headings and bullet lists.
- Include blank lines between sections.
- Use tables when helpful.
Do not include debug/tool logs in the response."""
