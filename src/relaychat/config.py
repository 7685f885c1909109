"""Central configuration for paths and constants."""

import os
from pathlib import Path

# Data directory: override with RELAYCHAT_DATA_DIR env var
DATA_DIR = Path(
    os.environ.get("RELAYCHAT_DATA_DIR", str(Path.home() / ".relaychat"))
)

# Database path
SQLITE_PATH = DATA_DIR / "conversations.db"

# Inference backend (Ollama-compatible)
OLLAMA_URL = os.environ.get("RELAYCHAT_OLLAMA_URL", "http://localhost:11434").rstrip("/")

# HTTP server
HOST = os.environ.get("RELAYCHAT_HOST", "127.0.0.1")
PORT = int(os.environ.get("RELAYCHAT_PORT", "3000"))
SERVER_URL = os.environ.get("RELAYCHAT_SERVER_URL", f"http://{HOST}:{PORT}").rstrip("/")

# Chat defaults exposed to clients via /api/config
DEFAULT_MODEL = os.environ.get("RELAYCHAT_DEFAULT_MODEL", "")
DEFAULT_SYSTEM_PROMPT = os.environ.get("RELAYCHAT_SYSTEM_PROMPT", "")
MAX_MESSAGES_IN_CONTEXT = int(os.environ.get("RELAYCHAT_MAX_MESSAGES", "0"))  # 0 = unbounded

# Streaming persistence
SAVE_DEBOUNCE_SECONDS = 0.9
STOP_MARKER = "_Stopped_"

# History listing
TITLE_MAX_CHARS = 60
DEFAULT_TITLE = "Chat"
