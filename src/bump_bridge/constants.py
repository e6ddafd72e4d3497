"""Constants and environment-driven settings for the bump bridge."""

import os
from pathlib import Path
from typing import Optional


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


# Application directories
BUMP_DIR = Path(os.environ.get("BUMP_HOME", str(Path.home() / ".bump")))
TERMINALS_DIR = BUMP_DIR / "terminals"
LOG_DIR = BUMP_DIR / "logs"
LOG_FILE_NAME = "bump-bridge.log"

# Server settings
SERVER_HOST = os.environ.get("BUMP_HOST", "127.0.0.1")
SERVER_PORT = _env_int("BUMP_PORT", 9890)
SERVER_VERSION = "0.1.0"
API_BASE_URL = f"http://{SERVER_HOST}:{SERVER_PORT}"
CORS_ORIGINS = ["http://localhost:5173", "http://127.0.0.1:5173"]

# Terminal settings
TERMINAL_ID_PREFIX = "term"
TERMINAL_BUFFER_BYTES = _env_int("BUMP_TERMINAL_BUFFER_BYTES", 1024 * 1024)
KEEP_TERMINAL_LOGS = _env_flag("BUMP_KEEP_TERMINAL_LOGS")
DEFAULT_COLS = 80
DEFAULT_ROWS = 24
PTY_READ_SIZE = 65536
PROCESS_KILL_TIMEOUT = 2.0

# Agent settings
AGENT_BINARY_NAME = "cursor-agent"
AGENT_PATH_ENV = "AGENT_CLI_PATH"
AGENT_ARGS = os.environ.get("BUMP_AGENT_ARGS", "acp").split()
AGENT_LOOKUP_TIMEOUT = 10.0
AUTH_CHECK_TIMEOUT = 5.0
ACP_PROTOCOL_VERSION = 1
HANDSHAKE_TIMEOUT = _env_float("BUMP_HANDSHAKE_TIMEOUT", 30.0)
# How long the next prompt waits for the agent to answer a cancelled one
CANCEL_SETTLE_TIMEOUT = _env_float("BUMP_CANCEL_SETTLE_TIMEOUT", 10.0)

# Context injection bound per terminal snapshot, None means the full buffer
CONTEXT_MAX_BYTES = _env_int("BUMP_CONTEXT_MAX_BYTES", None)

# Permission policy
PERMISSION_TIMEOUT = _env_float("BUMP_PERMISSION_TIMEOUT", None)
PERMISSION_MODE = os.environ.get("BUMP_PERMISSION_MODE", "ask")

# Event bus
EVENT_QUEUE_SIZE = 1000
