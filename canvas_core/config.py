"""Configuration constants for infinite-canvas.

Values can be overridden through environment variables so the server and
CLI can be pointed elsewhere without code changes.
"""

import os
from pathlib import Path


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


# Server binding (used by `canvas serve` and `python -m canvas_server.main`)
HOST: str = os.environ.get("INFINITE_CANVAS_HOST", "127.0.0.1")
PORT: int = _env_int("INFINITE_CANVAS_PORT", 8765)

CORS_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.environ.get(
        "INFINITE_CANVAS_CORS_ORIGINS",
        "http://localhost:5173,http://localhost:3000,http://127.0.0.1:5173",
    ).split(",")
    if origin.strip()
]

# Autosave location and capacity (bytes). Larger payloads raise StorageExhausted.
AUTOSAVE_PATH: Path = Path(
    os.environ.get("INFINITE_CANVAS_AUTOSAVE", "~/.local/share/infinite-canvas/autosave.json")
).expanduser()
AUTOSAVE_LIMIT: int = _env_int("INFINITE_CANVAS_AUTOSAVE_LIMIT", 4 * 1024 * 1024)
AUTOSAVE_MAX_AGE_DAYS: int = 7

# Undo depth. 0 keeps the full history.
HISTORY_LIMIT: int = _env_int("INFINITE_CANVAS_HISTORY_LIMIT", 0)

# Collaboration
MAX_PARTICIPANTS: int = 2
PRESENCE_TIMEOUT_SECONDS: int = 5 * 60
