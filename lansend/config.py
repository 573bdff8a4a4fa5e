"""Application-wide configuration constants."""

import os
import platform
from pathlib import Path

from pydantic import BaseModel


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _device_model() -> str:
    system = platform.system()
    return {"Darwin": "macOS"}.get(system, system or "Unknown")


# --- Identity ---
APP_NAME = "lansend"
DEVICE_ALIAS = os.environ.get("LOCALSEND_ALIAS") or platform.node() or "Desktop CLI"
DEVICE_MODEL = _device_model()
CONFIG_DIR = Path(
    os.environ.get("LOCALSEND_CONFIG_DIR", Path.home() / ".config" / APP_NAME)
)

# --- Protocol ---
PROTOCOL_VERSION = "2.0"
FALLBACK_PROTOCOL_VERSION = "1.0"
API_PREFIX = "/api/localsend/v2"
PREPARE_UPLOAD_PATH = f"{API_PREFIX}/prepare-upload"
UPLOAD_PATH = f"{API_PREFIX}/upload"
CANCEL_PATH = f"{API_PREFIX}/cancel"
INFO_PATH = f"{API_PREFIX}/info"

# --- Networking ---
MULTICAST_GROUP = os.environ.get("LOCALSEND_MULTIADDR", "224.0.0.167")
MULTICAST_PORT = int(os.environ.get("LOCALSEND_PORT", 53317))
HTTP_PORT = int(os.environ.get("LOCALSEND_HTTP_PORT", MULTICAST_PORT + 1))
API_HOST = "0.0.0.0"
HTTPS = _env_bool("LOCALSEND_HTTPS")

# --- Discovery ---
ANNOUNCE_BURST = (0.1, 0.5, 2.0)  # seconds between the first announcements
ANNOUNCE_INTERVAL = 5  # seconds
PEER_TIMEOUT = 10  # seconds before a peer is considered stale
PEER_EVICT_AFTER = PEER_TIMEOUT * 3

# --- Transfer ---
CHUNK_SIZE = 64 * 1024
MAX_CONCURRENT_UPLOADS = 4
PROGRESS_BUFFER = 256
CONNECT_TIMEOUT = 5.0
TEXT_PREVIEW_LIMIT = 1024

# --- Receiving ---
DECISION_TIMEOUT = 60.0
SESSION_TIMEOUT = 300.0  # inactivity
GC_INTERVAL = 30.0
DEFAULT_SAVE_DIR = os.environ.get(
    "LOCALSEND_DESTINATION", str(Path.home() / "Downloads")
)
QUICK_SAVE = _env_bool("LOCALSEND_QUICK_SAVE")

# --- Logging ---
LOG_LEVEL = os.environ.get("LOCALSEND_LOG_LEVEL", "INFO").upper()
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class Settings(BaseModel):
    """Receiver policy handed to the server at startup."""
    destination: Path = Path(DEFAULT_SAVE_DIR)
    quick_save: bool = QUICK_SAVE
    overwrite: bool = False
    https: bool = HTTPS
    port: int = HTTP_PORT
