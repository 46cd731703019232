"""Application-wide configuration constants."""

import os
from pathlib import Path

# --- Identity ---
PEER_ID_LENGTH = 6  # digits in a generated peer id

# --- Networking ---
API_HOST = "0.0.0.0"
API_PORT = int(os.environ.get("PORT", 3000))

# "tcp" for the LAN transport, "memory" for a single-process loopback network
TRANSPORT = os.environ.get("WEBDROP_TRANSPORT", "tcp")
TRANSPORT_HOST = "0.0.0.0"
TRANSFER_PORT_MIN = 50000
TRANSFER_PORT_MAX = 65000

# --- Session ---
RECONNECT_DELAY = 5.0  # seconds before re-initializing after a transport error

# --- Transfer ---
CHUNK_SIZE = 65536  # 64 KB
HIGH_WATER_MARK = 1024 * 1024  # pause sending while this many bytes are buffered
BACKPRESSURE_POLL = 0.05  # seconds
PROGRESS_RESET_DELAY = 1.0  # seconds before the progress indicator drops to 0

# --- Chat relay ---
HEARTBEAT_INTERVAL = 30  # seconds

# --- Storage ---
DEFAULT_SAVE_DIR = str(
    Path.home() / "Downloads" / "WebDrop"
)
