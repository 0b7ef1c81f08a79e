"""Peer-side configuration constants, overridable through CODEBEAM_* variables."""

import os

# --- Rendezvous ---
SERVER_URL = os.getenv("CODEBEAM_SERVER_URL", "http://localhost:8000")
API_PREFIX = os.getenv("CODEBEAM_API_PREFIX", "/api/p2p")
HTTP_TIMEOUT = float(os.getenv("CODEBEAM_HTTP_TIMEOUT", "10"))
POLL_INTERVAL = float(os.getenv("CODEBEAM_POLL_INTERVAL", "2.0"))  # seconds

# --- WebRTC ---
ICE_SERVERS = [
    url.strip()
    for url in os.getenv("CODEBEAM_ICE_SERVERS", "stun:stun.l.google.com:19302").split(",")
    if url.strip()
]
DATA_CHANNEL_LABEL = "file-transfer"

# --- Transfer ---
# 64 KB keeps per-message overhead low; smaller chunks would react to
# backpressure and report progress more often.
CHUNK_SIZE = int(os.getenv("CODEBEAM_CHUNK_SIZE", str(64 * 1024)))
BUFFERED_AMOUNT_LOW_THRESHOLD = int(os.getenv("CODEBEAM_BUFFERED_AMOUNT_LOW_THRESHOLD", "65535"))
ACK_FRAME = "ACK"
