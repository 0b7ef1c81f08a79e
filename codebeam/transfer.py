"""
Chunked file transfer over an open data channel.

Frames: one JSON text frame {"type": "metadata", "name", "size", "mimeType"},
raw binary chunks in order, and a single "ACK" text frame sent back by the
receiver once it holds the whole file. The channel is reliable and ordered,
so chunks carry no sequence numbers.
"""

import asyncio
import json
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

import aiofiles

from .config import ACK_FRAME, BUFFERED_AMOUNT_LOW_THRESHOLD, CHUNK_SIZE
from .errors import P2PError, ReadError, TransportError


logger = logging.getLogger(__name__)

# on_status(status, progress=None, error=None)
StatusCallback = Callable[..., None]
FileCallback = Callable[[bytes, "FileMetadata"], None]


@dataclass
class FileMetadata:
    name: str
    size: int
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path) -> "FileMetadata":
        try:
            size = path.stat().st_size
        except OSError as e:
            raise ReadError(f"Cannot read {path}: {e}") from e
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(path.name, size, mime_type or "application/octet-stream")

    @classmethod
    def from_frame(cls, frame: dict) -> "FileMetadata":
        size = frame.get("size")
        if not frame.get("name") or not isinstance(size, int) or size < 0:
            raise ValueError(f"Invalid metadata frame: {frame}")
        return cls(frame["name"], size, frame.get("mimeType") or "application/octet-stream")

    def to_frame(self) -> str:
        return json.dumps(
            {"type": "metadata", "name": self.name, "size": self.size, "mimeType": self.mime_type}
        )


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 100
    return done * 100 // total


class FileSender:
    """Streams one file once the channel opens and waits for the receiver's ACK."""

    def __init__(
        self,
        channel,
        path: Path,
        on_status: StatusCallback,
        chunk_size: int = CHUNK_SIZE,
        low_water: int = BUFFERED_AMOUNT_LOW_THRESHOLD,
    ) -> None:
        self.channel = channel
        self.path = Path(path)
        self.on_status = on_status
        self.chunk_size = chunk_size
        self.metadata = FileMetadata.from_path(self.path)
        self.offset = 0
        self.acknowledged = False
        self._stopped = False
        self._drained = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

        channel.bufferedAmountLowThreshold = low_water
        channel.on("open", self._on_open)
        channel.on("message", self._on_message)
        channel.on("bufferedamountlow", self._drained.set)
        channel.on("close", self._on_close)
        if channel.readyState == "open":
            self._on_open()

    @property
    def progress(self) -> int:
        # 100 is reserved for the receiver's confirmation
        return min(percent(self.offset, self.metadata.size), 99)

    def cancel(self) -> None:
        self._stopped = True
        self._drained.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _on_open(self) -> None:
        if self._task is None and not self._stopped:
            logger.info("Data channel open, sending %s (%d bytes)", self.metadata.name, self.metadata.size)
            self._task = asyncio.ensure_future(self.run())

    async def run(self) -> None:
        self.on_status("transferring", 0)
        try:
            self.channel.send(self.metadata.to_frame())
            await self._send_chunks()
        except P2PError as e:
            if not self._stopped:
                self.on_status("error", None, e)
            return
        logger.info("File sent, waiting for ACK")

    async def _send_chunks(self) -> None:
        try:
            async with aiofiles.open(self.path, "rb") as f:
                while self.offset < self.metadata.size:
                    if self.channel.bufferedAmount > self.channel.bufferedAmountLowThreshold:
                        self._drained.clear()
                        await self._drained.wait()
                    if self._stopped:
                        return
                    if self.channel.readyState != "open":
                        raise TransportError("Data channel closed during transfer")

                    chunk = await f.read(self.chunk_size)
                    if not chunk:
                        raise ReadError(
                            f"{self.path} ended at byte {self.offset} of {self.metadata.size}"
                        )
                    self.channel.send(chunk)
                    self.offset += len(chunk)
                    self.on_status("transferring", self.progress)
        except OSError as e:
            raise ReadError(f"Failed reading {self.path}: {e}") from e

    def _on_message(self, message) -> None:
        if message != ACK_FRAME:
            logger.warning("Unexpected frame from receiver ignored")
            return
        if self.acknowledged:
            return
        logger.info("Received ACK from receiver")
        self.acknowledged = True
        self.on_status("completed", 100)

    def _on_close(self) -> None:
        self._drained.set()
        if not self._stopped and not self.acknowledged:
            self.on_status("error", None, TransportError("Data channel closed before ACK"))


class FileReceiver:
    """Reassembles chunks in arrival order and acknowledges the complete file."""

    def __init__(self, channel, on_status: StatusCallback, on_file: Optional[FileCallback] = None) -> None:
        self.channel = channel
        self.on_status = on_status
        self.on_file = on_file
        self.metadata: Optional[FileMetadata] = None
        self.chunks: List[bytes] = []
        self.received_bytes = 0
        self.completed = False
        self._stopped = False

        channel.on("message", self._on_message)
        channel.on("close", self._on_close)

    def cancel(self) -> None:
        self._stopped = True
        self.chunks = []
        self.received_bytes = 0

    def _on_message(self, message) -> None:
        if self._stopped:
            return
        if isinstance(message, str):
            self._on_control(message)
        else:
            self._on_chunk(bytes(message))

    def _on_control(self, message: str) -> None:
        try:
            frame = json.loads(message)
            if not isinstance(frame, dict) or frame.get("type") != "metadata":
                raise ValueError(f"Unknown control frame: {message[:64]!r}")
            metadata = FileMetadata.from_frame(frame)
        except ValueError as e:
            logger.warning("Ignoring frame: %s", e)
            return

        logger.info("Receiving file: %s (%d bytes)", metadata.name, metadata.size)
        self.metadata = metadata
        self.chunks = []
        self.received_bytes = 0
        self.completed = False
        self.on_status("transferring", 0)
        if metadata.size == 0:
            self._complete()

    def _on_chunk(self, chunk: bytes) -> None:
        if self.metadata is None or self.completed:
            logger.warning("Dropping %d bytes received outside a transfer", len(chunk))
            return
        self.chunks.append(chunk)
        self.received_bytes += len(chunk)
        if self.received_bytes >= self.metadata.size:
            self._complete()
        else:
            self.on_status("transferring", percent(self.received_bytes, self.metadata.size))

    def _complete(self) -> None:
        self.completed = True
        data = b"".join(self.chunks)
        self.chunks = []
        if self.on_file is not None:
            self.on_file(data, self.metadata)
        if self.channel.readyState == "open":
            self.channel.send(ACK_FRAME)
            logger.info("File received, sent ACK")
        self.on_status("completed", 100)

    def _on_close(self) -> None:
        if not self._stopped and self.metadata is not None and not self.completed:
            self.on_status("error", None, TransportError("Data channel closed mid-transfer"))
