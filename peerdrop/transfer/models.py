"""
Transfer Data Model

- TransferOffer: what the sender proposes; immutable once accepted
- FileInfo: the first message of every transfer attempt on the channel
- TransferSession: runtime accounting for one active transfer
- ReceivedFile: reconstructed bytes handed to the local-save step

Wire fields are camelCase (fileName, fileSize, ...) to match browser peers.
"""

import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..errors import FileTooLarge, InvalidOffer, MalformedMessage
from .chunker import get_chunk_count, select_band
from .compression import is_compressible

DEFAULT_MIME_TYPE = 'application/octet-stream'


class TransferState(Enum):
    """States of the transfer state machine."""
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_RESPONSE = "awaitingResponse"
    SENDING = "sending"
    RECEIVING = "receiving"
    COMPLETED = "completed"
    ERROR = "error"


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


@dataclass(frozen=True)
class TransferOffer:
    """A proposed file transfer."""
    file_name: str
    file_size: int
    mime_type: str
    total_chunks: int
    chunk_size: int
    compression_requested: bool = False

    @classmethod
    def create(cls, file_name: str, file_size: int,
               mime_type: Optional[str] = None,
               max_file_size: Optional[int] = None,
               chunk_size: Optional[int] = None) -> 'TransferOffer':
        """
        Build and validate an offer; chunk size comes from the size band
        unless given.

        Raises:
            InvalidOffer: empty name or non-positive size
            FileTooLarge: size above ``max_file_size``
        """
        if not isinstance(file_name, str) or not file_name.strip():
            raise InvalidOffer("File name must not be empty")
        if not _is_int(file_size) or file_size <= 0:
            raise InvalidOffer(f"File size must be a positive integer, got {file_size!r}")
        if max_file_size is not None and file_size > max_file_size:
            raise FileTooLarge(f"{file_size:,} bytes exceeds the {max_file_size:,} byte limit")

        if chunk_size is None:
            chunk_size = select_band(file_size).chunk_size
        elif not _is_int(chunk_size) or chunk_size <= 0:
            raise InvalidOffer(f"Chunk size must be a positive integer, got {chunk_size!r}")

        mime_type = mime_type or DEFAULT_MIME_TYPE
        return cls(
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            total_chunks=get_chunk_count(file_size, chunk_size),
            chunk_size=chunk_size,
            compression_requested=is_compressible(mime_type, file_name),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  max_file_size: Optional[int] = None) -> 'TransferOffer':
        """
        Parse a wire offer. ``chunkSize``/``totalChunks`` are optional (the
        relay-level offer carries only name, size and mime type) but when
        present they must agree.
        """
        if not isinstance(data, dict):
            raise InvalidOffer("Offer is not an object")

        offer = cls.create(
            file_name=data.get('fileName'),
            file_size=data.get('fileSize'),
            mime_type=data.get('mimeType'),
            max_file_size=max_file_size,
            chunk_size=data.get('chunkSize'),
        )

        total = data.get('totalChunks')
        if total is not None and total != offer.total_chunks:
            raise InvalidOffer(
                f"totalChunks {total!r} does not match "
                f"ceil({offer.file_size} / {offer.chunk_size}) = {offer.total_chunks}"
            )

        compressed = data.get('compressed')
        if isinstance(compressed, bool) and compressed != offer.compression_requested:
            offer = cls(
                file_name=offer.file_name,
                file_size=offer.file_size,
                mime_type=offer.mime_type,
                total_chunks=offer.total_chunks,
                chunk_size=offer.chunk_size,
                compression_requested=compressed,
            )
        return offer

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'mimeType': self.mime_type,
            'totalChunks': self.total_chunks,
            'chunkSize': self.chunk_size,
            'compressed': self.compression_requested,
        }

    def file_info(self) -> 'FileInfo':
        return FileInfo(
            file_name=self.file_name,
            file_size=self.file_size,
            mime_type=self.mime_type,
            total_chunks=self.total_chunks,
            compressed=self.compression_requested,
        )


@dataclass(frozen=True)
class FileInfo:
    """Announces a transfer on the channel; always resets the receive buffer."""
    file_name: str
    file_size: int
    mime_type: str
    total_chunks: int
    compressed: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileInfo':
        name = data.get('fileName')
        size = data.get('fileSize')
        total = data.get('totalChunks')
        if not isinstance(name, str) or not name:
            raise MalformedMessage("file-info without fileName")
        if not _is_int(size) or size <= 0:
            raise MalformedMessage(f"file-info with bad fileSize: {size!r}")
        if not _is_int(total) or total < 1 or total > size:
            raise MalformedMessage(f"file-info with bad totalChunks: {total!r}")
        return cls(
            file_name=name,
            file_size=size,
            mime_type=data.get('mimeType') or DEFAULT_MIME_TYPE,
            total_chunks=total,
            compressed=bool(data.get('compressed', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'fileName': self.file_name,
            'fileSize': self.file_size,
            'mimeType': self.mime_type,
            'totalChunks': self.total_chunks,
            'compressed': self.compressed,
        }


@dataclass
class TransferSession:
    """Runtime accounting for one accepted transfer."""
    offer: TransferOffer
    role: str  # 'sender' or 'receiver'
    state: TransferState
    completed_chunks: int = 0
    bytes_transferred: int = 0
    started_at: float = field(default_factory=time.time)
    peak_throughput: float = 0.0
    current_concurrency: int = 0

    @property
    def total_chunks(self) -> int:
        return self.offer.total_chunks

    @property
    def is_complete(self) -> bool:
        return self.completed_chunks == self.offer.total_chunks

    @property
    def progress(self) -> float:
        """Progress as 0.0 to 1.0."""
        return self.completed_chunks / self.offer.total_chunks

    @property
    def progress_percent(self) -> float:
        return self.progress * 100

    @property
    def elapsed_seconds(self) -> float:
        return time.time() - self.started_at

    @property
    def throughput(self) -> float:
        """Average bytes/second since start."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.bytes_transferred / elapsed

    def restart(self):
        """Zero the counters for a fresh attempt of the same offer."""
        self.completed_chunks = 0
        self.bytes_transferred = 0
        self.started_at = time.time()

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'fileName': self.offer.file_name,
            'fileSize': self.offer.file_size,
            'role': self.role,
            'state': self.state.value,
            'totalChunks': self.offer.total_chunks,
            'completedChunks': self.completed_chunks,
            'bytesTransferred': self.bytes_transferred,
            'progressPercent': self.progress_percent,
            'throughput': self.throughput,
            'peakThroughput': self.peak_throughput,
            'concurrency': self.current_concurrency,
            'elapsedSeconds': self.elapsed_seconds,
        }


@dataclass(frozen=True)
class ReceivedFile:
    """A fully reconstructed file, ready for the local save step."""
    file_name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)
