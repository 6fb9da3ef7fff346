"""
Reassembly Engine (receiver side)

Design Decision: Buffer Lifecycle
=================================

- Every ``file-info`` replaces the buffer outright. A restarted or new
  transfer can never see chunks left over from an abandoned one.
- Chunks are stored by index with overwrite semantics, so a retransmitted
  chunk never counts twice and needs no deduplication protocol.
- Reconstruction runs only when the number of distinct indices equals
  ``totalChunks``; it concatenates strictly in index order and checks the
  result against the declared ``fileSize``. A mismatch is an integrity
  failure, never a silent truncation or pad.
- The bytes held never exceed ``fileSize``: a chunk that would overflow it
  (including a compressed chunk inflating too far) is rejected as it
  arrives, before it is buffered.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..errors import ChunkIntegrityMismatch, MalformedMessage
from .compression import decompress_chunk
from .models import FileInfo, ReceivedFile
from .protocol import ChannelMessage

logger = logging.getLogger(__name__)


@dataclass
class ReceiveBuffer:
    """Chunks received so far for one announced file."""
    info: FileInfo
    chunks: Dict[int, bytes] = field(default_factory=dict)
    bytes_received: int = 0

    def put(self, index: int, data: bytes):
        """Store a chunk; a repeated index replaces the earlier copy."""
        previous = self.chunks.get(index)
        if previous is not None:
            self.bytes_received -= len(previous)
        self.chunks[index] = data
        self.bytes_received += len(data)

    @property
    def count(self) -> int:
        """Number of distinct chunk indices held."""
        return len(self.chunks)

    @property
    def is_complete(self) -> bool:
        return self.count == self.info.total_chunks


class ReassemblyEngine:
    """Collects chunks for the current file and rebuilds it when complete."""

    def __init__(self):
        self.buffer: Optional[ReceiveBuffer] = None

    @property
    def completed_chunks(self) -> int:
        return self.buffer.count if self.buffer else 0

    @property
    def bytes_received(self) -> int:
        return self.buffer.bytes_received if self.buffer else 0

    def start(self, info: FileInfo):
        """Begin a new file, discarding whatever was buffered."""
        if self.buffer is not None and self.buffer.count:
            logger.info(
                f"Discarding {self.buffer.count}/{self.buffer.info.total_chunks} "
                f"chunks of {self.buffer.info.file_name}"
            )
        self.buffer = ReceiveBuffer(info=info)
        logger.debug(f"Receiving {info.file_name}: {info.total_chunks} chunks")

    def add_message(self, message: ChannelMessage) -> Optional[ReceivedFile]:
        return self.add_chunk(
            message.index, message.data, message.compressed, message.total_chunks,
        )

    def add_chunk(self, index: int, payload: bytes, compressed: bool,
                  total_chunks: int) -> Optional[ReceivedFile]:
        """
        Store one chunk.

        Returns:
            The reconstructed file once every index has been seen, else None

        Raises:
            MalformedMessage: chunk arrived before any file-info
            ChunkIntegrityMismatch: index or totalChunks disagree with the
                file-info, the payload failed to decompress, the held bytes
                would exceed fileSize, or the reconstructed length differs
                from fileSize
        """
        if self.buffer is None:
            raise MalformedMessage(f"Chunk {index} arrived before file-info")

        info = self.buffer.info
        if total_chunks != info.total_chunks:
            raise ChunkIntegrityMismatch(
                f"Chunk {index} declares {total_chunks} chunks, file-info declared {info.total_chunks}"
            )
        if not 0 <= index < info.total_chunks:
            raise ChunkIntegrityMismatch(f"Chunk index {index} out of range 0..{info.total_chunks - 1}")

        # Bytes of fileSize not yet held; a repeated index frees its old copy
        room = info.file_size - self.buffer.bytes_received + len(self.buffer.chunks.get(index, b''))
        data = decompress_chunk(payload, compressed, max_size=room)
        if len(data) > room:
            raise ChunkIntegrityMismatch(
                f"Chunk {index} is {len(data):,} bytes, only {room:,} of "
                f"fileSize {info.file_size:,} remain"
            )
        self.buffer.put(index, data)

        if not self.buffer.is_complete:
            return None
        return self._assemble()

    def _assemble(self) -> ReceivedFile:
        buffer = self.buffer
        info = buffer.info
        data = b''.join(buffer.chunks[i] for i in range(info.total_chunks))
        self.buffer = None

        if len(data) != info.file_size:
            raise ChunkIntegrityMismatch(
                f"Reconstructed {len(data):,} bytes, expected {info.file_size:,}"
            )

        logger.info(f"Reassembled {info.file_name} ({len(data):,} bytes)")
        return ReceivedFile(file_name=info.file_name, mime_type=info.mime_type, data=data)

    def reset(self):
        """Drop all buffered chunks."""
        self.buffer = None
