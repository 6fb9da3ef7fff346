"""
File Chunker

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 16KB    | Safe for every peer channel   | Many messages on large files   |
| 64KB    | Good for mid-size files       | -                              |
| 256KB   | Low per-message overhead      | Coarse progress on small files |

Decision: Size-banded chunking
- The file size picks a band; the band fixes chunk size and the
  floor/initial/ceiling for adaptive concurrency
- Small files keep small chunks and low parallelism (fast first byte)
- Large files get larger chunks and more parallelism (throughput)
- Bands are tuning policy, not a correctness requirement: the receiver
  learns chunk count from file-info and never assumes a chunk size

Chunking Strategy: Fixed-Size within a transfer
- ``total_chunks == ceil(file_size / chunk_size)``
- The last chunk carries the remainder
"""

import asyncio
from pathlib import Path
from dataclasses import dataclass
from typing import Optional, Tuple, List

import aiofiles

KB = 1024
MB = 1024 * KB


@dataclass(frozen=True)
class SizeBand:
    """Chunking and concurrency policy for a range of file sizes."""
    max_size: Optional[int]  # exclusive upper bound; None = unbounded
    chunk_size: int
    initial_concurrency: int
    min_concurrency: int
    max_concurrency: int

    def contains(self, file_size: int) -> bool:
        return self.max_size is None or file_size < self.max_size


SIZE_BANDS: List[SizeBand] = [
    SizeBand(max_size=1 * MB, chunk_size=16 * KB,
             initial_concurrency=2, min_concurrency=1, max_concurrency=4),
    SizeBand(max_size=10 * MB, chunk_size=64 * KB,
             initial_concurrency=4, min_concurrency=2, max_concurrency=8),
    SizeBand(max_size=100 * MB, chunk_size=128 * KB,
             initial_concurrency=6, min_concurrency=2, max_concurrency=12),
    SizeBand(max_size=None, chunk_size=256 * KB,
             initial_concurrency=8, min_concurrency=4, max_concurrency=16),
]


def select_band(file_size: int) -> SizeBand:
    """Pick the size band for a file."""
    for band in SIZE_BANDS:
        if band.contains(file_size):
            return band
    return SIZE_BANDS[-1]


def get_chunk_count(file_size: int, chunk_size: int) -> int:
    """Calculate number of chunks for a file of given size."""
    return (file_size + chunk_size - 1) // chunk_size


def get_chunk_bounds(chunk_index: int, file_size: int, chunk_size: int) -> Tuple[int, int]:
    """
    Get byte range for a specific chunk.

    Returns:
        (start_offset, length) tuple
    """
    start = chunk_index * chunk_size
    length = min(chunk_size, file_size - start)
    return start, length


class ChunkSource:
    """Random-access reader of a file's chunks."""

    file_size: int

    async def read_chunk(self, index: int, chunk_size: int) -> bytes:
        raise NotImplementedError

    async def close(self):
        pass


class FileChunkSource(ChunkSource):
    """Reads chunks lazily from a file on disk; the file is never fully loaded."""

    def __init__(self, file_path: Path):
        self.file_path = Path(file_path)
        self.file_size = self.file_path.stat().st_size
        self._file = None
        self._lock = asyncio.Lock()

    async def read_chunk(self, index: int, chunk_size: int) -> bytes:
        start, length = get_chunk_bounds(index, self.file_size, chunk_size)
        if length <= 0:
            raise IndexError(f"Chunk {index} is past end of file")

        # Seek + read must not interleave with another task's seek
        async with self._lock:
            if self._file is None:
                self._file = await aiofiles.open(self.file_path, 'rb')
            await self._file.seek(start)
            return await self._file.read(length)

    async def close(self):
        if self._file is not None:
            await self._file.close()
            self._file = None


class BytesChunkSource(ChunkSource):
    """Chunks over an in-memory buffer."""

    def __init__(self, data: bytes):
        self._data = memoryview(data)
        self.file_size = len(data)

    async def read_chunk(self, index: int, chunk_size: int) -> bytes:
        start, length = get_chunk_bounds(index, self.file_size, chunk_size)
        if length <= 0:
            raise IndexError(f"Chunk {index} is past end of data")
        return bytes(self._data[start:start + length])
