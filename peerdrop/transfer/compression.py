"""
Per-Chunk Compression

zlib (level 6) per chunk, attempted only for content that is likely to
shrink. A chunk is sent compressed only when the result is strictly
smaller than the raw bytes; the per-chunk flag always states what was
actually sent.
"""

import zlib
from pathlib import PurePath
from typing import Optional, Tuple

from ..errors import ChunkIntegrityMismatch

COMPRESSION_LEVEL = 6

COMPRESSIBLE_MIME_PREFIXES = ('text/',)

COMPRESSIBLE_MIME_TYPES = {
    'application/json',
    'application/xml',
    'application/javascript',
    'application/x-javascript',
    'application/ecmascript',
    'application/x-yaml',
    'application/yaml',
    'application/sql',
    'application/x-sh',
    'application/rtf',
    'application/x-tar',
    'image/svg+xml',
    'image/bmp',
}

COMPRESSIBLE_EXTENSIONS = {
    '.txt', '.md', '.csv', '.tsv', '.json', '.xml', '.html', '.htm', '.css',
    '.js', '.ts', '.py', '.java', '.c', '.h', '.cpp', '.rs', '.go', '.rb',
    '.sh', '.yaml', '.yml', '.toml', '.ini', '.cfg', '.log', '.sql', '.svg',
    '.tex', '.rtf', '.bmp', '.tar', '.wav',
}


def is_compressible(mime_type: str, file_name: str = "") -> bool:
    """Heuristic: is this content worth trying to compress?"""
    mime = (mime_type or "").split(';')[0].strip().lower()
    if mime.startswith(COMPRESSIBLE_MIME_PREFIXES) or mime in COMPRESSIBLE_MIME_TYPES:
        return True
    suffix = PurePath(file_name or "").suffix.lower()
    return suffix in COMPRESSIBLE_EXTENSIONS


def compress_chunk(raw: bytes) -> Tuple[bytes, bool]:
    """
    Try to compress one chunk.

    Returns:
        (payload, compressed) where ``compressed`` is True only when the
        payload is the zlib stream and strictly smaller than ``raw``
    """
    packed = zlib.compress(raw, COMPRESSION_LEVEL)
    if len(packed) < len(raw):
        return packed, True
    return raw, False


def decompress_chunk(payload: bytes, compressed: bool,
                     max_size: Optional[int] = None) -> bytes:
    """
    Undo ``compress_chunk`` according to the chunk's flag.

    Args:
        max_size: Most bytes the chunk may expand to; inflation stops one
            byte past it

    Raises:
        ChunkIntegrityMismatch: corrupt or truncated stream, or output
            larger than ``max_size``
    """
    if not compressed:
        return payload

    decompressor = zlib.decompressobj()
    try:
        if max_size is None:
            data = decompressor.decompress(payload) + decompressor.flush()
        else:
            data = decompressor.decompress(payload, max_size + 1)
    except zlib.error as e:
        raise ChunkIntegrityMismatch(f"Chunk failed to decompress: {e}") from e

    if max_size is not None and len(data) > max_size:
        raise ChunkIntegrityMismatch(f"Chunk inflates past {max_size:,} bytes")
    if not decompressor.eof:
        raise ChunkIntegrityMismatch("Chunk is a truncated zlib stream")
    return data
