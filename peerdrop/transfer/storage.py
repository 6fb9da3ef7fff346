"""
Local Save

Writes a reconstructed file into the download directory. The peer-supplied
name is reduced to its final path component so a remote peer can never
write outside the directory, and an existing file is never overwritten
(``report.pdf`` becomes ``report_1.pdf``).
"""

import logging
from pathlib import Path

import aiofiles
import aiofiles.os

from .models import ReceivedFile

logger = logging.getLogger(__name__)

FALLBACK_NAME = "received_file"


def sanitize_file_name(raw: str) -> str:
    """Keep only the last non-traversal component of a peer-supplied name."""
    parts = [
        part.strip()
        for part in (raw or "").replace("\\", "/").split("/")
        if part.strip() not in ("", ".", "..")
    ]
    if not parts:
        return FALLBACK_NAME
    return parts[-1].lstrip('.') or FALLBACK_NAME


def unique_path(path: Path) -> Path:
    if not path.exists():
        return path
    stem, suffix = path.stem, path.suffix
    counter = 1
    while True:
        candidate = path.parent / f"{stem}_{counter}{suffix}"
        if not candidate.exists():
            return candidate
        counter += 1


async def save_received_file(received: ReceivedFile, directory: Path) -> Path:
    """
    Save a received file.

    Writes to a ``.part`` file first and renames it into place so a crash
    never leaves a truncated file under the final name.

    Returns:
        Path the file was written to
    """
    directory = Path(directory)
    await aiofiles.os.makedirs(directory, exist_ok=True)

    output_path = unique_path(directory / sanitize_file_name(received.file_name))
    temp_path = output_path.with_name(output_path.name + '.part')

    async with aiofiles.open(temp_path, 'wb') as f:
        await f.write(received.data)
    await aiofiles.os.rename(temp_path, output_path)

    logger.info(f"Saved {received.file_name} ({received.size:,} bytes) to {output_path}")
    return output_path
