"""
Received File Storage

Design Decision: Name Collisions
================================

Options Considered:
1. Overwrite existing files
   - Simple, but a second "photo.jpg" silently replaces the first

2. Refuse to save
   - Safe, but the bytes are already received and would be lost

3. Pick the next free name: photo.jpg, photo (1).jpg, photo (2).jpg
   - What browsers do for downloads

Decision: Next free name
- Received names come from the remote peer, only the final path component
  is kept
- Writes go to a temp file first and are renamed into place
"""

import asyncio
import logging
from pathlib import Path

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)


def safe_file_name(name: str) -> str:
    """Strip directories and reserved names from a peer-supplied file name."""
    name = Path(name.replace('\\', '/')).name.strip()
    if name in ('', '.', '..'):
        return 'untitled'
    return name


def unique_path(directory: Path, name: str) -> Path:
    """First path in directory for name that does not exist yet."""
    candidate = directory / name
    stem, suffix = candidate.stem, candidate.suffix
    counter = 1
    while candidate.exists():
        candidate = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return candidate


class DownloadStore:
    """
    Saves completed incoming files into one directory.

    Saves run one at a time, so two files arriving under the same name
    never race for the same free path.
    """

    def __init__(self, directory: Path):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.saved = []
        self._lock = asyncio.Lock()

    async def save(self, payload: bytes, file_name: str) -> Path:
        """
        Write payload under a free name derived from file_name.

        Returns:
            Path of the saved file
        """
        async with self._lock:
            path = unique_path(self.directory, safe_file_name(file_name))
            temp_path = path.with_name(f".{path.name}.part")

            async with aiofiles.open(temp_path, 'wb') as f:
                await f.write(payload)

            await aiofiles.os.rename(temp_path, path)

        self.saved.append(path)
        logger.info(f"Saved {len(payload):,} bytes to {path}")
        return path
