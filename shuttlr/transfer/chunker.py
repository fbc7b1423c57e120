"""
File Sources and Chunking

Design Decision: Chunk Size
===========================

Options Considered:
| Size    | Pros                             | Cons                              |
|---------|----------------------------------|-----------------------------------|
| 16KB    | Safe on every data channel impl  | More frames per file              |
| 64KB    | Fewer frames                     | Rejected by some SCTP stacks      |
| 256KB   | Lowest overhead                  | At the max-message-size ceiling   |

Decision: 16KB (16,384 bytes)
- Well under any browser's max-message-size
- Small enough that bufferedAmount tracks real backlog closely
- Fixed-size chunks keep index/offset math trivial

A file source only has to provide random-access byte ranges; the sender
never loads the whole file.
"""

import asyncio
import mimetypes
from pathlib import Path
from typing import Optional, Tuple

import aiofiles

from ..errors import ReadTimeoutError, TransferError

# Chunk size: 16KB
CHUNK_SIZE = 16 * 1024


def guess_mime_type(name: str) -> str:
    mime_type, _ = mimetypes.guess_type(name)
    return mime_type or 'application/octet-stream'


class FileSource:
    """Random-access view of a file selected for sending."""

    name: str
    size: int
    mime_type: str

    async def read(self, offset: int, length: int) -> bytes:
        raise NotImplementedError


class PathFileSource(FileSource):
    """A file on the local filesystem, read with aiofiles."""

    def __init__(self, path: Path, mime_type: Optional[str] = None,
                 name: Optional[str] = None):
        self.path = Path(path)
        if not self.path.is_file():
            raise FileNotFoundError(f"File not found: {self.path}")
        self.name = name or self.path.name
        self.size = self.path.stat().st_size
        self.mime_type = mime_type or guess_mime_type(self.name)

    async def read(self, offset: int, length: int) -> bytes:
        async with aiofiles.open(self.path, 'rb') as f:
            await f.seek(offset)
            return await f.read(length)


class BytesFileSource(FileSource):
    """An in-memory payload."""

    def __init__(self, name: str, data: bytes, mime_type: Optional[str] = None):
        self.name = name
        self.data = bytes(data)
        self.size = len(self.data)
        self.mime_type = mime_type or guess_mime_type(name)

    async def read(self, offset: int, length: int) -> bytes:
        return self.data[offset:offset + length]


class FileChunker:
    """
    Fixed-size chunk arithmetic plus time-bounded chunk reads.
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE, read_timeout: float = 5.0):
        self.chunk_size = chunk_size
        self.read_timeout = read_timeout

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return (file_size + self.chunk_size - 1) // self.chunk_size

    def get_chunk_bounds(self, chunk_index: int, file_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, length) tuple
        """
        start = chunk_index * self.chunk_size
        length = min(self.chunk_size, file_size - start)
        return start, length

    async def read_chunk(self, source: FileSource, chunk_index: int) -> bytes:
        """
        Read one chunk, bounded by read_timeout.

        Raises:
            ReadTimeoutError: The read did not finish in time
            TransferError: The read failed or came back short
        """
        start, length = self.get_chunk_bounds(chunk_index, source.size)

        try:
            data = await asyncio.wait_for(source.read(start, length), timeout=self.read_timeout)
        except asyncio.TimeoutError:
            raise ReadTimeoutError(
                f"Timed out reading chunk {chunk_index} of {source.name}"
            )
        except OSError as e:
            raise TransferError(f"Error reading file chunk: {e}")

        if len(data) != length:
            raise TransferError(
                f"Short read on chunk {chunk_index} of {source.name}: "
                f"expected {length} bytes, got {len(data)}"
            )
        return data
