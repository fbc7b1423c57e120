"""
Data Channel Transfer Protocol

Design Decision: Framing
========================

Options Considered:
1. Length-prefixed binary frames (header + payload in one message)
   - Self-describing, no ordering assumptions
   - Browsers on the other end would need a custom parser

2. JSON text frames for control + raw binary frames for data
   - Matches what the browser client already speaks
   - A binary frame has no header, so its owner is inferred from context

Decision: JSON control frames + raw binary chunk frames
- The data channel is ordered and reliable, so context is well defined
- Each binary frame is preceded by a small chunk header naming its transfer
- Frames of two transfers never interleave (the session serializes sends)

Frame sequence for one transfer:
```
{"transferId", "fileName", "fileType", "fileSize", "isFirstChunk": true, "timestamp"}
{"transferId", "chunkIndex", "isChunk": true, "chunkSize"}     \\
<binary chunk bytes>                                           / x total_chunks
{"transferId", "done": true, "fileName", "fileType", "fileSize", "totalChunks", "timestamp"}
```
"""

import json
import math
import time
import uuid
from enum import Enum
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from ..errors import FrameError


class FrameKind(Enum):
    """Control frame kinds."""
    FIRST_CHUNK = "first-chunk"
    CHUNK = "chunk"
    DONE = "done"


def generate_transfer_id() -> str:
    """Process-unique transfer identifier."""
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class FirstChunkFrame:
    """Announces a new transfer before any of its bytes."""
    transfer_id: Optional[str]
    file_name: str
    file_type: str
    file_size: int
    timestamp: int = field(default_factory=now_ms)

    kind = FrameKind.FIRST_CHUNK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transferId': self.transfer_id,
            'fileName': self.file_name,
            'fileType': self.file_type,
            'fileSize': self.file_size,
            'isFirstChunk': True,
            'timestamp': self.timestamp,
        }


@dataclass
class ChunkHeaderFrame:
    """Names the transfer the next binary frame belongs to."""
    transfer_id: str
    chunk_index: int
    chunk_size: int

    kind = FrameKind.CHUNK

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transferId': self.transfer_id,
            'chunkIndex': self.chunk_index,
            'isChunk': True,
            'chunkSize': self.chunk_size,
        }


@dataclass
class CompletionFrame:
    """Closes a transfer after its last chunk."""
    transfer_id: Optional[str]
    file_name: str
    file_type: str
    file_size: int
    total_chunks: Optional[int] = None
    timestamp: int = field(default_factory=now_ms)

    kind = FrameKind.DONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transferId': self.transfer_id,
            'done': True,
            'fileName': self.file_name,
            'fileType': self.file_type,
            'fileSize': self.file_size,
            'totalChunks': self.total_chunks,
            'timestamp': self.timestamp,
        }


ControlFrame = Union[FirstChunkFrame, ChunkHeaderFrame, CompletionFrame]


def encode_frame(frame: ControlFrame) -> str:
    """Serialize a control frame as a UTF-8 JSON text frame."""
    return json.dumps(frame.to_dict())


def _require_int(data: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise FrameError(f"Control frame field '{key}' must be a non-negative number")
    # JSON allows 1e400 and the NaN/Infinity extensions, int() does not
    if (isinstance(value, float) and not math.isfinite(value)) or value < 0:
        raise FrameError(f"Control frame field '{key}' must be a non-negative number")
    return int(value)


def parse_control_frame(raw: Union[str, Dict[str, Any]]) -> ControlFrame:
    """
    Parse a control frame from JSON text or an already-decoded dict.

    Raises:
        FrameError: Not JSON, not an object, or an unknown/incomplete shape
    """
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise FrameError(f"Control frame is not JSON: {e}")
    else:
        data = raw

    if not isinstance(data, dict):
        raise FrameError("Control frame is not a JSON object")

    transfer_id = data.get('transferId')
    if transfer_id is not None and not isinstance(transfer_id, str):
        transfer_id = str(transfer_id)

    if data.get('isFirstChunk'):
        return FirstChunkFrame(
            transfer_id=transfer_id,
            file_name=str(data.get('fileName') or 'untitled'),
            file_type=str(data.get('fileType') or ''),
            file_size=_require_int(data, 'fileSize'),
            timestamp=_require_int(data, 'timestamp', 0),
        )

    if data.get('isChunk'):
        if transfer_id is None:
            raise FrameError("Chunk header without transferId")
        return ChunkHeaderFrame(
            transfer_id=transfer_id,
            chunk_index=_require_int(data, 'chunkIndex'),
            chunk_size=_require_int(data, 'chunkSize'),
        )

    if data.get('done'):
        total = data.get('totalChunks')
        return CompletionFrame(
            transfer_id=transfer_id,
            file_name=str(data.get('fileName') or 'untitled'),
            file_type=str(data.get('fileType') or ''),
            file_size=_require_int(data, 'fileSize', 0),
            total_chunks=_require_int(data, 'totalChunks') if total is not None else None,
            timestamp=_require_int(data, 'timestamp', 0),
        )

    raise FrameError(f"Unrecognized control frame: {sorted(data)}")
