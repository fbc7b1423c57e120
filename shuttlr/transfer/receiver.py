"""
Chunk Receiver

Reassembles files from the frames the remote sender puts on the data
channel. Control frames arrive as JSON text, chunk bytes as binary frames.

Binary frames carry no header of their own. A binary frame belongs to the
transfer named by the chunk header right before it; if the peer sends no
chunk headers (older browser clients), it belongs to the most recently
opened transfer that is still incomplete.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from ..errors import DuplicateTransferError, FrameError
from .protocol import (
    ChunkHeaderFrame, CompletionFrame, FirstChunkFrame, FrameKind,
    parse_control_frame
)
from .registry import TransferDirection, TransferRegistry

logger = logging.getLogger(__name__)

# (file_name, percent)
ReceiveProgressCallback = Callable[[str, int], None]
# (payload, file_name, mime_type)
FileCompleteCallback = Callable[[bytes, str, str], None]

_legacy_ids = itertools.count(1)


@dataclass
class IncomingTransfer:
    """Reassembly state of one incoming file."""
    transfer_id: str
    file_name: str
    file_type: str
    file_size: int
    chunks: List[bytes] = field(default_factory=list)
    received_size: int = 0
    progress: int = 0

    def add_chunk(self, data: bytes) -> int:
        self.chunks.append(data)
        self.received_size += len(data)
        if self.file_size > 0:
            self.progress = min(round(self.received_size * 100 / self.file_size), 100)
        return self.progress

    def assemble(self) -> bytes:
        return b''.join(self.chunks)


class ChunkReceiver:
    """
    Feeds data-channel frames into per-transfer buffers and fires callbacks
    on progress and completion.
    """

    def __init__(self, on_progress: Optional[ReceiveProgressCallback] = None,
                 on_complete: Optional[FileCompleteCallback] = None,
                 registry: Optional[TransferRegistry] = None):
        self.on_progress = on_progress
        self.on_complete = on_complete
        self.registry = registry if registry is not None else TransferRegistry()

        # Insertion order doubles as open order for the fallback route
        self._incoming: Dict[str, IncomingTransfer] = {}
        self._next_binary: Optional[str] = None

        # Statistics
        self.files_received = 0
        self.bytes_received = 0
        self.frames_dropped = 0

    @property
    def incoming(self) -> List[IncomingTransfer]:
        return list(self._incoming.values())

    def on_frame(self, frame: Any):
        """Handle one data-channel message (text, parsed dict or bytes)."""
        if isinstance(frame, (bytes, bytearray, memoryview)):
            self._on_binary(bytes(frame))
            return

        try:
            control = parse_control_frame(frame)
        except FrameError as e:
            self.frames_dropped += 1
            logger.warning(f"Ignoring control frame: {e.message}")
            return

        if control.kind == FrameKind.FIRST_CHUNK:
            self._on_first_chunk(control)
        elif control.kind == FrameKind.CHUNK:
            self._on_chunk_header(control)
        elif control.kind == FrameKind.DONE:
            self._on_completion(control)

    def abort_all(self, reason: str) -> int:
        """Drop every incomplete transfer and mark it errored."""
        count = len(self._incoming)
        for transfer_id in list(self._incoming):
            self.registry.fail(transfer_id, reason)
        self._incoming.clear()
        self._next_binary = None
        if count:
            logger.info(f"Aborted {count} incoming transfer(s): {reason}")
        return count

    def get_stats(self) -> dict:
        return {
            'incoming': len(self._incoming),
            'files_received': self.files_received,
            'bytes_received': self.bytes_received,
            'frames_dropped': self.frames_dropped,
        }

    # === Frame handlers ===

    def _on_first_chunk(self, frame: FirstChunkFrame):
        transfer_id = frame.transfer_id or f"legacy-{next(_legacy_ids)}"
        if transfer_id in self._incoming:
            logger.warning(f"Ignoring repeated first chunk for {transfer_id[:8]}")
            return

        try:
            self.registry.create(transfer_id, frame.file_name, frame.file_size,
                                 frame.file_type, TransferDirection.RECEIVE)
        except DuplicateTransferError as e:
            self.frames_dropped += 1
            logger.warning(f"Ignoring first chunk: {e.message}")
            return

        self._incoming[transfer_id] = IncomingTransfer(
            transfer_id=transfer_id,
            file_name=frame.file_name,
            file_type=frame.file_type,
            file_size=frame.file_size,
        )
        logger.info(f"Receiving file: {frame.file_name}, size: {frame.file_size:,} bytes")
        self._report(frame.file_name, 0)

    def _on_chunk_header(self, frame: ChunkHeaderFrame):
        if frame.transfer_id not in self._incoming:
            self.frames_dropped += 1
            logger.warning(f"Chunk header for unknown transfer {frame.transfer_id[:8]}")
            self._next_binary = None
            return
        self._next_binary = frame.transfer_id

    def _on_binary(self, data: bytes):
        transfer_id, self._next_binary = self._next_binary, None
        transfer = self._incoming.get(transfer_id) if transfer_id else None
        if transfer is None:
            transfer = self._most_recent()
        if transfer is None:
            self.frames_dropped += 1
            logger.warning(f"Dropping {len(data)} byte chunk with no transfer in progress")
            return

        percent = transfer.add_chunk(data)
        self.bytes_received += len(data)
        self.registry.update(transfer.transfer_id, transfer.received_size, percent)
        logger.debug(f"Received chunk: {transfer.received_size}/{transfer.file_size} "
                     f"bytes ({percent}%)")
        self._report(transfer.file_name, percent)

    def _on_completion(self, frame: CompletionFrame):
        if frame.transfer_id is not None:
            transfer = self._incoming.get(frame.transfer_id)
        else:
            transfer = self._most_recent()

        if transfer is None:
            self.frames_dropped += 1
            logger.warning(f"Completion for unknown transfer {frame.transfer_id}")
            return

        del self._incoming[transfer.transfer_id]
        if self._next_binary == transfer.transfer_id:
            self._next_binary = None

        payload = transfer.assemble()
        if len(payload) != transfer.file_size:
            logger.warning(f"Size mismatch for {transfer.file_name}: expected "
                           f"{transfer.file_size:,} bytes, got {len(payload):,}")

        self.registry.update(transfer.transfer_id, len(payload), 100)
        self.registry.finish(transfer.transfer_id)
        self.files_received += 1
        logger.info(f'File "{transfer.file_name}" received completely.')

        if self.on_complete:
            self.on_complete(payload, transfer.file_name, transfer.file_type)

    # === Helpers ===

    def _most_recent(self) -> Optional[IncomingTransfer]:
        if not self._incoming:
            return None
        return next(reversed(list(self._incoming.values())))

    def _report(self, file_name: str, percent: int):
        if self.on_progress:
            self.on_progress(file_name, percent)
