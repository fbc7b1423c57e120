"""
Transfer Registry

Tracks the transfers in flight over one session, keyed by transfer id. The
sender and the receiver of a session share one registry so a UI can list
both directions in one place.

An entry lives from transfer start until completion, terminal error or
cancellation. Removed ids are remembered and never accepted again.
"""

import logging
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from ..errors import DuplicateTransferError

logger = logging.getLogger(__name__)


class TransferDirection(Enum):
    SEND = "send"
    RECEIVE = "receive"


class TransferStatus(Enum):
    PENDING = "pending"
    ACTIVE = "active"
    DONE = "done"
    ERROR = "error"


@dataclass
class Transfer:
    """One file movement in one direction."""
    transfer_id: str
    file_name: str
    file_size: int
    mime_type: str
    direction: TransferDirection
    bytes_moved: int = 0
    progress: int = 0  # Last reported percentage
    status: TransferStatus = TransferStatus.PENDING
    error: Optional[str] = None
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at or time.time()
        return end - self.started_at

    @property
    def speed_bytes_per_sec(self) -> float:
        elapsed = self.elapsed_seconds
        if elapsed == 0:
            return 0
        return self.bytes_moved / elapsed

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            'transfer_id': self.transfer_id,
            'file_name': self.file_name,
            'file_size': self.file_size,
            'mime_type': self.mime_type,
            'direction': self.direction.value,
            'bytes_moved': self.bytes_moved,
            'progress': self.progress,
            'status': self.status.value,
            'error': self.error,
            'speed_bytes_per_sec': self.speed_bytes_per_sec,
            'elapsed_seconds': self.elapsed_seconds,
        }


class TransferRegistry:
    """transfer id -> Transfer for the live transfers of one session."""

    def __init__(self):
        self._transfers: Dict[str, Transfer] = {}
        self._retired: Set[str] = set()

        # Statistics
        self.completed = 0
        self.failed = 0

    def __len__(self) -> int:
        return len(self._transfers)

    def __contains__(self, transfer_id: str) -> bool:
        return transfer_id in self._transfers

    def create(self, transfer_id: str, file_name: str, file_size: int,
               mime_type: str, direction: TransferDirection) -> Transfer:
        """
        Register a new transfer.

        Raises:
            DuplicateTransferError: The id is live or was used before
        """
        if transfer_id in self._transfers or transfer_id in self._retired:
            raise DuplicateTransferError(f"Transfer id already used: {transfer_id}")

        transfer = Transfer(
            transfer_id=transfer_id,
            file_name=file_name,
            file_size=file_size,
            mime_type=mime_type,
            direction=direction,
        )
        self._transfers[transfer_id] = transfer
        logger.debug(f"Registered {direction.value} transfer {transfer_id[:8]} ({file_name})")
        return transfer

    def get(self, transfer_id: str) -> Optional[Transfer]:
        return self._transfers.get(transfer_id)

    def update(self, transfer_id: str, bytes_moved: int, progress: int) -> Optional[Transfer]:
        transfer = self._transfers.get(transfer_id)
        if transfer is None:
            return None
        transfer.status = TransferStatus.ACTIVE
        transfer.bytes_moved = bytes_moved
        transfer.progress = progress
        return transfer

    def finish(self, transfer_id: str) -> Optional[Transfer]:
        """Mark done and remove."""
        transfer = self._retire(transfer_id)
        if transfer is not None:
            transfer.status = TransferStatus.DONE
            self.completed += 1
        return transfer

    def fail(self, transfer_id: str, error: str) -> Optional[Transfer]:
        """Mark errored and remove."""
        transfer = self._retire(transfer_id)
        if transfer is not None:
            transfer.status = TransferStatus.ERROR
            transfer.error = error
            self.failed += 1
            logger.warning(f"Transfer {transfer_id[:8]} ({transfer.file_name}) failed: {error}")
        return transfer

    def remove(self, transfer_id: str) -> Optional[Transfer]:
        """Remove without a terminal status (cancellation)."""
        return self._retire(transfer_id)

    def abort_all(self, reason: str,
                  direction: Optional[TransferDirection] = None) -> List[Transfer]:
        """Fail every live transfer (optionally one direction only)."""
        aborted = []
        for transfer_id, transfer in list(self._transfers.items()):
            if direction is None or transfer.direction == direction:
                aborted.append(self.fail(transfer_id, reason))
        return aborted

    def active(self) -> List[Transfer]:
        return list(self._transfers.values())

    def get_stats(self) -> dict:
        return {
            'active': len(self._transfers),
            'completed': self.completed,
            'failed': self.failed,
        }

    def _retire(self, transfer_id: str) -> Optional[Transfer]:
        transfer = self._transfers.pop(transfer_id, None)
        if transfer is not None:
            self._retired.add(transfer_id)
            transfer.finished_at = time.time()
        return transfer
