"""
Remote ICE candidate queue.

Candidates can arrive over signaling before the offer or answer they belong
to has been applied. Those are held here and applied, in arrival order, once
the remote description is set.
"""

import logging
from typing import Any, Awaitable, Callable, List

logger = logging.getLogger(__name__)


class CandidateQueue:
    """
    Ordered buffer of remote candidates.

    flush() applies every queued candidate exactly once and empties the queue.
    Later flushes apply nothing until new candidates are queued.
    """

    def __init__(self):
        self._pending: List[Any] = []
        self.flushed_count = 0

    def __len__(self) -> int:
        return len(self._pending)

    def push(self, candidate: Any):
        self._pending.append(candidate)
        logger.debug(f"Queued ICE candidate ({len(self._pending)} pending)")

    def reset(self):
        self._pending = []
        self.flushed_count = 0

    async def flush(self, apply: Callable[[Any], Awaitable[None]]) -> int:
        """
        Apply queued candidates in arrival order, then clear.

        A candidate that fails to apply is logged and skipped; the rest are
        still applied.

        Returns:
            Number of candidates applied successfully
        """
        pending, self._pending = self._pending, []
        applied = 0

        for candidate in pending:
            try:
                await apply(candidate)
                applied += 1
            except Exception as e:
                logger.warning(f"Error adding queued ICE candidate: {e}")

        if pending:
            logger.info(f"Flushed {applied}/{len(pending)} queued ICE candidates")
        self.flushed_count += applied
        return applied
