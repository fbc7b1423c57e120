"""
Chunk Sender

Design Decision: Flow Control
=============================

Options Considered:
1. Fixed delay between chunks
   - Simple, but either too slow on fast links or overruns slow ones

2. Poll bufferedAmount before each chunk
   - Tracks the channel's real backlog
   - Needs a timeout so a stalled channel fails instead of hanging

3. Wait for the bufferedamountlow event
   - No polling, but one more callback to keep in sync with cancellation

Decision: Poll bufferedAmount with a deadline
- Before the first frame and before every chunk, wait until the channel's
  buffered bytes are at or below the threshold
- Give up with BufferTimeoutError after buffer_timeout seconds
- Sleep ~1ms after every chunk so the event loop keeps serving other work

Cancellation is cooperative: the cancel flag is checked before every
suspension point and every send. A cancelled transfer stops emitting frames
and reports neither completion nor error.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..errors import (
    BufferTimeoutError, ChannelClosedError, ChannelNotOpenError,
    SendFailedError, ShuttlrError, TransferError
)
from .chunker import CHUNK_SIZE, FileChunker, FileSource
from .protocol import (
    ChunkHeaderFrame, CompletionFrame, FirstChunkFrame,
    encode_frame, generate_transfer_id
)
from .registry import TransferDirection, TransferRegistry

logger = logging.getLogger(__name__)

BUFFER_THRESHOLD = 1024 * 1024  # 1MB

# Progress callback type: (percent, bytes_sent, total_bytes)
ProgressCallback = Callable[[int, int, int], None]


def progress_percent(bytes_sent: int, total: int) -> int:
    """
    Integer percentage that only reads 100 once every byte is sent.
    """
    if total <= 0 or bytes_sent >= total:
        return 100
    return min(round(bytes_sent * 100 / total), 99)


@dataclass
class SendResult:
    """Outcome of one send."""
    transfer_id: str
    file_name: str
    file_size: int
    bytes_sent: int
    total_chunks: int
    cancelled: bool = False


class CancelToken:
    """Cooperative cancellation flag shared by the send loop and its handle."""

    def __init__(self):
        self.cancelled = False
        self.error: Optional[TransferError] = None

    def cancel(self):
        self.cancelled = True

    def abort(self, error: TransferError):
        """Stop the transfer and make it fail with error."""
        self.error = error
        self.cancelled = True

    def check(self) -> bool:
        """True if the loop should stop quietly; raises if aborted."""
        if self.error is not None:
            raise self.error
        return self.cancelled


class SendHandle:
    """
    Returned by send(): await `outcome` for the SendResult, call cancel()
    to stop the transfer.
    """

    def __init__(self, transfer_id: Optional[str], token: CancelToken):
        self.transfer_id = transfer_id
        self.token = token
        self.outcome: Optional[asyncio.Future] = None

    def cancel(self):
        self.token.cancel()

    def abort(self, error: TransferError):
        self.token.abort(error)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def done(self) -> bool:
        return self.outcome is not None and self.outcome.done()

    def __await__(self):
        return self.outcome.__await__()


class ChunkSender:
    """
    Sends files over one data channel.

    Usage:
        sender = ChunkSender(channel)
        handle = sender.send(PathFileSource(path), on_progress)
        result = await handle.outcome
    """

    def __init__(self, channel: Any, chunk_size: int = CHUNK_SIZE,
                 buffer_threshold: int = BUFFER_THRESHOLD,
                 buffer_poll_interval: float = 0.01,
                 buffer_timeout: float = 10.0,
                 read_timeout: float = 5.0,
                 send_delay: float = 0.001,
                 send_chunk_headers: bool = True,
                 registry: Optional[TransferRegistry] = None):
        self.channel = channel
        self.chunker = FileChunker(chunk_size=chunk_size, read_timeout=read_timeout)
        self.buffer_threshold = buffer_threshold
        self.buffer_poll_interval = buffer_poll_interval
        self.buffer_timeout = buffer_timeout
        self.send_delay = send_delay
        self.send_chunk_headers = send_chunk_headers
        self.registry = registry if registry is not None else TransferRegistry()

        # Statistics
        self.files_sent = 0
        self.bytes_sent = 0

    @classmethod
    def from_config(cls, channel: Any, config, registry: Optional[TransferRegistry] = None):
        return cls(
            channel,
            chunk_size=config.chunk_size,
            buffer_threshold=config.buffer_threshold,
            buffer_poll_interval=config.buffer_poll_interval,
            buffer_timeout=config.buffer_timeout,
            read_timeout=config.read_timeout,
            send_delay=config.send_delay,
            registry=registry,
        )

    @property
    def channel_open(self) -> bool:
        return self.channel is not None and self.channel.readyState == 'open'

    def send(self, source: FileSource, on_progress: Optional[ProgressCallback] = None,
             token: Optional[CancelToken] = None) -> SendHandle:
        """Start sending source in the background and return its handle."""
        handle = SendHandle(generate_transfer_id(), token or CancelToken())
        handle.outcome = asyncio.ensure_future(
            self._run(source, handle.transfer_id, handle.token, on_progress)
        )
        return handle

    async def wait_for_buffer(self, token: CancelToken) -> bool:
        """
        Wait until bufferedAmount <= buffer_threshold.

        Returns:
            False if cancelled while waiting

        Raises:
            BufferTimeoutError: Still above threshold after buffer_timeout
            ChannelClosedError: The channel closed while waiting
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.buffer_timeout

        while True:
            if token.check():
                return False
            self._ensure_open()

            buffered = self.channel.bufferedAmount
            if buffered <= self.buffer_threshold:
                return True

            if loop.time() >= deadline:
                raise BufferTimeoutError(
                    f"Buffer still holds {buffered:,} bytes after {self.buffer_timeout}s"
                )
            await asyncio.sleep(self.buffer_poll_interval)

    # === Internals ===

    async def _run(self, source: FileSource, transfer_id: str, token: CancelToken,
                   on_progress: Optional[ProgressCallback]) -> SendResult:
        try:
            return await self._transfer(source, transfer_id, token, on_progress)
        except TransferError as e:
            self.registry.fail(transfer_id, e.message)
            raise
        except ShuttlrError as e:
            self.registry.fail(transfer_id, e.message)
            raise TransferError(e.message) from e
        except Exception as e:
            logger.error(f"Unexpected error sending {source.name}: {e}", exc_info=True)
            self.registry.fail(transfer_id, str(e))
            raise TransferError(f"Unexpected error sending {source.name}: {e}") from e

    async def _transfer(self, source: FileSource, transfer_id: str, token: CancelToken,
                        on_progress: Optional[ProgressCallback]) -> SendResult:
        if not self.channel_open:
            raise ChannelNotOpenError()

        total_chunks = self.chunker.get_chunk_count(source.size)
        self.registry.create(transfer_id, source.name, source.size,
                             source.mime_type, TransferDirection.SEND)
        logger.info(f"Sending {source.name} ({source.size:,} bytes, "
                    f"{total_chunks} chunks) as {transfer_id[:8]}")

        if not await self.wait_for_buffer(token) or token.check():
            return self._cancelled(source, transfer_id, 0, total_chunks)

        self._send(encode_frame(FirstChunkFrame(
            transfer_id=transfer_id,
            file_name=source.name,
            file_type=source.mime_type,
            file_size=source.size,
        )))

        bytes_sent = 0
        for chunk_index in range(total_chunks):
            if not await self.wait_for_buffer(token):
                return self._cancelled(source, transfer_id, bytes_sent, total_chunks)

            data = await self.chunker.read_chunk(source, chunk_index)
            if token.check():
                return self._cancelled(source, transfer_id, bytes_sent, total_chunks)
            self._ensure_open()

            if self.send_chunk_headers:
                self._send(encode_frame(ChunkHeaderFrame(
                    transfer_id=transfer_id,
                    chunk_index=chunk_index,
                    chunk_size=len(data),
                )))
            self._send(data)

            bytes_sent += len(data)
            self.bytes_sent += len(data)
            percent = progress_percent(bytes_sent, source.size)
            self.registry.update(transfer_id, bytes_sent, percent)
            if on_progress:
                on_progress(percent, bytes_sent, source.size)

            if token.check():
                return self._cancelled(source, transfer_id, bytes_sent, total_chunks)
            if self.send_delay:
                await asyncio.sleep(self.send_delay)

        if not await self.wait_for_buffer(token) or token.check():
            return self._cancelled(source, transfer_id, bytes_sent, total_chunks)

        self._send(encode_frame(CompletionFrame(
            transfer_id=transfer_id,
            file_name=source.name,
            file_type=source.mime_type,
            file_size=source.size,
            total_chunks=total_chunks,
        )))

        if total_chunks == 0:
            self.registry.update(transfer_id, 0, 100)
            if on_progress:
                on_progress(100, 0, 0)

        self.registry.finish(transfer_id)
        self.files_sent += 1
        logger.info(f'File "{source.name}" sent completely.')

        return SendResult(
            transfer_id=transfer_id,
            file_name=source.name,
            file_size=source.size,
            bytes_sent=bytes_sent,
            total_chunks=total_chunks,
        )

    def _cancelled(self, source: FileSource, transfer_id: str, bytes_sent: int,
                   total_chunks: int) -> SendResult:
        self.registry.remove(transfer_id)
        logger.info(f"Transfer {transfer_id[:8]} ({source.name}) cancelled "
                    f"after {bytes_sent:,} bytes")
        return SendResult(
            transfer_id=transfer_id,
            file_name=source.name,
            file_size=source.size,
            bytes_sent=bytes_sent,
            total_chunks=total_chunks,
            cancelled=True,
        )

    def _ensure_open(self):
        if not self.channel_open:
            raise ChannelClosedError()

    def _send(self, payload):
        try:
            self.channel.send(payload)
        except Exception as e:
            raise SendFailedError(f"Failed to send on data channel: {e}")


class RetryPolicy:
    """Configurable retry policy with exponential backoff"""

    def __init__(self, max_retries: int = 3, initial_delay: float = 1.0,
                 max_delay: float = 5.0, backoff_multiplier: float = 2.0):
        self.max_retries = max_retries
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff_multiplier = backoff_multiplier

    @classmethod
    def from_config(cls, config) -> 'RetryPolicy':
        return cls(
            max_retries=config.max_retries,
            initial_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
        )

    def get_delay(self, attempt: int) -> float:
        """Get delay for given retry attempt (0-indexed)"""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, attempt: int) -> bool:
        """Check if we should retry given current attempt count"""
        return attempt < self.max_retries


class RetryingSender:
    """
    Wraps a ChunkSender and retries failed attempts while the channel stays
    open. Every attempt is a new transfer with a new id; the receiving side
    simply sees the failed one never complete.
    """

    def __init__(self, sender: ChunkSender, policy: Optional[RetryPolicy] = None):
        self.sender = sender
        self.policy = policy or RetryPolicy()

    @property
    def registry(self) -> TransferRegistry:
        return self.sender.registry

    def send(self, source: FileSource, on_progress: Optional[ProgressCallback] = None,
             token: Optional[CancelToken] = None) -> SendHandle:
        handle = SendHandle(None, token or CancelToken())
        handle.outcome = asyncio.ensure_future(self._run(source, on_progress, handle))
        return handle

    async def _run(self, source: FileSource, on_progress: Optional[ProgressCallback],
                   handle: SendHandle) -> SendResult:
        attempt = 0
        while True:
            inner = self.sender.send(source, on_progress, token=handle.token)
            handle.transfer_id = inner.transfer_id

            try:
                return await inner.outcome
            except TransferError as e:
                if handle.token.error is not None or handle.token.cancelled:
                    raise
                if isinstance(e, ChannelNotOpenError) or not self.sender.channel_open:
                    raise
                if not self.policy.should_retry(attempt):
                    raise TransferError(
                        f"Sending {source.name} failed after {self.policy.max_retries} "
                        f"retries: {e.message}"
                    ) from e

                delay = self.policy.get_delay(attempt)
                attempt += 1
                logger.warning(f"Sending {source.name} failed ({e.message}), retrying in "
                               f"{delay:.1f}s (attempt {attempt}/{self.policy.max_retries})")
                await asyncio.sleep(delay)

            if handle.token.check():
                return SendResult(
                    transfer_id=handle.transfer_id,
                    file_name=source.name,
                    file_size=source.size,
                    bytes_sent=0,
                    total_chunks=self.sender.chunker.get_chunk_count(source.size),
                    cancelled=True,
                )
