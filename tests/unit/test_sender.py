"""
Unit tests for sender.py - Chunk sender, cancellation and retry
"""
import asyncio

import pytest

from shuttlr.errors import (
    BufferTimeoutError, ChannelClosedError, ChannelNotOpenError,
    ReadTimeoutError, SendFailedError, TransferError
)
from shuttlr.transfer import (
    BytesFileSource, ChunkReceiver, ChunkSender, PathFileSource,
    RetryingSender, RetryPolicy, TransferStatus
)
from shuttlr.transfer.sender import progress_percent

from tests.fixtures.fakes import FakeDataChannel


def make_sender(channel, registry=None, **kwargs):
    kwargs.setdefault('send_delay', 0)
    kwargs.setdefault('buffer_poll_interval', 0.001)
    return ChunkSender(channel, registry=registry, **kwargs)


class FlakyChannel(FakeDataChannel):
    """Open channel whose sends fail for the listed call numbers (1-based)."""

    def __init__(self, fail_calls):
        super().__init__(ready_state='open')
        self.fail_calls = set(fail_calls)
        self.calls = 0

    def send(self, data):
        self.calls += 1
        if self.calls in self.fail_calls:
            raise ConnectionError("SCTP association lost")
        super().send(data)


class TestProgressPercent:
    """Tests for progress_percent"""

    def test_never_100_before_last_byte(self):
        assert progress_percent(999_999, 1_000_000) == 99
        assert progress_percent(1_000_000, 1_000_000) == 100

    def test_rounding(self):
        assert progress_percent(16384, 1_500_000) == 1
        assert progress_percent(750_000, 1_500_000) == 50

    def test_empty_file(self):
        assert progress_percent(0, 0) == 100


class TestChunkSender:
    """Tests for ChunkSender frame sequence and progress"""

    async def test_frame_sequence(self, open_channel, registry):
        sender = make_sender(open_channel, registry)
        source = BytesFileSource('hello.txt', b'x' * 40000)

        result = await sender.send(source).outcome

        frames = open_channel.sent
        assert len(frames) == 1 + 3 * 2 + 1
        first, *middle, last = open_channel.text_frames
        assert first['isFirstChunk'] is True
        assert first['fileName'] == 'hello.txt'
        assert first['fileType'] == 'text/plain'
        assert first['fileSize'] == 40000
        assert [h['chunkIndex'] for h in middle] == [0, 1, 2]
        assert [h['chunkSize'] for h in middle] == [16384, 16384, 7232]
        assert last['done'] is True
        assert last['totalChunks'] == 3
        assert {f['transferId'] for f in open_channel.text_frames} == {result.transfer_id}

        assert result.bytes_sent == 40000
        assert not result.cancelled
        assert registry.get(result.transfer_id) is None
        assert registry.completed == 1

    async def test_large_file_chunking(self, open_channel, large_sample_file, large_payload):
        sender = make_sender(open_channel)
        result = await sender.send(PathFileSource(large_sample_file)).outcome

        chunks = open_channel.binary_frames
        assert result.total_chunks == 92
        assert len(chunks) == 92
        assert len(chunks[-1]) == 9056
        assert b''.join(chunks) == large_payload

    async def test_progress_monotonic_and_100_only_at_end(self, open_channel):
        sender = make_sender(open_channel)
        reports = []

        await sender.send(
            BytesFileSource('data.bin', bytes(200_000)),
            lambda percent, sent, total: reports.append(percent),
        ).outcome

        assert reports == sorted(reports)
        assert reports[-1] == 100
        assert reports.count(100) == 1
        assert len(reports) == 13

    async def test_empty_file(self, open_channel):
        sender = make_sender(open_channel)
        reports = []

        result = await sender.send(
            BytesFileSource('empty.txt', b''),
            lambda percent, sent, total: reports.append(percent),
        ).outcome

        assert result.total_chunks == 0
        assert reports == [100]
        assert [f.get('isFirstChunk') or f.get('done') for f in open_channel.text_frames] == [True, True]

    async def test_channel_not_open(self, registry):
        channel = FakeDataChannel(ready_state='connecting')
        handle = make_sender(channel, registry).send(BytesFileSource('a.txt', b'abc'))

        with pytest.raises(ChannelNotOpenError):
            await handle.outcome
        assert channel.sent == []
        assert len(registry) == 0

    async def test_buffer_timeout(self, open_channel, registry):
        open_channel.bufferedAmount = 2 * 1024 * 1024
        sender = make_sender(open_channel, registry, buffer_timeout=0.05)

        handle = sender.send(BytesFileSource('a.bin', bytes(100)))
        with pytest.raises(BufferTimeoutError):
            await handle.outcome

        assert open_channel.sent == []
        assert registry.failed == 1

    async def test_waits_for_buffer_to_drain(self, open_channel):
        open_channel.bufferedAmount = 2 * 1024 * 1024
        sender = make_sender(open_channel, buffer_timeout=1.0)
        handle = sender.send(BytesFileSource('a.bin', bytes(100)))

        await asyncio.sleep(0.02)
        assert open_channel.sent == []
        open_channel.bufferedAmount = 0

        result = await handle.outcome
        assert result.bytes_sent == 100

    async def test_channel_closes_mid_transfer(self, open_channel, registry):
        sender = make_sender(open_channel, registry)

        def on_progress(percent, sent, total):
            open_channel.readyState = 'closing'

        handle = sender.send(BytesFileSource('a.bin', bytes(50_000)), on_progress)
        with pytest.raises(ChannelClosedError):
            await handle.outcome

        assert len(open_channel.binary_frames) == 1
        assert registry.failed == 1

    async def test_send_failure_wrapped(self, open_channel):
        open_channel.fail_on_send = OSError("broken pipe")
        handle = make_sender(open_channel).send(BytesFileSource('a.bin', bytes(10)))

        with pytest.raises(SendFailedError, match="broken pipe"):
            await handle.outcome

    async def test_read_timeout(self, open_channel):
        class StuckSource(BytesFileSource):
            async def read(self, offset, length):
                await asyncio.sleep(10)

        sender = make_sender(open_channel, read_timeout=0.01)
        with pytest.raises(ReadTimeoutError):
            await sender.send(StuckSource('stuck.bin', bytes(10))).outcome

    async def test_unique_transfer_ids(self, open_channel):
        sender = make_sender(open_channel)
        first = await sender.send(BytesFileSource('a', b'1')).outcome
        second = await sender.send(BytesFileSource('a', b'1')).outcome
        assert first.transfer_id != second.transfer_id


class TestCancellation:
    """Tests for cooperative cancellation"""

    async def test_cancel_after_chunk_k(self, open_channel, registry):
        sender = make_sender(open_channel, registry)
        reports = []

        def on_progress(percent, sent, total):
            reports.append(percent)
            if len(reports) == 3:
                handle.cancel()

        handle = sender.send(BytesFileSource('big.bin', bytes(200_000)), on_progress)
        result = await handle.outcome

        assert result.cancelled
        assert len(open_channel.binary_frames) == 3
        assert not any(f.get('done') for f in open_channel.text_frames)
        assert len(reports) == 3
        assert len(registry) == 0
        assert registry.completed == 0
        assert registry.failed == 0

    async def test_cancel_while_waiting_for_buffer(self, open_channel):
        open_channel.bufferedAmount = 2 * 1024 * 1024
        sender = make_sender(open_channel, buffer_timeout=5.0)
        handle = sender.send(BytesFileSource('a.bin', bytes(100)))

        await asyncio.sleep(0.01)
        handle.cancel()
        result = await handle.outcome

        assert result.cancelled
        assert open_channel.sent == []

    async def test_abort_fails_transfer(self, open_channel, registry):
        sender = make_sender(open_channel, registry)

        def on_progress(percent, sent, total):
            handle.abort(TransferError("Peer left the room"))

        handle = sender.send(BytesFileSource('a.bin', bytes(50_000)), on_progress)
        with pytest.raises(TransferError, match="Peer left the room"):
            await handle.outcome
        assert registry.failed == 1


class TestRetryPolicy:
    """Tests for RetryPolicy"""

    def test_backoff_capped(self):
        policy = RetryPolicy(max_retries=5, initial_delay=1.0, max_delay=5.0)
        assert [policy.get_delay(n) for n in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_should_retry(self):
        policy = RetryPolicy(max_retries=3)
        assert policy.should_retry(2)
        assert not policy.should_retry(3)


class TestRetryingSender:
    """Tests for RetryingSender"""

    def policy(self, retries=3):
        return RetryPolicy(max_retries=retries, initial_delay=0.001, max_delay=0.005)

    async def test_retry_succeeds_with_new_transfer_id(self, registry):
        channel = FlakyChannel(fail_calls={3})
        sender = RetryingSender(make_sender(channel, registry), self.policy())

        result = await sender.send(BytesFileSource('a.bin', bytes(40_000))).outcome

        first_frames = [f for f in channel.text_frames if f.get('isFirstChunk')]
        assert len(first_frames) == 2
        assert first_frames[0]['transferId'] != first_frames[1]['transferId']
        assert result.transfer_id == first_frames[1]['transferId']
        assert registry.failed == 1
        assert registry.completed == 1

    async def test_retries_exhausted(self):
        channel = FlakyChannel(fail_calls=range(1, 100))
        sender = RetryingSender(make_sender(channel), self.policy(retries=3))

        with pytest.raises(TransferError, match="failed after 3 retries"):
            await sender.send(BytesFileSource('a.bin', bytes(10))).outcome
        assert channel.calls == 4

    async def test_no_retry_when_channel_closed(self, open_channel):
        sender = RetryingSender(make_sender(open_channel), self.policy())

        def on_progress(percent, sent, total):
            open_channel.readyState = 'closed'

        handle = sender.send(BytesFileSource('a.bin', bytes(50_000)), on_progress)
        with pytest.raises(ChannelClosedError):
            await handle.outcome
        assert len([f for f in open_channel.text_frames if f.get('isFirstChunk')]) == 1

    async def test_cancel_through_retrying_handle(self, open_channel):
        sender = RetryingSender(make_sender(open_channel), self.policy())

        def on_progress(percent, sent, total):
            handle.cancel()

        handle = sender.send(BytesFileSource('a.bin', bytes(50_000)), on_progress)
        result = await handle.outcome
        assert result.cancelled
        assert handle.transfer_id == result.transfer_id


class TestSendReceiveRoundTrip:
    """Sender frames fed straight into a receiver"""

    async def test_reassembly_is_byte_identical(self, large_payload):
        channel = FakeDataChannel(ready_state='open')
        completed = []
        receiver = ChunkReceiver(on_complete=lambda data, name, mime: completed.append((data, name, mime)))
        remote = FakeDataChannel(ready_state='open')
        remote.on('message', receiver.on_frame)
        channel.remote = remote

        await make_sender(channel).send(BytesFileSource('blob.bin', large_payload)).outcome

        assert len(completed) == 1
        data, name, mime = completed[0]
        assert data == large_payload
        assert len(data) == 1_500_000
        assert name == 'blob.bin'
        assert mime == 'application/octet-stream'
