"""
Unit tests for protocol.py and chunker.py - Control frames and chunk math
"""
import json

import pytest

from shuttlr.errors import FrameError, TransferError
from shuttlr.transfer import FileChunker, PathFileSource
from shuttlr.transfer.chunker import guess_mime_type
from shuttlr.transfer.protocol import (
    ChunkHeaderFrame, CompletionFrame, FirstChunkFrame, FrameKind,
    encode_frame, generate_transfer_id, parse_control_frame
)


class TestControlFrames:
    """Tests for control frame encoding and parsing"""

    def test_first_chunk_wire_format(self):
        frame = FirstChunkFrame('t1', 'a.png', 'image/png', 1234, timestamp=1700000000000)
        assert json.loads(encode_frame(frame)) == {
            'transferId': 't1',
            'fileName': 'a.png',
            'fileType': 'image/png',
            'fileSize': 1234,
            'isFirstChunk': True,
            'timestamp': 1700000000000,
        }

    def test_chunk_header_wire_format(self):
        frame = ChunkHeaderFrame('t1', 3, 16384)
        assert json.loads(encode_frame(frame)) == {
            'transferId': 't1', 'chunkIndex': 3, 'isChunk': True, 'chunkSize': 16384
        }

    def test_completion_parses_back(self):
        raw = encode_frame(CompletionFrame('t1', 'a.png', 'image/png', 1234, total_chunks=1))
        frame = parse_control_frame(raw)
        assert frame.kind == FrameKind.DONE
        assert frame.total_chunks == 1
        assert frame.file_size == 1234

    def test_timestamp_is_milliseconds(self):
        frame = FirstChunkFrame('t1', 'a', '', 0)
        assert frame.timestamp > 10 ** 12

    def test_numeric_transfer_id_coerced(self):
        frame = parse_control_frame({'transferId': 7, 'isChunk': True,
                                     'chunkIndex': 0, 'chunkSize': 1})
        assert frame.transfer_id == '7'

    @pytest.mark.parametrize('raw', [
        '{',
        '42',
        '{"isFirstChunk": true}',
        '{"isChunk": true, "transferId": "t", "chunkIndex": "zero", "chunkSize": 1}',
        '{"isFirstChunk": true, "fileSize": true}',
        '{"hello": "world"}',
    ])
    def test_malformed(self, raw):
        with pytest.raises(FrameError):
            parse_control_frame(raw)

    def test_transfer_ids_unique(self):
        assert len({generate_transfer_id() for _ in range(1000)}) == 1000


class TestFileChunker:
    """Tests for chunk arithmetic and reads"""

    def test_chunk_count(self):
        chunker = FileChunker(chunk_size=16384)
        assert chunker.get_chunk_count(0) == 0
        assert chunker.get_chunk_count(16384) == 1
        assert chunker.get_chunk_count(16385) == 2
        assert chunker.get_chunk_count(1_500_000) == 92

    def test_chunk_bounds(self):
        chunker = FileChunker(chunk_size=16384)
        assert chunker.get_chunk_bounds(0, 1_500_000) == (0, 16384)
        assert chunker.get_chunk_bounds(91, 1_500_000) == (1_490_944, 9056)

    async def test_read_chunk_from_path(self, large_sample_file, large_payload):
        chunker = FileChunker()
        source = PathFileSource(large_sample_file)
        data = await chunker.read_chunk(source, 91)
        assert data == large_payload[1_490_944:]

    async def test_short_read(self, temp_dir):
        path = temp_dir / 'shrinking.bin'
        path.write_bytes(bytes(100))
        source = PathFileSource(path)
        path.write_bytes(bytes(10))

        with pytest.raises(TransferError, match='Short read'):
            await FileChunker().read_chunk(source, 0)

    def test_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            PathFileSource(temp_dir / 'missing.bin')

    def test_mime_type(self, sample_file):
        assert PathFileSource(sample_file).mime_type == 'text/plain'
        assert guess_mime_type('archive.unknownext') == 'application/octet-stream'
