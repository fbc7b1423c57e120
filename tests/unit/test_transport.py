"""
Unit tests for transport.py - aiortc description/candidate conversion
"""
import pytest
from aiortc import RTCPeerConnection, RTCSessionDescription

from shuttlr.errors import MalformedMessageError
from shuttlr.negotiation.transport import (
    candidate_from_message, candidate_to_message, create_peer_connection,
    description_from_message, description_to_message
)

from tests.fixtures.fakes import FAKE_SDP, SRFLX_CANDIDATE


class TestDescriptions:
    """Tests for session description conversion"""

    def test_to_message(self):
        message = description_to_message(RTCSessionDescription(sdp=FAKE_SDP, type='offer'))
        assert message == {'type': 'offer', 'sdp': FAKE_SDP}

    def test_from_dict_and_string(self):
        assert description_from_message({'type': 'answer', 'sdp': FAKE_SDP}, 'answer').type == 'answer'
        assert description_from_message(FAKE_SDP, 'offer').sdp == FAKE_SDP

    @pytest.mark.parametrize('payload', [None, 42, {'type': 'offer'}, {'type': 'answer', 'sdp': 'v=0'}])
    def test_invalid(self, payload):
        with pytest.raises(MalformedMessageError):
            description_from_message(payload, 'offer')


class TestCandidates:
    """Tests for ICE candidate conversion"""

    def test_round_trip(self):
        candidate = candidate_from_message(SRFLX_CANDIDATE)
        assert candidate.ip == '203.0.113.7'
        assert candidate.port == 61000
        assert candidate.type == 'srflx'
        assert candidate.relatedAddress == '192.168.1.10'

        message = candidate_to_message(candidate)
        assert message['candidate'].startswith('candidate:2 1 udp')
        assert message['sdpMid'] == '0'
        assert message['sdpMLineIndex'] == 0

    def test_end_of_candidates(self):
        assert candidate_from_message({'candidate': '', 'sdpMid': '0'}) is None

    def test_garbage(self):
        with pytest.raises(MalformedMessageError):
            candidate_from_message({'candidate': 'candidate:garbage'})

    @pytest.mark.parametrize('line', [
        'candidate:1 1 udp 2130706431 192.168.1.10 54400 typ',
        'candidate:1 1 udp high 192.168.1.10 54400 typ host',
        'candidate:1 1 udp 2130706431 192.168.1.10 port typ host',
    ])
    def test_truncated_or_invalid_fields(self, line):
        with pytest.raises(MalformedMessageError):
            candidate_from_message({'candidate': line, 'sdpMid': '0'})

    def test_non_string_line(self):
        with pytest.raises(MalformedMessageError):
            candidate_from_message({'candidate': 42})


class TestPeerConnectionFactory:
    """Tests for create_peer_connection"""

    async def test_creates_aiortc_connection(self):
        pc = create_peer_connection(['stun:stun.example.org:3478'])
        try:
            assert isinstance(pc, RTCPeerConnection)
            assert pc.signalingState == 'stable'
        finally:
            await pc.close()
