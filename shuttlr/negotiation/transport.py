"""
Peer transport glue for aiortc.

Converts between the browser-shaped JSON that travels over signaling and
aiortc's description/candidate objects, and builds the default peer
connection from the configured ICE servers.
"""

from typing import Any, Dict, List, Optional

from aiortc import (
    RTCConfiguration, RTCIceCandidate, RTCIceServer,
    RTCPeerConnection, RTCSessionDescription
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import MalformedMessageError


def create_peer_connection(ice_servers: Optional[List[str]] = None) -> RTCPeerConnection:
    """Create an RTCPeerConnection using the given STUN/TURN urls."""
    servers = [RTCIceServer(urls=url) for url in (ice_servers or [])]
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))


def description_to_message(description: RTCSessionDescription) -> Dict[str, str]:
    """RTCSessionDescription -> {"type": ..., "sdp": ...}"""
    return {'type': description.type, 'sdp': description.sdp}


def description_from_message(sdp: Any, expected_type: str) -> RTCSessionDescription:
    """
    Build a session description from a signaling payload.

    Browsers send the whole RTCSessionDescriptionInit object; a bare SDP
    string is accepted too and typed with expected_type.
    """
    if isinstance(sdp, str):
        text, sdp_type = sdp, expected_type
    elif isinstance(sdp, dict) and isinstance(sdp.get('sdp'), str):
        text, sdp_type = sdp['sdp'], sdp.get('type') or expected_type
    else:
        raise MalformedMessageError(f"Invalid {expected_type} description")

    if sdp_type != expected_type:
        raise MalformedMessageError(
            f"Expected {expected_type} description, got {sdp_type}"
        )

    try:
        return RTCSessionDescription(sdp=text, type=sdp_type)
    except ValueError as e:
        raise MalformedMessageError(f"Invalid {expected_type} description: {e}")


def candidate_from_message(data: Any) -> Optional[RTCIceCandidate]:
    """
    Parse an RTCIceCandidateInit-shaped dict.

    Returns None for the empty end-of-candidates marker.
    """
    if isinstance(data, str):
        data = {'candidate': data}
    if not isinstance(data, dict):
        raise MalformedMessageError("ICE candidate is not an object")

    line = data.get('candidate') or ''
    if not line:
        return None
    if not isinstance(line, str):
        raise MalformedMessageError("ICE candidate line is not a string")
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]

    # foundation component transport priority address port "typ" type
    if len(line.split()) < 8:
        raise MalformedMessageError(f"Invalid ICE candidate {line!r}: too few fields")

    try:
        candidate = candidate_from_sdp(line)
    except (IndexError, ValueError) as e:
        raise MalformedMessageError(f"Invalid ICE candidate {line!r}: {e}")

    candidate.sdpMid = data.get('sdpMid')
    candidate.sdpMLineIndex = data.get('sdpMLineIndex')
    return candidate


def candidate_to_message(candidate: RTCIceCandidate) -> Dict[str, Any]:
    """RTCIceCandidate -> RTCIceCandidateInit-shaped dict."""
    return {
        'candidate': 'candidate:' + candidate_to_sdp(candidate),
        'sdpMid': candidate.sdpMid,
        'sdpMLineIndex': candidate.sdpMLineIndex,
    }
