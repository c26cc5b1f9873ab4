import pytest

from peercall.errors import IceApplicationError
from peercall.webrtc.candidates import parse_candidate, serialize_candidate

HOST_CANDIDATE = "candidate:842163049 1 udp 1677729535 203.0.113.5 56143 typ srflx raddr 192.168.1.2 rport 56143 generation 0"


def test_parse_browser_candidate():
    candidate = parse_candidate(
        {"candidate": HOST_CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0}
    )

    assert candidate.ip == "203.0.113.5"
    assert candidate.port == 56143
    assert candidate.type == "srflx"
    assert candidate.relatedAddress == "192.168.1.2"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


def test_parse_nested_candidate_payload():
    candidate = parse_candidate(
        {"candidate": {"candidate": HOST_CANDIDATE, "sdpMid": "1", "sdpMLineIndex": "1"}}
    )

    assert candidate.sdpMid == "1"
    assert candidate.sdpMLineIndex == 1


def test_serialize_keeps_media_section():
    candidate = parse_candidate({"candidate": HOST_CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0})

    payload = serialize_candidate(candidate)

    assert payload["candidate"].startswith("candidate:842163049 1 udp")
    assert payload["sdpMid"] == "0"
    assert payload["sdpMLineIndex"] == 0


@pytest.mark.parametrize(
    "payload",
    [
        None,
        42,
        {},
        {"candidate": ""},
        {"candidate": "candidate:garbage"},
        {"candidate": HOST_CANDIDATE, "sdpMLineIndex": "zero"},
    ],
)
def test_malformed_candidates_rejected(payload):
    with pytest.raises(IceApplicationError):
        parse_candidate(payload)
