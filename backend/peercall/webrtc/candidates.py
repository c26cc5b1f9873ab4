"""ICE candidate 변환 유틸리티.

시그널링 페이로드(브라우저 RTCIceCandidateInit 형식)와 aiortc RTCIceCandidate 간 변환.
"""

from typing import Any

from aiortc import RTCIceCandidate
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import IceApplicationError


def parse_candidate(payload: Any) -> RTCIceCandidate:
    """시그널링 페이로드를 RTCIceCandidate로 변환합니다.

    `{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}` 형식과
    한 번 더 감싸진 `{"candidate": {...}}` 형식을 모두 허용합니다.

    Raises:
        IceApplicationError: 형식이 잘못된 경우
    """
    if isinstance(payload, dict) and isinstance(payload.get("candidate"), dict):
        payload = payload["candidate"]

    if isinstance(payload, str):
        payload = {"candidate": payload}

    if not isinstance(payload, dict):
        raise IceApplicationError(f"candidate 형식 오류: {type(payload).__name__}")

    candidate_str = payload.get("candidate")
    if not isinstance(candidate_str, str) or not candidate_str.strip():
        raise IceApplicationError("candidate 문자열 없음")

    candidate_str = candidate_str.strip()
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]

    try:
        candidate = candidate_from_sdp(candidate_str)
    except (AssertionError, ValueError, IndexError, KeyError) as e:
        raise IceApplicationError(f"candidate 파싱 실패: {e}") from e

    sdp_mline_index = payload.get("sdpMLineIndex")
    if sdp_mline_index is not None:
        try:
            sdp_mline_index = int(sdp_mline_index)
        except (TypeError, ValueError) as e:
            raise IceApplicationError(f"sdpMLineIndex 형식 오류: {sdp_mline_index!r}") from e

    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = sdp_mline_index
    return candidate


def serialize_candidate(candidate: RTCIceCandidate) -> dict:
    """RTCIceCandidate를 시그널링 페이로드로 변환합니다."""
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }
