"""통화 오류 분류 모듈.

통화 협상, 오디오 파이프라인, 시그널링 전송 단계에서 발생하는 예외를 정의합니다.

오류 정책:
    - 선택 기능(노이즈 억제) 실패는 통화를 중단하지 않음
    - 필수 단계(미디어 획득, SDP 교환) 실패는 통화를 중단하고
      로컬 사용자와 (알려진 경우) 원격 피어에게 통지함

Classes:
    CallError: 모든 통화 오류의 기반 클래스
    MediaAcquisitionError: 카메라/마이크 획득 실패
    InvalidStateError: 잘못된 상태에서의 작업 시도
    CallInProgressError: 전이 진행 중 새 통화 시도
    SuppressionModuleError: 노이즈 억제 모듈 로드 실패
    NegotiationError: SDP 생성/설정 실패
    IceApplicationError: 잘못되었거나 늦은 ICE candidate
    TransportLoss: 시그널링 또는 연결 수준 단절
    TrackBindingError: 트랙 교체/추가 실패
"""

from typing import Optional


class CallError(Exception):
    """통화 관련 오류의 기반 클래스.

    Attributes:
        user_facing (bool): 사용자에게 알려야 하는 오류인지 여부
        fatal (bool): 통화를 중단시키는 오류인지 여부
    """

    user_facing = False
    fatal = False

    def __init__(self, message: str, *, peer_id: Optional[str] = None):
        super().__init__(message)
        self.peer_id = peer_id


class MediaAcquisitionError(CallError):
    """카메라/마이크 접근 거부 또는 장치 없음. 시그널링 전에 통화 중단."""

    user_facing = True
    fatal = True


class InvalidStateError(CallError):
    """현재 상태에서 허용되지 않는 작업. 로그만 남기고 작업은 버림."""


class CallInProgressError(InvalidStateError):
    """다른 전이가 진행 중일 때의 통화 시도. 대기열에 넣지 않고 즉시 실패."""


class SuppressionModuleError(CallError):
    """노이즈 억제 모듈 로드 실패. 파이프라인은 passthrough로 동작."""


class NegotiationError(CallError):
    """SDP 생성/설정 실패. 통화 중단 후 피어에게 call-failed 전송."""

    user_facing = True
    fatal = True


class IceApplicationError(CallError):
    """잘못된 형식이거나 적용 불가능한 ICE candidate. 버려지며 치명적이지 않음."""


class TransportLoss(CallError):
    """시그널링 채널 또는 피어 연결 단절. 통화 해제를 강제함."""

    user_facing = True
    fatal = True


class TrackBindingError(CallError):
    """송신 트랙 교체/추가 실패. 보고만 되고 예외로 전파되지 않음."""
