"""peercall 패키지.

릴레이 시그널링 서버를 통해 두 클라이언트를 연결하는 1:1 음성/영상 통화와,
송신 오디오에 적용되는 실시간 노이즈 억제 파이프라인을 제공합니다.

Modules:
    signaling: 릴레이 WebSocket 시그널링 채널
    webrtc: 통화 협상 상태 머신, 트랙 바인딩, 세션 저장소
    audio: 노이즈 억제 오디오 파이프라인
    relay: 개발용 릴레이 서버의 접속자 관리
    shared: 시그널링 메시지 DTO
"""

from .audio import AudioPipeline
from .client import CallClient
from .errors import (
    CallError,
    CallInProgressError,
    IceApplicationError,
    InvalidStateError,
    MediaAcquisitionError,
    NegotiationError,
    SuppressionModuleError,
    TrackBindingError,
    TransportLoss,
)
from .signaling import SignalingChannel
from .webrtc import (
    CallSessionStore,
    CallState,
    NegotiationStateMachine,
    TrackBindingManager,
)

__all__ = [
    "CallClient",
    "SignalingChannel",
    "NegotiationStateMachine",
    "TrackBindingManager",
    "CallSessionStore",
    "CallState",
    "AudioPipeline",
    # Errors
    "CallError",
    "CallInProgressError",
    "IceApplicationError",
    "InvalidStateError",
    "MediaAcquisitionError",
    "NegotiationError",
    "SuppressionModuleError",
    "TrackBindingError",
    "TransportLoss",
]
