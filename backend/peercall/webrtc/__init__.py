"""WebRTC 모듈.

1:1 통화 협상, 송신 트랙 바인딩, 통화 세션 저장소, 로컬 미디어 획득 기능을 제공합니다.

Classes:
    NegotiationStateMachine: offer/answer/ICE 교환 상태 머신
    TrackBindingManager: 송신 트랙과 sender 일치
    CallSessionStore: 단일 통화 세션 및 접속자 로스터
    MediaPlayerAcquirer: aiortc MediaPlayer 기반 캡처 장치 획득

Config:
    ice_config: ICE 서버 설정
    connection_config: 협상 관련 설정
    media_config: 캡처 장치 설정
"""

from .binding import BindingResult, TrackBindingManager
from .config import (
    ConnectionConfig,
    ICEServerConfig,
    MediaConfig,
    build_rtc_configuration,
    connection_config,
    ice_config,
    media_config,
)
from .media import MediaConstraints, MediaPlayerAcquirer, MediaStream
from .negotiation import NegotiationStateMachine
from .session_store import (
    CallSession,
    CallSessionStore,
    CallState,
    NegotiationContext,
    Peer,
)

__all__ = [
    # Classes
    "NegotiationStateMachine",
    "TrackBindingManager",
    "BindingResult",
    "CallSessionStore",
    "CallSession",
    "CallState",
    "NegotiationContext",
    "Peer",
    "MediaConstraints",
    "MediaPlayerAcquirer",
    "MediaStream",
    # Config
    "ice_config",
    "connection_config",
    "media_config",
    "ICEServerConfig",
    "ConnectionConfig",
    "MediaConfig",
    "build_rtc_configuration",
]
