"""WebRTC 모듈 설정.

STUN 서버, 미디어 캡처 제약 조건, 협상 관련 상수와 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv
from aiortc import RTCConfiguration, RTCIceServer

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정.

    TURN 릴레이는 지원하지 않음 (STUN만 사용).
    """

    # 커스텀 STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def stun_urls(self) -> List[str]:
        """커스텀 STUN 서버를 앞에 둔 전체 STUN URL 목록."""
        urls = [self.STUN_SERVER_URL] if self.STUN_SERVER_URL else []
        return urls + list(self.DEFAULT_STUN_SERVERS)


# ============================================================
# 협상 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """피어 연결/협상 관련 설정."""

    # 컨텍스트가 생기기 전에 도착한 ICE candidate 최대 보관 수
    ORPHAN_CANDIDATE_LIMIT: int = 64

    # 수신 통화 수락 여부 결정 대기 시간 (초)
    DECISION_TIMEOUT: float = float(os.getenv("CALL_DECISION_TIMEOUT", "30"))

    # 트랙 교체 후 이전 트랙을 멈추기까지 대기 시간 (초)
    # sender가 이전 트랙의 다음 프레임을 기다리는 중일 수 있음
    TRACK_SWAP_GRACE: float = 0.1

    # 재협상 answer 대기 시간 (초). 지나면 connected로 복귀하고 다음 요청 때 다시 offer
    RENEGOTIATION_TIMEOUT: float = float(os.getenv("RENEGOTIATION_TIMEOUT", "10"))


# ============================================================
# 미디어 캡처 설정
# ============================================================

@dataclass(frozen=True)
class MediaConfig:
    """로컬 캡처 장치 및 제약 조건 설정."""

    # 오디오 입력 (ffmpeg 장치 이름/포맷)
    AUDIO_INPUT_DEVICE: str = os.getenv("AUDIO_INPUT_DEVICE", "default")
    AUDIO_INPUT_FORMAT: str = os.getenv("AUDIO_INPUT_FORMAT", "pulse")

    # 비디오 입력
    VIDEO_INPUT_DEVICE: str = os.getenv("VIDEO_INPUT_DEVICE", "/dev/video0")
    VIDEO_INPUT_FORMAT: str = os.getenv("VIDEO_INPUT_FORMAT", "v4l2")
    VIDEO_ENABLED: bool = field(
        default_factory=lambda: _parse_bool(os.getenv("VIDEO_ENABLED"), default=True)
    )

    # 비디오 해상도 (ideal)
    VIDEO_WIDTH: int = 1280
    VIDEO_HEIGHT: int = 720

    # 에코 캔슬링 / 자동 이득 제어는 유지, 노이즈 억제는 자체 모듈이 담당
    ECHO_CANCELLATION: bool = True
    AUTO_GAIN_CONTROL: bool = True
    NOISE_SUPPRESSION: bool = False


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
media_config = MediaConfig()


def build_rtc_configuration(config: ICEServerConfig = ice_config) -> RTCConfiguration:
    """ICE 설정으로 RTCConfiguration을 생성합니다."""
    ice_servers = [RTCIceServer(urls=[url]) for url in config.stun_urls]
    return RTCConfiguration(iceServers=ice_servers)


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(
    f"[WebRTC Config] 오디오 입력: {media_config.AUDIO_INPUT_FORMAT}:{media_config.AUDIO_INPUT_DEVICE}, "
    f"비디오: {media_config.VIDEO_ENABLED}"
)
