"""시그널링 모듈 설정.

릴레이 서버 주소와 재연결 정책.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 채널 설정."""

    # 릴레이 WebSocket URL
    SIGNALING_URL: str = os.getenv("SIGNALING_URL", "ws://localhost:8000/ws")

    # 사용자 표시 이름 (없으면 클라이언트가 임의 생성)
    USER_ID: Optional[str] = os.getenv("USER_ID")

    # 재연결 대기 시간 (초)
    RECONNECT_DELAY: float = float(os.getenv("SIGNALING_RECONNECT_DELAY", "2.0"))

    # 최대 재연결 시도 횟수
    MAX_RECONNECT_ATTEMPTS: int = int(os.getenv("SIGNALING_MAX_RECONNECT_ATTEMPTS", "5"))

    # WebSocket ping 간격 (초)
    PING_INTERVAL: float = 20.0

    # 연결 후 registered 이벤트 대기 시간 (초)
    REGISTER_TIMEOUT: float = 10.0


signaling_config = SignalingConfig()

logger.info(f"[Signaling Config] 릴레이 URL: {signaling_config.SIGNALING_URL}")
