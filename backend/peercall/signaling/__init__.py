"""시그널링 모듈.

릴레이 서버와의 WebSocket 메시지 전송을 담당합니다.
"""

from .channel import SignalingChannel
from .config import signaling_config, SignalingConfig

__all__ = ["SignalingChannel", "signaling_config", "SignalingConfig"]
