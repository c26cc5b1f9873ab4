"""오디오 파이프라인 설정.

노이즈 억제 모듈 위치, 바이너리 페이로드, 억제 강도 등 환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


@dataclass(frozen=True)
class SuppressionConfig:
    """노이즈 억제 모듈 설정."""

    # 억제 사용 여부 (False면 항상 원본 트랙 사용)
    ENABLED: bool = field(
        default_factory=lambda: _parse_bool(os.getenv("SUPPRESSION_ENABLED"), default=True)
    )

    # 억제기 팩토리 위치 ("패키지.모듈:이름")
    MODULE: str = os.getenv(
        "SUPPRESSOR_MODULE", "peercall.audio.suppression:SpectralGateSuppressor"
    )

    # 억제기 바이너리 페이로드 (노이즈 프로파일 .npy 등, 선택)
    PAYLOAD_PATH: Optional[str] = os.getenv("SUPPRESSOR_PAYLOAD")

    # 처리할 최대 채널 수 (초과 채널은 그대로 통과)
    MAX_CHANNELS: int = 2

    # 오디오 컨텍스트 샘플레이트 (Hz)
    SAMPLE_RATE: int = 48000

    # 스펙트럴 게이트 파라미터
    REDUCTION_STRENGTH: float = float(os.getenv("SUPPRESSOR_STRENGTH", "1.5"))
    GAIN_FLOOR: float = float(os.getenv("SUPPRESSOR_GAIN_FLOOR", "0.1"))
    NOISE_ADAPT_RATE: float = 0.02


suppression_config = SuppressionConfig()

logger.info(
    f"[Audio Config] 노이즈 억제: {suppression_config.ENABLED}, 모듈: {suppression_config.MODULE}"
)
if suppression_config.PAYLOAD_PATH:
    logger.info(f"[Audio Config] 억제기 페이로드: {suppression_config.PAYLOAD_PATH}")
