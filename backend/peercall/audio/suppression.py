"""스펙트럴 게이트 노이즈 억제기.

프레임 단위 FFT로 채널별 노이즈 스펙트럼을 추적하고, 노이즈 대비 신호가 작은
주파수 대역의 이득을 낮춥니다. 오디오 컨텍스트 워커 스레드에서 호출됩니다.

노이즈 추정:
    - 최소값 추적: 현재 크기가 추정치보다 작으면 즉시 따라 내려가고,
      크면 adapt_rate 비율로 천천히 올라감
    - 페이로드(.npy 노이즈 프로파일)가 있으면 초기 추정치로 사용
"""

import io
import logging
from typing import Dict, Optional, Tuple

import numpy as np

from .config import suppression_config

logger = logging.getLogger(__name__)

_EPS = 1e-10


class SpectralGateSuppressor:
    """채널별 스펙트럴 게이트.

    Attributes:
        sample_rate (int): 입력 샘플레이트
        max_channels (int): 처리할 최대 채널 수 (나머지는 통과)
        strength (float): 노이즈 차감 강도
        gain_floor (float): 최소 이득 (0~1)
        adapt_rate (float): 노이즈 추정 상승 속도
    """

    def __init__(
        self,
        payload: Optional[bytes] = None,
        sample_rate: int = 48000,
        max_channels: int = 2,
        strength: Optional[float] = None,
        gain_floor: Optional[float] = None,
        adapt_rate: Optional[float] = None,
    ):
        strength = suppression_config.REDUCTION_STRENGTH if strength is None else strength
        gain_floor = suppression_config.GAIN_FLOOR if gain_floor is None else gain_floor
        adapt_rate = suppression_config.NOISE_ADAPT_RATE if adapt_rate is None else adapt_rate

        if max_channels < 1:
            raise ValueError("max_channels는 1 이상이어야 함")
        if not 0.0 <= gain_floor <= 1.0:
            raise ValueError("gain_floor는 0~1 범위여야 함")

        self.sample_rate = sample_rate
        self.max_channels = max_channels
        self.strength = strength
        self.gain_floor = gain_floor
        self.adapt_rate = adapt_rate

        self._profile = self._load_profile(payload) if payload else None
        self._noise: Dict[Tuple[int, int], np.ndarray] = {}

    @staticmethod
    def _load_profile(payload: bytes) -> np.ndarray:
        profile = np.load(io.BytesIO(payload), allow_pickle=False)
        profile = np.asarray(profile, dtype=np.float32).ravel()
        if profile.size == 0 or not np.all(np.isfinite(profile)):
            raise ValueError("노이즈 프로파일이 비어있거나 유효하지 않음")
        logger.info(f"[Suppressor] 노이즈 프로파일 로드 ({profile.size} bins)")
        return profile

    def reset(self) -> None:
        self._noise.clear()

    def process(self, samples: np.ndarray) -> np.ndarray:
        """(channels, n) float32 샘플을 처리합니다.

        Returns:
            np.ndarray: 같은 shape의 처리된 샘플 ([-1, 1] 범위)
        """
        if samples.ndim != 2:
            raise ValueError(f"(channels, samples) 형태가 필요함: {samples.shape}")

        out = samples.astype(np.float32, copy=True)
        for ch in range(min(samples.shape[0], self.max_channels)):
            out[ch] = self._gate(ch, out[ch])
        return np.clip(out, -1.0, 1.0)

    def _gate(self, channel: int, signal: np.ndarray) -> np.ndarray:
        n = signal.shape[0]
        if n == 0:
            return signal

        spectrum = np.fft.rfft(signal)
        magnitude = np.abs(spectrum)
        noise = self._track_noise(channel, magnitude)

        gain = 1.0 - self.strength * noise / (magnitude + _EPS)
        gain = np.clip(gain, self.gain_floor, 1.0)
        return np.fft.irfft(spectrum * gain, n=n).astype(np.float32)

    def _track_noise(self, channel: int, magnitude: np.ndarray) -> np.ndarray:
        key = (channel, magnitude.shape[0])
        noise = self._noise.get(key)
        if noise is None:
            if self._profile is not None and self._profile.shape[0] == magnitude.shape[0]:
                noise = self._profile.copy()
            else:
                noise = magnitude.copy()
        else:
            noise = np.minimum(magnitude, noise * (1.0 + self.adapt_rate))
            # 완전 무음 후에도 추정치가 다시 올라갈 수 있도록
            noise = np.maximum(noise, _EPS)
        self._noise[key] = noise
        return noise
