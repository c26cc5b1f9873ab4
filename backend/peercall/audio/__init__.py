"""노이즈 억제 오디오 파이프라인 패키지."""

from .config import SuppressionConfig, suppression_config
from .context import AudioContext
from .graph import ProcessedAudioTrack
from .pipeline import AudioGraphHandle, AudioPipeline
from .suppression import SpectralGateSuppressor

__all__ = [
    "AudioContext",
    "AudioGraphHandle",
    "AudioPipeline",
    "ProcessedAudioTrack",
    "SpectralGateSuppressor",
    "SuppressionConfig",
    "suppression_config",
]
