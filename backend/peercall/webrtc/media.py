"""로컬 미디어 캡처 모듈.

aiortc에는 브라우저의 MediaStream 개념이 없으므로 캡처 트랙을 묶는
MediaStream과, 제약 조건에 따라 캡처 장치를 여는 획득자(acquirer)를 제공합니다.

Classes:
    AudioConstraints / VideoConstraints / MediaConstraints: 캡처 제약 조건
    MediaStream: 트랙 묶음
    MediaPlayerAcquirer: ffmpeg 장치(MediaPlayer) 기반 기본 획득자

Note:
    - 획득자는 외부 협력자이며, `MediaConstraints`를 받아 `MediaStream`을
      반환하는 비동기 callable이면 무엇이든 사용 가능
    - 노이즈 억제는 자체 모듈이 담당하므로 noiseSuppression은 항상 False로 요청
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer

from ..errors import MediaAcquisitionError
from .config import media_config

logger = logging.getLogger(__name__)


@dataclass
class AudioConstraints:
    device_id: Optional[str] = None
    echo_cancellation: bool = media_config.ECHO_CANCELLATION
    noise_suppression: bool = media_config.NOISE_SUPPRESSION
    auto_gain_control: bool = media_config.AUTO_GAIN_CONTROL

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "echoCancellation": self.echo_cancellation,
            "noiseSuppression": self.noise_suppression,
            "autoGainControl": self.auto_gain_control,
        }


@dataclass
class VideoConstraints:
    device_id: Optional[str] = None
    width: int = media_config.VIDEO_WIDTH
    height: int = media_config.VIDEO_HEIGHT

    def to_dict(self) -> dict:
        return {
            "deviceId": self.device_id,
            "width": {"ideal": self.width},
            "height": {"ideal": self.height},
        }


@dataclass
class MediaConstraints:
    """getUserMedia 형식의 캡처 제약 조건."""

    audio: Optional[AudioConstraints] = field(default_factory=AudioConstraints)
    video: Optional[VideoConstraints] = field(default_factory=VideoConstraints)

    @classmethod
    def for_devices(
        cls,
        audio_device_id: Optional[str] = None,
        video_device_id: Optional[str] = None,
        video: bool = media_config.VIDEO_ENABLED,
    ) -> "MediaConstraints":
        return cls(
            audio=AudioConstraints(device_id=audio_device_id),
            video=VideoConstraints(device_id=video_device_id) if video else None,
        )

    def to_dict(self) -> dict:
        return {
            "audio": self.audio.to_dict() if self.audio else False,
            "video": self.video.to_dict() if self.video else False,
        }


class MediaStream:
    """캡처 트랙 묶음.

    Attributes:
        id (str): 스트림 ID
        sources (List[Any]): 트랙을 살려두기 위해 보관하는 캡처 소스 (MediaPlayer 등)
    """

    def __init__(
        self,
        tracks: Optional[List[MediaStreamTrack]] = None,
        stream_id: Optional[str] = None,
        sources: Optional[List[Any]] = None,
    ):
        self.id = stream_id or str(uuid.uuid4())
        self._tracks: List[MediaStreamTrack] = list(tracks or [])
        self.sources: List[Any] = list(sources or [])

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    @property
    def audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    @property
    def video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def add_track(self, track: MediaStreamTrack) -> None:
        if track not in self._tracks:
            self._tracks.append(track)

    def remove_track(self, track: MediaStreamTrack) -> None:
        if track in self._tracks:
            self._tracks.remove(track)

    def stop(self) -> None:
        """모든 트랙을 중지합니다 (캡처 장치 해제)."""
        for track in self._tracks:
            if track.readyState != "ended":
                track.stop()

    def __repr__(self) -> str:
        kinds = ",".join(t.kind for t in self._tracks)
        return f"MediaStream(id={self.id[:8]}, tracks=[{kinds}])"


MediaAcquirer = Callable[[MediaConstraints], Awaitable[MediaStream]]


class MediaPlayerAcquirer:
    """aiortc MediaPlayer로 캡처 장치를 여는 기본 획득자.

    ffmpeg 입력 포맷(pulse, alsa, v4l2, avfoundation 등)과 장치 이름은
    MediaConfig에서 가져오며, 제약 조건의 deviceId가 있으면 그것을 우선합니다.
    포맷이 "file"이면 장치 이름을 미디어 파일 경로로 취급합니다.
    """

    def __init__(
        self,
        audio_format: str = media_config.AUDIO_INPUT_FORMAT,
        audio_device: str = media_config.AUDIO_INPUT_DEVICE,
        video_format: str = media_config.VIDEO_INPUT_FORMAT,
        video_device: str = media_config.VIDEO_INPUT_DEVICE,
    ):
        self.audio_format = audio_format
        self.audio_device = audio_device
        self.video_format = video_format
        self.video_device = video_device

    async def __call__(self, constraints: MediaConstraints) -> MediaStream:
        loop = asyncio.get_running_loop()
        # MediaPlayer opens the device synchronously
        return await loop.run_in_executor(None, self._open, constraints)

    def _open(self, constraints: MediaConstraints) -> MediaStream:
        tracks: List[MediaStreamTrack] = []
        players: List[MediaPlayer] = []

        try:
            if constraints.audio is not None:
                device = constraints.audio.device_id or self.audio_device
                player = self._create_player(device, self.audio_format)
                players.append(player)
                if player.audio is None:
                    raise MediaAcquisitionError(f"오디오 트랙 없음: {device}")
                tracks.append(player.audio)

            if constraints.video is not None:
                device = constraints.video.device_id or self.video_device
                size = f"{constraints.video.width}x{constraints.video.height}"
                player = self._create_player(device, self.video_format, {"video_size": size})
                players.append(player)
                if player.video is not None:
                    tracks.append(player.video)
                else:
                    logger.warning(f"[Media] 비디오 트랙 없음: {device}")
        except MediaAcquisitionError:
            self._release(tracks)
            raise
        except Exception as e:
            self._release(tracks)
            raise MediaAcquisitionError(f"캡처 장치 열기 실패: {e}") from e

        logger.info(
            f"[Media] 로컬 미디어 획득: {[t.kind for t in tracks]} "
            f"(constraints={constraints.to_dict()})"
        )
        return MediaStream(tracks, sources=players)

    @staticmethod
    def _create_player(device: str, fmt: str, options: Optional[dict] = None) -> MediaPlayer:
        if fmt in ("", "file"):
            return MediaPlayer(device)
        return MediaPlayer(device, format=fmt, options=options or {})

    @staticmethod
    def _release(tracks: List[MediaStreamTrack]) -> None:
        for track in tracks:
            track.stop()
