"""오디오 처리 그래프 모듈.

원본 오디오 트랙 → 억제 노드 → 출력 노드로 이어지는 pull 방식 그래프입니다.
출력 노드가 노출하는 ProcessedAudioTrack을 송신 측(RTCRtpSender)이 recv()로
당기면, 각 노드가 상류에서 프레임을 당겨 처리합니다.

Graph:
    MediaStreamSourceNode(raw track)
        └─ SuppressorNode(suppressor, 워커 스레드)
             └─ MediaStreamDestinationNode → ProcessedAudioTrack

Note:
    - 억제 처리 실패 시 해당 프레임은 원본 그대로 통과 (오류 로그는 1회만)
    - 연결이 끊긴 그래프의 출력 트랙은 MediaStreamError로 종료
"""

import logging
from typing import Optional, Tuple

import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame

from .context import AudioContext

logger = logging.getLogger(__name__)

# 지원하는 샘플 포맷 → (numpy dtype, 정규화 스케일)
_SAMPLE_FORMATS = {
    "s16": (np.int16, 32768.0),
    "s16p": (np.int16, 32768.0),
    "s32": (np.int32, 2147483648.0),
    "s32p": (np.int32, 2147483648.0),
    "flt": (np.float32, 1.0),
    "fltp": (np.float32, 1.0),
}


def frame_to_array(frame: AudioFrame) -> np.ndarray:
    """AudioFrame을 (channels, samples) float32 배열로 변환합니다.

    Raises:
        ValueError: 지원하지 않는 샘플 포맷
    """
    fmt = frame.format.name
    if fmt not in _SAMPLE_FORMATS:
        raise ValueError(f"지원하지 않는 샘플 포맷: {fmt}")
    _, scale = _SAMPLE_FORMATS[fmt]

    data = frame.to_ndarray()
    channels = len(frame.layout.channels)
    if not frame.format.is_planar:
        # packed: (1, samples * channels) 인터리브
        data = data.reshape(-1, channels).T

    return data.astype(np.float32) / scale


def array_to_frame(samples: np.ndarray, template: AudioFrame) -> AudioFrame:
    """처리된 샘플을 template과 같은 포맷/타이밍의 AudioFrame으로 변환합니다."""
    fmt = template.format.name
    dtype, scale = _SAMPLE_FORMATS[fmt]

    if dtype is np.float32:
        data = samples.astype(np.float32)
    else:
        info = np.iinfo(dtype)
        data = np.clip(np.round(samples * scale), info.min, info.max).astype(dtype)

    if not template.format.is_planar:
        data = data.T.reshape(1, -1)

    frame = AudioFrame.from_ndarray(np.ascontiguousarray(data), format=fmt, layout=template.layout.name)
    frame.sample_rate = template.sample_rate
    if template.pts is not None:
        frame.pts = template.pts
    if template.time_base is not None:
        frame.time_base = template.time_base
    return frame


class AudioNode:
    """그래프 노드 기본 클래스."""

    def __init__(self, context: AudioContext):
        self.context = context
        self.upstream: Optional["AudioNode"] = None
        self.downstream: Optional["AudioNode"] = None

    def connect(self, node: "AudioNode") -> "AudioNode":
        """하류 노드를 연결하고 그 노드를 반환합니다 (체이닝용)."""
        self.downstream = node
        node.upstream = self
        return node

    def disconnect(self) -> None:
        if self.downstream is not None:
            self.downstream.upstream = None
            self.downstream = None

    async def pull(self) -> AudioFrame:
        raise NotImplementedError

    async def _pull_upstream(self) -> AudioFrame:
        if self.upstream is None:
            raise MediaStreamError
        return await self.upstream.pull()


class MediaStreamSourceNode(AudioNode):
    """원본 오디오 트랙을 그래프 입력으로 사용하는 노드."""

    def __init__(self, context: AudioContext, track: MediaStreamTrack):
        super().__init__(context)
        self.track = track

    async def pull(self) -> AudioFrame:
        return await self.track.recv()


class SuppressorNode(AudioNode):
    """억제기를 워커 스레드에서 실행하는 처리 노드.

    Attributes:
        suppressor: process((channels, n) ndarray) -> ndarray 를 제공하는 객체
        frames_processed (int): 억제 처리된 프레임 수
        frames_bypassed (int): 원본 그대로 통과한 프레임 수
    """

    def __init__(self, context: AudioContext, suppressor):
        super().__init__(context)
        self.suppressor = suppressor
        self.frames_processed = 0
        self.frames_bypassed = 0
        self._error_logged = False

    def process_frame(self, frame: AudioFrame) -> AudioFrame:
        samples = frame_to_array(frame)
        processed = self.suppressor.process(samples)
        return array_to_frame(processed, frame)

    async def pull(self) -> AudioFrame:
        frame = await self._pull_upstream()
        try:
            result = await self.context.run(self.process_frame, frame)
        except Exception as e:
            self.frames_bypassed += 1
            if not self._error_logged:
                logger.warning(f"[Audio] 억제 처리 실패, 원본 프레임 통과: {e}")
                self._error_logged = True
            return frame

        self.frames_processed += 1
        if self.frames_processed == 1:
            logger.info("[Audio] 첫 프레임 억제 처리 완료")
        return result


class MediaStreamDestinationNode(AudioNode):
    """그래프 출력을 MediaStreamTrack으로 노출하는 노드."""

    def __init__(self, context: AudioContext):
        super().__init__(context)
        self.track = ProcessedAudioTrack(self)

    async def pull(self) -> AudioFrame:
        return await self._pull_upstream()


class ProcessedAudioTrack(MediaStreamTrack):
    """억제 처리된 오디오를 내보내는 트랙.

    Note:
        - 출력 노드가 그래프에서 분리되면 트랙을 종료하고 MediaStreamError 발생
    """
    kind = "audio"

    def __init__(self, destination: MediaStreamDestinationNode):
        super().__init__()
        self._destination = destination

    async def recv(self) -> AudioFrame:
        if self.readyState != "live":
            raise MediaStreamError
        if self._destination.upstream is None:
            self.stop()
            raise MediaStreamError
        return await self._destination.pull()


def build_graph(
    context: AudioContext, track: MediaStreamTrack, suppressor
) -> Tuple[MediaStreamSourceNode, SuppressorNode, MediaStreamDestinationNode]:
    """원본 트랙 → 억제 노드 → 출력 노드 그래프를 만듭니다."""
    source = MediaStreamSourceNode(context, track)
    suppressor_node = SuppressorNode(context, suppressor)
    destination = MediaStreamDestinationNode(context)
    source.connect(suppressor_node).connect(destination)
    return source, suppressor_node, destination
