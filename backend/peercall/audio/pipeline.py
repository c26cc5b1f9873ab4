"""노이즈 억제 오디오 파이프라인 모듈.

로컬 마이크 트랙을 받아 노이즈가 억제된 트랙을 만들어 줍니다. 억제 모듈을
불러오지 못하면 파이프라인은 "degraded" 상태가 되고, 이후 attach()는 원본
트랙을 그대로 돌려줍니다 (통화는 억제 없이 계속 진행).

Lifecycle:
    1. initialize(): 억제기 팩토리/페이로드 로드 (동시 호출 시 한 번만 실행)
    2. attach(stream): 그래프 생성 → 처리된 트랙 반환
    3. release_superseded(): 교체된 이전 그래프 해제 (장치 전환 후)
    4. detach(): 모든 그래프 해제 (통화 종료)
    5. close(): 오디오 컨텍스트 종료 (프로세스 종료)

Note:
    - 원본 트랙은 그래프가 소유합니다. 송신 sender에는 절대 바인딩되지 않으며,
      그래프 해제 시 원본 트랙도 함께 stop() 됩니다.
    - 교체된 그래프는 sender가 새 트랙으로 넘어간 뒤에 해제해야 합니다.
      sender가 기다리던 트랙이 먼저 종료되면 RTP 송신 루프가 멈춥니다.
"""

import asyncio
import importlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, List, Optional

from aiortc import MediaStreamTrack

from ..errors import MediaAcquisitionError, SuppressionModuleError
from .config import SuppressionConfig, suppression_config
from .context import AudioContext
from .graph import (
    MediaStreamDestinationNode,
    MediaStreamSourceNode,
    SuppressorNode,
    build_graph,
)

if TYPE_CHECKING:
    from ..webrtc.media import MediaStream

logger = logging.getLogger(__name__)


@dataclass
class AudioGraphHandle:
    """하나의 원본 트랙에 대해 만들어진 처리 그래프."""

    source_node: MediaStreamSourceNode
    suppressor_node: SuppressorNode
    sink_node: MediaStreamDestinationNode
    raw_track: MediaStreamTrack

    @property
    def processed_track(self) -> MediaStreamTrack:
        return self.sink_node.track

    def release(self) -> None:
        self.source_node.disconnect()
        self.suppressor_node.disconnect()
        self.processed_track.stop()
        self.raw_track.stop()


class AudioPipeline:
    """노이즈 억제 파이프라인.

    Attributes:
        config (SuppressionConfig): 억제 설정
        degraded (bool): 억제기를 쓸 수 없어 원본 트랙을 사용하는 상태
        last_error (Optional[SuppressionModuleError]): 마지막 로드 오류
        graph (Optional[AudioGraphHandle]): 현재 송신 중인 그래프
    """

    def __init__(
        self,
        config: SuppressionConfig = suppression_config,
        context_factory: Callable[..., AudioContext] = AudioContext,
    ):
        self.config = config
        self._context_factory = context_factory
        self.context: Optional[AudioContext] = None
        self.degraded = False
        self.last_error: Optional[SuppressionModuleError] = None
        self.graph: Optional[AudioGraphHandle] = None
        self._suppressor: Any = None
        self._superseded: List[AudioGraphHandle] = []
        self._init_task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def ready(self) -> bool:
        return self._suppressor is not None and not self.degraded and not self._closed

    async def initialize(self) -> bool:
        """억제 모듈을 로드합니다.

        여러 번(동시에) 호출해도 로드는 한 번만 수행되며 모두 같은 결과를 기다립니다.

        Returns:
            bool: 억제 사용 가능 여부 (False면 degraded)
        """
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self._load())
        await asyncio.shield(self._init_task)
        return self.ready

    async def _load(self) -> None:
        if not self.config.ENABLED:
            logger.info("[Audio] 노이즈 억제 비활성화 - 원본 오디오 사용")
            self.degraded = True
            return

        try:
            factory = self._resolve_factory(self.config.MODULE)

            payload = None
            if self.config.PAYLOAD_PATH:
                loop = asyncio.get_running_loop()
                payload = await loop.run_in_executor(None, Path(self.config.PAYLOAD_PATH).read_bytes)
                logger.info(f"[Audio] 억제기 페이로드 로드 ({len(payload)} bytes)")

            suppressor = factory(
                payload=payload,
                sample_rate=self.config.SAMPLE_RATE,
                max_channels=self.config.MAX_CHANNELS,
            )
            if self.context is None:
                self.context = self._context_factory(sample_rate=self.config.SAMPLE_RATE)
            self._suppressor = suppressor
            logger.info(f"[Audio] 억제 모듈 로드 완료: {self.config.MODULE}")
        except Exception as e:
            error = e if isinstance(e, SuppressionModuleError) else SuppressionModuleError(
                f"억제 모듈 로드 실패: {e}"
            )
            self.last_error = error
            self.degraded = True
            logger.error(f"[Audio] {error} - 원본 오디오로 계속 진행", exc_info=True)

    @staticmethod
    def _resolve_factory(reference: str) -> Callable[..., Any]:
        """"패키지.모듈:이름" 형식의 참조를 불러옵니다."""
        module_name, _, attr = reference.partition(":")
        if not module_name or not attr:
            raise SuppressionModuleError(f"억제 모듈 참조 형식 오류: {reference!r}")
        try:
            module = importlib.import_module(module_name)
        except ImportError as e:
            raise SuppressionModuleError(f"억제 모듈 import 실패: {module_name} ({e})") from e
        factory = getattr(module, attr, None)
        if not callable(factory):
            raise SuppressionModuleError(f"억제기 팩토리 없음: {reference}")
        return factory

    def attach(self, raw_stream: "MediaStream") -> MediaStreamTrack:
        """원본 스트림의 오디오 트랙으로 처리 그래프를 만듭니다.

        이미 그래프가 있으면 이전 그래프는 교체 대기 목록으로 옮겨지고
        release_superseded() 또는 detach() 때 해제됩니다.

        Args:
            raw_stream: 로컬 캡처 스트림

        Returns:
            MediaStreamTrack: 송신할 오디오 트랙 (degraded면 원본 트랙)

        Raises:
            MediaAcquisitionError: 스트림에 오디오 트랙이 없는 경우
        """
        audio_tracks = raw_stream.audio_tracks
        if not audio_tracks:
            raise MediaAcquisitionError("로컬 스트림에 오디오 트랙 없음")
        raw_track = audio_tracks[0]

        if not self.ready:
            logger.info("[Audio] 억제 사용 불가 - 원본 오디오 트랙 사용")
            return raw_track

        if self.graph is not None:
            if self.graph.raw_track is raw_track:
                return self.graph.processed_track
            self._superseded.append(self.graph)

        source, suppressor_node, sink = build_graph(self.context, raw_track, self._suppressor)
        self.context.resume()
        self.graph = AudioGraphHandle(
            source_node=source,
            suppressor_node=suppressor_node,
            sink_node=sink,
            raw_track=raw_track,
        )
        logger.info(f"[Audio] 억제 그래프 연결 (raw={raw_track.id[:8]})")
        return self.graph.processed_track

    def release_superseded(self) -> None:
        """교체된 이전 그래프들을 해제합니다."""
        while self._superseded:
            self._superseded.pop(0).release()
            logger.info("[Audio] 이전 억제 그래프 해제")

    def detach(self) -> None:
        """모든 그래프를 해제합니다. 여러 번 호출해도 안전함."""
        self.release_superseded()
        if self.graph is not None:
            self.graph.release()
            self.graph = None
            logger.info("[Audio] 억제 그래프 해제")
        if self._suppressor is not None and hasattr(self._suppressor, "reset"):
            self._suppressor.reset()
        if self.context is not None:
            self.context.suspend()

    def close(self) -> None:
        """그래프와 오디오 컨텍스트를 해제합니다 (프로세스 종료 시)."""
        self.detach()
        self._closed = True
        if self.context is not None:
            self.context.close()
        if self._init_task is not None and not self._init_task.done():
            self._init_task.cancel()
