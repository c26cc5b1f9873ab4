"""오디오 컨텍스트 모듈.

프로세스 전체에서 공유되는 오디오 처리 환경입니다. 샘플 단위 처리는
컨텍스트가 소유한 전용 워커 스레드에서 실행되며, 오케스트레이션(asyncio 루프)은
프레임 처리 결과만 기다립니다.

Note:
    - 컨텍스트 수명은 통화 하나가 아니라 세션(프로세스) 전체
    - 통화 종료 시에는 닫지 않고, 프로세스 종료 시 close()로만 해제
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable

logger = logging.getLogger(__name__)


class AudioContext:
    """오디오 워커 스레드를 소유하는 컨텍스트.

    Attributes:
        sample_rate (int): 기준 샘플레이트 (Hz)
        state (str): "suspended" | "running" | "closed"
    """

    def __init__(self, sample_rate: int = 48000):
        self.sample_rate = sample_rate
        self.state = "suspended"
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audio-worklet")
        logger.info(f"[Audio] 오디오 컨텍스트 생성 ({sample_rate}Hz)")

    @property
    def closed(self) -> bool:
        return self.state == "closed"

    def resume(self) -> None:
        if self.closed:
            raise RuntimeError("닫힌 오디오 컨텍스트는 재개할 수 없음")
        if self.state == "suspended":
            self.state = "running"
            logger.info("[Audio] 오디오 컨텍스트 재개")

    def suspend(self) -> None:
        """처리할 그래프가 없을 때 컨텍스트를 일시 정지합니다 (워커 스레드는 유지)."""
        if self.state == "running":
            self.state = "suspended"
            logger.info("[Audio] 오디오 컨텍스트 일시 정지")

    async def run(self, func: Callable[..., Any], *args: Any) -> Any:
        """워커 스레드에서 함수를 실행합니다.

        Raises:
            RuntimeError: 컨텍스트가 닫힌 경우
        """
        if self.closed:
            raise RuntimeError("오디오 컨텍스트가 닫힘")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    def close(self) -> None:
        """워커 스레드를 종료합니다. 여러 번 호출해도 안전함."""
        if self.closed:
            return
        self.state = "closed"
        self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info("[Audio] 오디오 컨텍스트 종료")
