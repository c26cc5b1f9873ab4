"""시그널링 채널 모듈.

릴레이 서버와 JSON 메시지를 주고받는 얇은 양방향 전송 계층입니다.
비즈니스 로직은 포함하지 않으며, 수신 메시지를 타입별 핸들러로 전달만 합니다.

Message Envelope:
    {"type": "<메시지 타입>", "data": <페이로드>}

Events:
    - registered: 연결(재연결) 후 릴레이가 세션 ID를 부여했을 때 `{socketId}`
    - disconnected: 예기치 않은 연결 끊김 `{reason}` (재연결 시도 전에 발생)
    - 그 외 릴레이가 보내는 모든 메시지 타입

Note:
    - 전달 보장(at-least-once)을 가정하지 않음. 핸들러는 멱등적이어야 함
    - 재연결될 때마다 registered가 다시 발생하므로 호출자는 매번 register를 재전송해야 함

Examples:
    >>> channel = SignalingChannel("ws://localhost:8000/ws")
    >>> channel.on("registered", lambda data: print(data["socketId"]))
    >>> await channel.connect()
    >>> await channel.send("register", {"userId": "alice", "socketId": channel.session_id})
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

import websockets
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ..errors import TransportLoss
from ..shared import SignalEnvelope
from .config import signaling_config

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Any], Union[None, Awaitable[None]]]


class SignalingChannel:
    """릴레이 서버와의 WebSocket 연결을 관리하는 클래스.

    Attributes:
        url (str): 릴레이 WebSocket URL
        session_id (Optional[str]): 현재 연결에 부여된 세션 ID (registered 이벤트로 설정)
        reconnect_delay (float): 재연결 대기 시간 (초)
        max_reconnect_attempts (int): 연속 재연결 실패 허용 횟수
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        reconnect_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        connect_factory: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.url = url or signaling_config.SIGNALING_URL
        self.reconnect_delay = (
            signaling_config.RECONNECT_DELAY if reconnect_delay is None else reconnect_delay
        )
        self.max_reconnect_attempts = (
            signaling_config.MAX_RECONNECT_ATTEMPTS
            if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self._connect_factory = connect_factory or websockets.connect

        self.session_id: Optional[str] = None

        # message_type -> handlers
        self._handlers: Dict[str, List[MessageHandler]] = defaultdict(list)

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None

        # Handler tasks kept alive until done
        self._handler_tasks: Set[asyncio.Task] = set()

        self._closing = False
        self._registered = asyncio.Event()

    @property
    def is_connected(self) -> bool:
        return self._ws is not None and not self._closing

    def on(self, message_type: str, handler: MessageHandler) -> Callable[[], None]:
        """메시지 타입에 핸들러를 등록합니다.

        Args:
            message_type: 메시지 타입 ("call-received", "registered" 등)
            handler: 페이로드를 받는 동기/비동기 함수

        Returns:
            Callable[[], None]: 등록 해제 함수
        """
        self._handlers[message_type].append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers.get(message_type, []):
                self._handlers[message_type].remove(handler)

        return unsubscribe

    async def connect(self) -> None:
        """릴레이에 연결하고 수신 루프를 시작합니다.

        Raises:
            TransportLoss: 최초 연결 실패 시
        """
        if self._reader_task and not self._reader_task.done():
            logger.debug("[Signaling] 이미 연결됨")
            return

        self._closing = False
        try:
            await self._open()
        except (OSError, InvalidHandshake, InvalidURI, asyncio.TimeoutError) as e:
            raise TransportLoss(f"시그널링 서버 연결 실패: {e}") from e

        self._reader_task = asyncio.create_task(self._read_loop())

    async def wait_registered(self, timeout: Optional[float] = None) -> str:
        """registered 이벤트를 기다린 후 세션 ID를 반환합니다."""
        await asyncio.wait_for(self._registered.wait(), timeout=timeout)
        return self.session_id

    async def disconnect(self) -> None:
        """연결을 명시적으로 종료합니다. 재연결하지 않으며 여러 번 호출해도 안전함."""
        self._closing = True
        self._registered.clear()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[Signaling] WebSocket 종료 중 오류 무시: {e}")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None
        self.session_id = None
        logger.info("[Signaling] 연결 종료")

    async def send(self, message_type: str, payload: Any = None) -> None:
        """메시지를 릴레이로 전송합니다.

        Raises:
            TransportLoss: 연결되어 있지 않거나 전송 중 연결이 끊긴 경우
        """
        if not self.is_connected:
            raise TransportLoss(f"시그널링 연결 없음 - {message_type} 전송 불가")

        message = json.dumps({"type": message_type, "data": payload})
        try:
            await self._ws.send(message)
        except ConnectionClosed as e:
            raise TransportLoss(f"{message_type} 전송 중 연결 끊김: {e}") from e
        logger.debug(f"[Signaling] 전송: {message_type}")

    async def _open(self) -> None:
        self._ws = await self._connect_factory(
            self.url, ping_interval=signaling_config.PING_INTERVAL
        )
        logger.info(f"[Signaling] 릴레이 연결됨: {self.url}")

    async def _read_loop(self) -> None:
        """수신 루프. 예기치 않은 종료 시 재연결을 시도합니다."""
        while not self._closing:
            reason = "closed"
            try:
                async for raw in self._ws:
                    self._handle_raw(raw)
            except ConnectionClosed as e:
                reason = f"connection closed ({e.__class__.__name__})"
            except asyncio.CancelledError:
                raise

            if self._closing:
                break

            logger.warning(f"[Signaling] 릴레이 연결 끊김: {reason}")
            self._ws = None
            self.session_id = None
            self._registered.clear()
            self._emit("disconnected", {"reason": reason})

            if not await self._reconnect():
                logger.error(
                    f"[Signaling] 재연결 포기 ({self.max_reconnect_attempts}회 실패)"
                )
                break

    async def _reconnect(self) -> bool:
        for attempt in range(1, self.max_reconnect_attempts + 1):
            await asyncio.sleep(self.reconnect_delay)
            if self._closing:
                return False
            try:
                await self._open()
                logger.info(f"[Signaling] 재연결 성공 (시도 {attempt})")
                return True
            except (OSError, InvalidHandshake, asyncio.TimeoutError) as e:
                logger.warning(
                    f"[Signaling] 재연결 실패 (시도 {attempt}/{self.max_reconnect_attempts}): {e}"
                )
        return False

    def _handle_raw(self, raw: Union[str, bytes]) -> None:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8", errors="ignore")
        try:
            envelope = SignalEnvelope.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"[Signaling] 잘못된 메시지 무시: {e}")
            return

        if envelope.type == "registered":
            data = envelope.data or {}
            self.session_id = data.get("socketId") if isinstance(data, dict) else None
            self._registered.set()
            logger.info(f"[Signaling] 세션 ID 할당: {self.session_id}")

        logger.debug(f"[Signaling] 수신: {envelope.type}")
        self._emit(envelope.type, envelope.data)

    def _emit(self, message_type: str, data: Any) -> None:
        handlers = list(self._handlers.get(message_type, []))
        if not handlers:
            logger.debug(f"[Signaling] 핸들러 없는 메시지: {message_type}")
            return

        for handler in handlers:
            task = asyncio.create_task(self._invoke(handler, message_type, data))
            self._handler_tasks.add(task)
            task.add_done_callback(self._handler_tasks.discard)

    @staticmethod
    async def _invoke(handler: MessageHandler, message_type: str, data: Any) -> None:
        try:
            result = handler(data)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(
                f"[Signaling] {message_type} 핸들러 오류: {type(e).__name__}: {e}",
                exc_info=True,
            )
