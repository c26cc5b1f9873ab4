"""통화 클라이언트 모듈.

한 사용자에 대해 시그널링 채널, 통화 세션 저장소, 오디오 파이프라인,
협상 상태 머신을 묶어 줍니다.

주요 기능:
    - registered 이벤트마다 신원 재등록 (register{userId, socketId})
    - active-users로 접속자 로스터 갱신
    - 수신 메시지를 상태 머신으로 전달
    - 시그널링 연결 끊김 시 통화 해제 (TransportLoss)
    - 프로세스 종료 시 전체 자원 해제 (close)

Examples:
    >>> client = CallClient("상담원A", decide=lambda peer: True)
    >>> await client.start()
    >>> peer = await client.wait_for_peer("고객B")
    >>> await client.call(peer.peer_id)
    >>> await client.close()
"""

import asyncio
import functools
import logging
import uuid
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from .audio import AudioPipeline
from .errors import CallError, TransportLoss
from .shared import RegisterPayload, UserEntry
from .signaling import SignalingChannel, signaling_config
from .webrtc import CallSessionStore, CallState, NegotiationStateMachine, Peer
from .webrtc.binding import BindingResult
from .webrtc.media import MediaAcquirer

logger = logging.getLogger(__name__)


class CallClient:
    """1:1 통화 클라이언트.

    Attributes:
        user_id (str): 사용자 표시 이름
        channel (SignalingChannel): 시그널링 채널
        store (CallSessionStore): 통화 세션 저장소
        pipeline (AudioPipeline): 노이즈 억제 파이프라인 (프로세스 수명)
        machine (NegotiationStateMachine): 협상 상태 머신
    """

    def __init__(
        self,
        user_id: Optional[str] = None,
        *,
        channel: Optional[SignalingChannel] = None,
        store: Optional[CallSessionStore] = None,
        pipeline: Optional[AudioPipeline] = None,
        acquirer: Optional[MediaAcquirer] = None,
        decide: Optional[Callable[[Peer], Any]] = None,
        pc_factory: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[CallError], Any]] = None,
        on_remote_track: Optional[Callable[..., Any]] = None,
        on_roster: Optional[Callable[[List[Peer]], Any]] = None,
    ):
        self.user_id = user_id or signaling_config.USER_ID or f"user-{uuid.uuid4().hex[:6]}"
        self.channel = channel or SignalingChannel()
        self.store = store or CallSessionStore()
        self.pipeline = pipeline if pipeline is not None else AudioPipeline()
        self.on_roster = on_roster
        self.machine = NegotiationStateMachine(
            self.store,
            self.channel,
            self.pipeline,
            acquirer,
            decide=decide,
            pc_factory=pc_factory,
            on_error=on_error,
            on_remote_track=on_remote_track,
        )

        self._unsubscribers: List[Callable[[], None]] = []
        self._init_task: Optional[asyncio.Task] = None
        self._roster_updated = asyncio.Event()

    @property
    def session_id(self) -> Optional[str]:
        return self.channel.session_id

    @property
    def state(self) -> CallState:
        return self.store.session.state

    @property
    def peers(self) -> List[Peer]:
        return self.store.peers

    async def start(self, timeout: Optional[float] = None) -> str:
        """릴레이에 연결하고 등록을 마칩니다.

        오디오 파이프라인 초기화는 백그라운드에서 시작되며 통화 흐름과 무관하게 완료됩니다.

        Returns:
            str: 릴레이가 부여한 세션 ID

        Raises:
            TransportLoss: 릴레이 연결 실패
        """
        if not self._unsubscribers:
            self._subscribe()
        if self._init_task is None:
            self._init_task = asyncio.ensure_future(self.pipeline.initialize())

        await self.channel.connect()
        timeout = signaling_config.REGISTER_TIMEOUT if timeout is None else timeout
        try:
            session_id = await self.channel.wait_registered(timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TransportLoss(f"릴레이 등록 응답 없음 ({timeout}s)") from e
        logger.info(f"[Client] {self.user_id} 시작 (session={session_id})")
        return session_id

    def _subscribe(self) -> None:
        on = self.channel.on
        self._unsubscribers.append(on("registered", self._on_registered))
        self._unsubscribers.append(on("active-users", self._on_active_users))
        self._unsubscribers.append(on("disconnected", self._on_disconnected))
        for message_type in self.machine.message_types:
            handler = functools.partial(self.machine.dispatch, message_type)
            self._unsubscribers.append(on(message_type, handler))

    async def _on_registered(self, data: Any) -> None:
        socket_id = data.get("socketId") if isinstance(data, dict) else None
        if not socket_id:
            logger.warning(f"[Client] registered에 socketId 없음: {data}")
            return
        payload = RegisterPayload(user_id=self.user_id, socket_id=socket_id)
        try:
            await self.channel.send("register", payload.to_wire())
            logger.info(f"[Client] 등록: {self.user_id} ({socket_id})")
        except TransportLoss as e:
            logger.warning(f"[Client] 등록 실패: {e}")

    def _on_active_users(self, data: Any) -> None:
        users = []
        for entry in data or []:
            try:
                users.append(UserEntry.model_validate(entry))
            except ValidationError:
                logger.warning(f"[Client] 잘못된 접속자 항목 무시: {entry}")
        peers = self.store.update_roster(users, self_id=self.channel.session_id)
        self._roster_updated.set()
        if self.on_roster:
            self.on_roster(peers)

    async def _on_disconnected(self, data: Any) -> None:
        if self.store.session.is_idle:
            return
        reason = data.get("reason") if isinstance(data, dict) else None
        await self.machine.handle_error(TransportLoss(f"시그널링 연결 끊김: {reason}"))

    async def wait_for_peer(self, display_name: str, timeout: float = 30.0) -> Peer:
        """로스터에 해당 이름의 접속자가 나타날 때까지 기다립니다.

        Raises:
            asyncio.TimeoutError: 시간 내에 나타나지 않은 경우
        """

        async def _wait() -> Peer:
            while True:
                for peer in self.store.peers:
                    if peer.display_name == display_name:
                        return peer
                self._roster_updated.clear()
                await self._roster_updated.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)

    async def call(self, peer_id: str) -> None:
        await self.machine.initiate_call(peer_id)

    async def hangup(self) -> None:
        await self.machine.hangup()

    async def switch_devices(
        self, audio_device_id: Optional[str] = None, video_device_id: Optional[str] = None
    ) -> BindingResult:
        return await self.machine.switch_devices(audio_device_id, video_device_id)

    async def close(self) -> None:
        """통화, 시그널링 연결, 오디오 컨텍스트를 모두 해제합니다."""
        await self.machine.hangup()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.channel.disconnect()
        self.pipeline.close()
        logger.info(f"[Client] {self.user_id} 종료")
