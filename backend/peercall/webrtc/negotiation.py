"""통화 협상 상태 머신 모듈.

하나의 피어 연결(RTCPeerConnection)의 수명을 관리합니다. 시그널링 채널로
offer/answer/ICE candidate를 교환하고, 순서가 뒤바뀐 메시지, 늦게 도착한
candidate, 동시 통화 시도, 재협상 요청을 처리합니다.

States:
    idle → outgoing-offer-pending → awaiting-answer → connected
    idle → incoming-offer-received → answering → connected
    connected → renegotiating → connected
    (모든 상태) → closed → (새 idle 세션)

WebRTC Flow (발신):
    1. 로컬 미디어 획득 → 오디오 파이프라인 연결 → 송신 트랙 바인딩
    2. offer 생성 및 local description 설정
    3. call-user 전송 → awaiting-answer
    4. call-accepted 수신 → remote description 설정 → connected
    5. 대기 중이던 원격 ICE candidate 적용

WebRTC Flow (수신):
    1. call-received → 수락 여부 결정 (decide 콜백)
    2. 거절: call-rejected 전송 후 idle
    3. 수락: 미디어 획득 → remote description → 트랙 바인딩 → answer
    4. call-accepted 전송 → connected → 대기 중 candidate 적용

Concurrency:
    - 모든 전이는 asyncio.Lock으로 상호 배제
    - 새 통화 시도(initiate_call / handle_incoming_call)는 대기하지 않고
      CallInProgressError로 즉시 실패
    - teardown()은 락을 기다리지 않고 즉시 적용되며, 중단된 전이는
      await 이후 세션이 바뀐 것을 확인하고 스스로 멈춤

Examples:
    >>> machine = NegotiationStateMachine(store, channel, pipeline, acquirer, decide=ask_user)
    >>> channel.on("call-received", lambda data: machine.dispatch("call-received", data))
    >>> await machine.initiate_call("socket-456")
"""

import asyncio
import inspect
import logging
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Set, Tuple, Union

from aiortc import MediaStreamTrack, RTCIceCandidate, RTCPeerConnection, RTCSessionDescription
from pydantic import ValidationError

from ..audio.pipeline import AudioPipeline
from ..errors import (
    CallError,
    CallInProgressError,
    IceApplicationError,
    InvalidStateError,
    MediaAcquisitionError,
    NegotiationError,
    TrackBindingError,
    TransportLoss,
)
from ..shared import (
    CallAnswer,
    CallFailed,
    CallOffer,
    IceCandidateMessage,
    PeerAddress,
    SessionDescription,
    UserDisconnected,
)
from ..signaling.channel import SignalingChannel
from .binding import BindingResult, TrackBindingManager
from .candidates import parse_candidate, serialize_candidate
from .config import build_rtc_configuration, connection_config
from .media import MediaAcquirer, MediaConstraints, MediaPlayerAcquirer, MediaStream
from .session_store import CallSession, CallSessionStore, CallState, NegotiationContext, Peer

logger = logging.getLogger(__name__)

DecisionCallback = Callable[[Peer], Union[bool, Awaitable[bool]]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class NegotiationStateMachine:
    """피어 연결 하나의 협상 상태 머신.

    Attributes:
        store (CallSessionStore): 통화 세션 저장소 (상태의 유일한 기준)
        channel (SignalingChannel): 시그널링 채널
        pipeline (Optional[AudioPipeline]): 노이즈 억제 파이프라인 (None이면 원본 오디오)
        binding (TrackBindingManager): 송신 트랙 바인딩 관리자
        acquirer: 로컬 미디어 획득 함수
        decide: 수신 통화 수락 여부를 결정하는 콜백 (Peer -> bool)
        on_error: 사용자에게 알릴 오류 콜백
        on_remote_track: 원격 트랙 수신 콜백 (track, remote_stream)
    """

    def __init__(
        self,
        store: CallSessionStore,
        channel: SignalingChannel,
        pipeline: Optional[AudioPipeline] = None,
        acquirer: Optional[MediaAcquirer] = None,
        *,
        decide: Optional[DecisionCallback] = None,
        pc_factory: Optional[Callable[[], RTCPeerConnection]] = None,
        binding: Optional[TrackBindingManager] = None,
        constraints: Optional[MediaConstraints] = None,
        on_error: Optional[Callable[[CallError], Any]] = None,
        on_remote_track: Optional[Callable[[MediaStreamTrack, MediaStream], Any]] = None,
    ):
        self.store = store
        self.channel = channel
        self.pipeline = pipeline
        self.acquirer = acquirer or MediaPlayerAcquirer()
        self.decide = decide
        self.constraints = constraints or MediaConstraints.for_devices()
        self.on_error = on_error
        self.on_remote_track = on_remote_track
        self._pc_factory = pc_factory or (
            lambda: RTCPeerConnection(configuration=build_rtc_configuration())
        )
        self.binding = binding or TrackBindingManager(
            store,
            on_renegotiation_needed=self.request_renegotiation,
            on_error=self._on_binding_error,
        )

        self._lock = asyncio.Lock()
        self._closing = False
        self._tasks: Set[asyncio.Task] = set()

        # 진행 중인 재협상 라운드가 끝난 뒤 다시 offer를 보낼지 여부
        self._renegotiation_pending = False
        self._renegotiation_timer: Optional[asyncio.Task] = None

        # 컨텍스트가 생기기 전에 도착한 원격 candidate (보낸 피어 ID, candidate)
        self._orphan_candidates: Deque[Tuple[Optional[str], RTCIceCandidate]] = deque(
            maxlen=connection_config.ORPHAN_CANDIDATE_LIMIT
        )

        # 수신 메시지 타입 → 전이 함수
        self._handlers: Dict[str, Callable[[Any], Awaitable[None]]] = {
            "call-received": self._on_call_received,
            "call-accepted": self._on_call_accepted,
            "call-rejected": self._on_call_rejected,
            "ice-candidate": self._on_ice_candidate,
            "end-call": self._on_end_call,
            "user-disconnected": self._on_user_disconnected,
            "call-failed": self._on_call_failed,
            "renegotiation-needed": self._on_renegotiation_needed,
        }

    @property
    def state(self) -> CallState:
        return self.store.session.state

    @property
    def message_types(self):
        return tuple(self._handlers)

    # ============================================================
    # 메시지 디스패치
    # ============================================================

    async def dispatch(self, message_type: str, payload: Any) -> None:
        """수신 시그널링 메시지를 해당 전이 함수로 전달합니다.

        모든 오류는 여기서 처리되며 호출자(채널 리더)로 전파되지 않습니다.
        """
        handler = self._handlers.get(message_type)
        if handler is None:
            logger.debug(f"[WebRTC] 처리하지 않는 메시지 타입: {message_type}")
            return

        try:
            await handler(payload)
        except CallError as e:
            await self.handle_error(e)
        except ValidationError as e:
            logger.warning(f"[WebRTC] {message_type} 페이로드 형식 오류: {e.error_count()}개 필드")
        except Exception as e:
            logger.error(f"[WebRTC] {message_type} 처리 중 오류: {e}", exc_info=True)

    async def _on_call_received(self, payload: Any) -> None:
        message = CallOffer.model_validate(payload)
        if not message.from_:
            raise InvalidStateError("call-received에 발신자 없음")
        await self.handle_incoming_call(message.from_, message.offer)

    async def _on_call_accepted(self, payload: Any) -> None:
        message = CallAnswer.model_validate(payload)
        await self.handle_answer(message.answer, from_id=message.from_)

    async def _on_call_rejected(self, payload: Any) -> None:
        message = PeerAddress.model_validate(payload or {})
        session = self.store.session
        if session.state not in (CallState.OUTGOING_OFFER_PENDING, CallState.AWAITING_ANSWER) or (
            message.from_ and message.from_ != session.remote_peer_id
        ):
            logger.info(f"[WebRTC] call-rejected 무시 (state={session.state.value})")
            return
        logger.info(f"[WebRTC] 상대가 통화 거절: {session.remote_peer_id}")
        await self.teardown(reason="rejected")

    async def _on_ice_candidate(self, payload: Any) -> None:
        message = IceCandidateMessage.model_validate(payload)
        await self.handle_remote_ice_candidate(message.candidate, from_id=message.from_)

    async def _on_end_call(self, payload: Any) -> None:
        message = PeerAddress.model_validate(payload or {})
        session = self.store.session
        if message.from_ and message.from_ != session.remote_peer_id:
            logger.info(f"[WebRTC] 다른 피어의 end-call 무시: {message.from_}")
            return
        logger.info(f"[WebRTC] 상대가 통화 종료: {session.remote_peer_id}")
        await self.teardown(reason="remote-hangup")

    async def _on_user_disconnected(self, payload: Any) -> None:
        message = UserDisconnected.model_validate(payload)
        self.store.remove_peer(message.socket_id)
        if message.socket_id == self.store.session.remote_peer_id:
            raise TransportLoss("상대 피어 연결 끊김", peer_id=message.socket_id)

    async def _on_call_failed(self, payload: Any) -> None:
        message = CallFailed.model_validate(payload or {})
        session = self.store.session
        if session.is_idle or (message.from_ and message.from_ != session.remote_peer_id):
            return
        logger.warning(f"[WebRTC] 상대 측 통화 실패: {message.error}")
        await self.teardown(reason="remote-failure")
        await self._notify_user(NegotiationError(message.error, peer_id=message.from_))

    async def _on_renegotiation_needed(self, payload: Any) -> None:
        message = PeerAddress.model_validate(payload or {})
        session = self.store.session
        if message.from_ and message.from_ != session.remote_peer_id:
            logger.info(f"[WebRTC] 다른 피어의 재협상 요청 무시: {message.from_}")
            return
        await self.request_renegotiation()

    # ============================================================
    # 발신
    # ============================================================

    async def initiate_call(self, peer_id: str) -> None:
        """상대 피어에게 통화를 겁니다.

        Args:
            peer_id (str): 상대 피어 소켓 ID

        Raises:
            CallInProgressError: 다른 전이가 진행 중인 경우
            InvalidStateError: 이미 통화 중인 경우
            MediaAcquisitionError: 로컬 미디어 획득 실패 (시그널링 없음)
            NegotiationError: offer 생성/설정 실패
            TransportLoss: 시그널링 전송 실패
        """
        self._guard_new_call(peer_id)

        async with self._lock:
            session = self.store.begin(peer_id, CallState.OUTGOING_OFFER_PENDING)
            logger.info(f"[WebRTC] 통화 발신: {peer_id}")

            try:
                stream = await self._acquire_local_media()
            except MediaAcquisitionError:
                await self.teardown(reason="media-acquisition-failed")
                raise
            if not self._is_current(session):
                stream.stop()
                return
            session.local_stream = stream

            try:
                context = self._create_context()
                self._bind_local_tracks(stream)
                self._ensure_receivers(context.pc)

                offer = await self._create_local_description(context, "offer")
                if not self._is_current(session):
                    return

                await self.channel.send("call-user", CallOffer(to=peer_id, offer=offer).to_wire())
                self.store.transition(CallState.AWAITING_ANSWER)
            except CallError as e:
                if e.peer_id is None:
                    e.peer_id = peer_id
                await self._abort(e)
                raise

    # ============================================================
    # 수신
    # ============================================================

    async def handle_incoming_call(self, from_id: str, offer: SessionDescription) -> None:
        """수신 offer를 처리합니다.

        현재 피어와 연결된 상태에서 받은 offer는 재협상으로 간주하고
        사용자에게 묻지 않고 응답합니다. 다른 피어의 offer는 통화 중이면
        busy로 거절합니다.

        Raises:
            CallInProgressError: 통화 중이거나 다른 전이가 진행 중인 경우 (busy 거절 후)
            MediaAcquisitionError / NegotiationError: 수락 후 필수 단계 실패
        """
        session = self.store.session
        if from_id == session.remote_peer_id and session.state in (
            CallState.CONNECTED,
            CallState.RENEGOTIATING,
        ):
            await self._answer_renegotiation(from_id, offer)
            return

        if self._lock.locked() or not session.is_idle:
            logger.info(f"[WebRTC] 통화 중 - {from_id} 의 통화 거절 (busy)")
            await self._send_quietly("call-rejected", PeerAddress(to=from_id).to_wire())
            raise CallInProgressError(
                f"통화 중 수신 거절 (state={session.state.value})", peer_id=from_id
            )

        async with self._lock:
            session = self.store.begin(from_id, CallState.INCOMING_OFFER_RECEIVED)
            peer = self.store.get_peer(from_id)
            logger.info(f"[WebRTC] 통화 수신: {peer.display_name} ({from_id})")

            accepted = await self._ask_decision(peer)
            if not self._is_current(session):
                logger.info("[WebRTC] 결정 대기 중 통화 종료됨")
                return

            if not accepted:
                logger.info(f"[WebRTC] 통화 거절: {from_id}")
                await self._send_quietly("call-rejected", PeerAddress(to=from_id).to_wire())
                await self.teardown(reason="declined")
                return

            self.store.transition(CallState.ANSWERING)
            try:
                stream = await self._acquire_local_media()
                if not self._is_current(session):
                    stream.stop()
                    return
                session.local_stream = stream

                context = self._create_context()
                await self._apply_remote_description(context, offer)
                if not self._is_current(session):
                    return

                self._bind_local_tracks(stream)
                answer = await self._create_local_description(context, "answer")
                if not self._is_current(session):
                    return

                self.store.transition(CallState.CONNECTED)
                await self.channel.send(
                    "call-accepted", CallAnswer(to=from_id, answer=answer).to_wire()
                )
            except CallError as e:
                if e.peer_id is None:
                    e.peer_id = from_id
                await self._abort(e)
                raise

        await self._flush_remote_candidates(context)

    async def _answer_renegotiation(self, from_id: str, offer: SessionDescription) -> None:
        async with self._lock:
            session = self.store.session
            context = self.store.context
            if session.state != CallState.CONNECTED or context is None:
                # 재협상 중 상대 offer (glare): 우리 offer의 answer 또는 시간 초과를 기다림
                logger.warning(
                    f"[WebRTC] 재협상 offer 무시 (state={session.state.value})"
                )
                return

            logger.info(f"[WebRTC] 재협상 offer 수신: {from_id}")
            self.store.transition(CallState.RENEGOTIATING)
            try:
                await self._apply_remote_description(context, offer)
                answer = await self._create_local_description(context, "answer")
            except NegotiationError as e:
                e.peer_id = from_id
                raise
            if not self._is_current(session):
                return

            self.store.transition(CallState.CONNECTED)
            await self.channel.send("call-accepted", CallAnswer(to=from_id, answer=answer).to_wire())

        await self._flush_remote_candidates(context)

    async def handle_answer(self, answer: SessionDescription, from_id: Optional[str] = None) -> None:
        """call-accepted의 answer를 적용합니다.

        awaiting-answer / renegotiating 상태에서만 유효하며, 그 외에는
        로그만 남기고 무시합니다 (중복 answer 등).
        """
        async with self._lock:
            session = self.store.session
            context = self.store.context
            if session.state not in (CallState.AWAITING_ANSWER, CallState.RENEGOTIATING) or context is None:
                logger.info(f"[WebRTC] answer 무시 (state={session.state.value})")
                return
            if from_id and from_id != session.remote_peer_id:
                logger.warning(f"[WebRTC] 다른 피어의 answer 무시: {from_id}")
                return

            try:
                await self._apply_remote_description(context, answer)
            except NegotiationError as e:
                e.peer_id = session.remote_peer_id
                raise
            if not self._is_current(session):
                return

            renegotiated = session.state == CallState.RENEGOTIATING
            self.store.transition(CallState.CONNECTED)
            logger.info(f"[WebRTC] 통화 연결됨: {session.remote_peer_id}")
            if renegotiated:
                self._finish_renegotiation_round()

        await self._flush_remote_candidates(context)

    # ============================================================
    # ICE candidate
    # ============================================================

    async def handle_remote_ice_candidate(self, payload: Any, from_id: Optional[str] = None) -> None:
        """원격 ICE candidate를 적용하거나 대기열에 넣습니다.

        remote description이 설정되기 전에 도착한 candidate는 도착 순서대로
        보관했다가 설정 직후 같은 순서로 적용합니다. 형식이 잘못된
        candidate만 버려집니다.
        """
        try:
            candidate = parse_candidate(payload)
        except IceApplicationError as e:
            logger.warning(f"[WebRTC] ICE candidate 버림: {e}")
            return

        context = self.store.context
        if context is None:
            self._orphan_candidates.append((from_id, candidate))
            logger.debug(
                f"[WebRTC] 피어 연결 전 ICE candidate 보관 ({len(self._orphan_candidates)}개)"
            )
            return

        if from_id and context.remote_peer_id and from_id != context.remote_peer_id:
            logger.warning(f"[WebRTC] 다른 피어의 ICE candidate 무시: {from_id}")
            return

        context.pending_remote_candidates.append(candidate)
        if context.has_remote_description:
            await self._flush_remote_candidates(context)

    async def _flush_remote_candidates(self, context: NegotiationContext) -> None:
        # 한 번에 하나의 flusher만 동작하며, 적용 중 도착한 candidate도 같은 루프에서 처리
        if context.flushing:
            return
        context.flushing = True
        applied = 0
        try:
            while context.pending_remote_candidates:
                if self.store.context is not context or not context.has_remote_description:
                    break
                candidate = context.pending_remote_candidates.popleft()
                try:
                    await context.pc.addIceCandidate(candidate)
                    applied += 1
                except Exception as e:
                    logger.warning(f"[WebRTC] ICE candidate 적용 실패: {e}")
        finally:
            context.flushing = False
        if applied:
            logger.info(f"[WebRTC] 원격 ICE candidate {applied}개 적용")

    async def on_local_ice_candidate(self, candidate: Optional[RTCIceCandidate]) -> None:
        """로컬 ICE candidate를 상대에게 전달합니다.

        상대 피어 ID가 아직 없으면 보관했다가 알게 되면 전송합니다.
        """
        if candidate is None:
            return
        context = self.store.context
        if context is None:
            return

        payload = serialize_candidate(candidate) if isinstance(candidate, RTCIceCandidate) else candidate
        context.pending_local_candidates.append(payload)
        await self._flush_local_candidates(context)

    async def _flush_local_candidates(self, context: NegotiationContext) -> None:
        peer_id = context.remote_peer_id
        if not peer_id:
            return
        while context.pending_local_candidates and self.store.context is context:
            payload = context.pending_local_candidates.popleft()
            await self._send_quietly(
                "ice-candidate", IceCandidateMessage(to=peer_id, candidate=payload).to_wire()
            )

    def _adopt_orphan_candidates(self, context: NegotiationContext) -> None:
        adopted = 0
        while self._orphan_candidates:
            from_id, candidate = self._orphan_candidates.popleft()
            if from_id is None or from_id == context.remote_peer_id:
                context.pending_remote_candidates.append(candidate)
                adopted += 1
        if adopted:
            logger.info(f"[WebRTC] 보관된 ICE candidate {adopted}개 이관")

    # ============================================================
    # 재협상 / 장치 전환
    # ============================================================

    async def request_renegotiation(self) -> None:
        """연결된 상태에서 새 offer를 보냅니다.

        연결되지 않았으면 아무것도 하지 않습니다. 재협상 라운드가 진행 중이면
        라운드가 끝난 뒤 한 번 더 offer를 보냅니다.
        통화 중 offer는 소켓 ID가 작은 쪽만 보내며, 반대쪽은
        renegotiation-needed로 상대에게 offer를 요청합니다.
        """
        if self.state == CallState.RENEGOTIATING:
            self._defer_renegotiation()
            return
        if self.state != CallState.CONNECTED:
            logger.debug(f"[WebRTC] 재협상 생략 (state={self.state.value})")
            return

        remote_peer_id = self.store.session.remote_peer_id
        if not self._is_renegotiation_offerer(remote_peer_id):
            logger.info(f"[WebRTC] 상대에게 재협상 요청: {remote_peer_id}")
            await self._send_quietly(
                "renegotiation-needed", PeerAddress(to=remote_peer_id).to_wire()
            )
            return

        try:
            async with self._lock:
                session = self.store.session
                context = self.store.context
                if session.state == CallState.RENEGOTIATING:
                    self._defer_renegotiation()
                    return
                if session.state != CallState.CONNECTED or context is None:
                    return

                logger.info(f"[WebRTC] 재협상 시작: {session.remote_peer_id}")
                self.store.transition(CallState.RENEGOTIATING)
                self._ensure_receivers(context.pc)
                offer = await self._create_local_description(context, "offer")
                if not self._is_current(session):
                    return
                await self.channel.send(
                    "call-user", CallOffer(to=session.remote_peer_id, offer=offer).to_wire()
                )
                self._arm_renegotiation_timer(session)
        except CallError as e:
            await self.handle_error(e)

    def _defer_renegotiation(self) -> None:
        logger.info("[WebRTC] 재협상 진행 중 - 라운드 종료 후 다시 offer")
        self._renegotiation_pending = True

    def _is_renegotiation_offerer(self, remote_peer_id: Optional[str]) -> bool:
        # aiortc에는 rollback이 없어 양쪽이 동시에 offer를 적용하면 (glare)
        # 둘 다 have-local-offer에서 빠져나올 수 없음
        local_id = getattr(self.channel, "session_id", None)
        if not local_id or not remote_peer_id:
            return True
        return local_id < remote_peer_id

    def _arm_renegotiation_timer(self, session: CallSession) -> None:
        self._cancel_renegotiation_timer()
        self._renegotiation_timer = asyncio.ensure_future(self._expire_renegotiation(session))

    def _cancel_renegotiation_timer(self) -> None:
        timer, self._renegotiation_timer = self._renegotiation_timer, None
        if timer is not None and not timer.done() and timer is not asyncio.current_task():
            timer.cancel()

    async def _expire_renegotiation(self, session: CallSession) -> None:
        await asyncio.sleep(connection_config.RENEGOTIATION_TIMEOUT)
        async with self._lock:
            if not self._is_current(session) or session.state != CallState.RENEGOTIATING:
                return
            logger.warning(
                f"[WebRTC] 재협상 answer 시간 초과 - connected로 복귀 ({session.remote_peer_id})"
            )
            self.store.transition(CallState.CONNECTED)
            self._finish_renegotiation_round()

    def _finish_renegotiation_round(self) -> None:
        self._cancel_renegotiation_timer()
        if self._renegotiation_pending:
            self._renegotiation_pending = False
            self._spawn(self.request_renegotiation())

    async def switch_devices(
        self,
        audio_device_id: Optional[str] = None,
        video_device_id: Optional[str] = None,
    ) -> BindingResult:
        """통화 중 캡처 장치를 바꿉니다.

        같은 종류의 sender가 있으면 트랙만 교체되어 offer/answer 왕복이 없습니다.

        Raises:
            InvalidStateError: 로컬 미디어가 있는 통화가 없는 경우
            MediaAcquisitionError: 새 장치 획득 실패 (기존 미디어는 유지)
        """
        async with self._lock:
            session = self.store.session
            if session.local_stream is None or self.store.context is None:
                raise InvalidStateError("장치를 전환할 통화가 없음")

            constraints = MediaConstraints.for_devices(
                audio_device_id,
                video_device_id,
                video=self.constraints.video is not None,
            )
            logger.info(f"[WebRTC] 장치 전환: audio={audio_device_id}, video={video_device_id}")
            new_stream = await self._acquire_local_media(constraints)
            if not self._is_current(session):
                new_stream.stop()
                return BindingResult()

            old_stream = session.local_stream
            self.constraints = constraints
            session.local_stream = new_stream
            result = self._bind_local_tracks(new_stream)

            await asyncio.sleep(connection_config.TRACK_SWAP_GRACE)
            if self.pipeline is not None:
                self.pipeline.release_superseded()
            old_stream.stop()
            logger.info(
                f"[WebRTC] 장치 전환 완료: replaced={result.replaced}, added={result.added}"
            )
            return result

    # ============================================================
    # 종료
    # ============================================================

    async def hangup(self) -> None:
        """상대에게 end-call을 보내고 통화를 종료합니다."""
        session = self.store.session
        if session.remote_peer_id and not session.is_idle and session.state != CallState.CLOSED:
            await self._send_quietly("end-call", PeerAddress(to=session.remote_peer_id).to_wire())
        await self.teardown(reason="hangup")

    async def teardown(self, reason: Optional[str] = None) -> None:
        """통화를 종료하고 모든 통화 자원을 해제합니다.

        어느 상태에서든 호출할 수 있으며 여러 번 호출해도 안전합니다.
        진행 중인 전이를 기다리지 않습니다. 오디오 컨텍스트는 닫지 않습니다.
        """
        session = self.store.session
        if self._closing or (session.is_idle and self.store.context is None):
            return

        self._closing = True
        try:
            logger.info(
                f"[WebRTC] 통화 종료 (reason={reason}, state={session.state.value}, "
                f"peer={session.remote_peer_id})"
            )
            self.store.transition(CallState.CLOSED)
            context = self.store.clear_context()
            self._cancel_renegotiation_timer()
            self._renegotiation_pending = False

            if self.pipeline is not None:
                self.pipeline.detach()
            if session.local_stream is not None:
                session.local_stream.stop()
                session.local_stream = None
            self._orphan_candidates.clear()

            if context is not None:
                context.pending_remote_candidates.clear()
                context.pending_local_candidates.clear()
                try:
                    await context.pc.close()
                except Exception as e:
                    logger.warning(f"[WebRTC] 피어 연결 종료 중 오류: {e}")
        finally:
            self.store.reset()
            self._closing = False

    # ============================================================
    # 피어 연결 / 미디어
    # ============================================================

    def _guard_new_call(self, peer_id: str) -> None:
        session = self.store.session
        if self._lock.locked() or session.negotiating:
            raise CallInProgressError(
                f"전이 진행 중 (state={session.state.value})", peer_id=peer_id
            )
        if not session.is_idle:
            raise InvalidStateError(f"이미 통화 중 (state={session.state.value})", peer_id=peer_id)

    def _is_current(self, session: CallSession) -> bool:
        """await 이후 세션이 그대로인지 확인합니다 (teardown으로 중단되었는지)."""
        return self.store.session is session and session.state != CallState.CLOSED

    async def _acquire_local_media(self, constraints: Optional[MediaConstraints] = None) -> MediaStream:
        try:
            stream = await self.acquirer(constraints or self.constraints)
        except MediaAcquisitionError:
            raise
        except Exception as e:
            raise MediaAcquisitionError(f"로컬 미디어 획득 실패: {e}") from e

        if not stream.audio_tracks:
            stream.stop()
            raise MediaAcquisitionError("로컬 미디어에 오디오 트랙 없음")
        return stream

    def _create_context(self) -> NegotiationContext:
        pc = self._pc_factory()
        context = NegotiationContext(pc=pc)
        self.store.attach_context(context)
        self._register_pc_handlers(context)
        self._adopt_orphan_candidates(context)
        logger.info(f"[WebRTC] 피어 연결 생성: peer={context.remote_peer_id}")
        return context

    def _bind_local_tracks(self, stream: MediaStream) -> BindingResult:
        if self.pipeline is not None:
            audio_track = self.pipeline.attach(stream)
        else:
            audio_track = stream.audio_tracks[0]
        video_tracks = stream.video_tracks
        return self.binding.reconcile([audio_track, video_tracks[0] if video_tracks else None])

    @staticmethod
    def _ensure_receivers(pc) -> None:
        # 로컬 트랙이 없는 종류도 상대 미디어는 받을 수 있도록 수신 transceiver 확보
        kinds = {transceiver.kind for transceiver in pc.getTransceivers()}
        for kind in ("audio", "video"):
            if kind not in kinds:
                pc.addTransceiver(kind, direction="recvonly")

    async def _create_local_description(self, context: NegotiationContext, kind: str) -> SessionDescription:
        pc = context.pc
        try:
            description = await (pc.createOffer() if kind == "offer" else pc.createAnswer())
            await pc.setLocalDescription(description)
        except Exception as e:
            logger.error(
                f"[WebRTC] {kind} 생성/설정 실패: {e} "
                f"(signaling={pc.signalingState}, connection={pc.connectionState})"
            )
            raise NegotiationError(f"{kind} 생성 실패: {e}", peer_id=context.remote_peer_id) from e

        local = pc.localDescription
        logger.info(f"[WebRTC] local description 설정: {local.type} (signaling={pc.signalingState})")
        return SessionDescription(sdp=local.sdp, type=local.type)

    async def _apply_remote_description(
        self, context: NegotiationContext, description: SessionDescription
    ) -> None:
        pc = context.pc
        try:
            await pc.setRemoteDescription(
                RTCSessionDescription(sdp=description.sdp, type=description.type)
            )
        except Exception as e:
            logger.error(f"[WebRTC] remote description 설정 실패: {e}")
            raise NegotiationError(
                f"remote description 설정 실패: {e}", peer_id=context.remote_peer_id
            ) from e
        logger.info(f"[WebRTC] remote description 설정: {description.type} (signaling={pc.signalingState})")

    def _register_pc_handlers(self, context: NegotiationContext) -> None:
        pc = context.pc

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if self.store.context is context:
                await self.on_local_ice_candidate(candidate)

        @pc.on("track")
        def on_track(track: MediaStreamTrack):
            if self.store.context is not context:
                return
            session = self.store.session
            if session.remote_stream is None:
                session.remote_stream = MediaStream()
            session.remote_stream.add_track(track)
            logger.info(f"[WebRTC] 원격 {track.kind} 트랙 수신: {context.remote_peer_id}")

            @track.on("ended")
            def on_ended():
                logger.info(f"[WebRTC] 원격 {track.kind} 트랙 종료")

            if self.on_remote_track:
                self._spawn(_maybe_await(self.on_remote_track(track, session.remote_stream)))

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            state = pc.connectionState
            logger.info(f"[WebRTC] 연결 상태: {state} (peer={context.remote_peer_id})")
            if state in ("disconnected", "failed") and self.store.context is context:
                await self.handle_error(
                    TransportLoss(f"피어 연결 끊김 ({state})", peer_id=context.remote_peer_id)
                )

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            state = pc.iceConnectionState
            logger.info(f"[WebRTC] ICE 상태: {state} (peer={context.remote_peer_id})")
            if state == "failed" and self.store.context is context:
                await self.handle_error(
                    TransportLoss("ICE 연결 실패", peer_id=context.remote_peer_id)
                )

    async def _ask_decision(self, peer: Peer) -> bool:
        if self.decide is None:
            logger.warning("[WebRTC] 수신 통화 결정 콜백 없음 - 거절")
            return False
        try:
            return bool(
                await asyncio.wait_for(
                    _maybe_await(self.decide(peer)), timeout=connection_config.DECISION_TIMEOUT
                )
            )
        except asyncio.TimeoutError:
            logger.info(f"[WebRTC] 수락 여부 응답 시간 초과 - 거절: {peer.peer_id}")
            return False
        except Exception as e:
            logger.error(f"[WebRTC] 수락 여부 결정 실패 - 거절: {e}", exc_info=True)
            return False

    # ============================================================
    # 오류 처리
    # ============================================================

    async def handle_error(self, error: CallError) -> None:
        if isinstance(error, InvalidStateError):
            logger.warning(f"[WebRTC] 작업 무시: {error}")
            return
        if isinstance(error, IceApplicationError):
            logger.warning(f"[WebRTC] ICE candidate 버림: {error}")
            return

        if error.fatal:
            logger.error(f"[WebRTC] 통화 중단: {type(error).__name__}: {error}")
            await self._abort(error)
        else:
            logger.warning(f"[WebRTC] {type(error).__name__}: {error}")

        if error.user_facing:
            await self._notify_user(error)

    async def _abort(self, error: CallError) -> None:
        session = self.store.session
        peer_id = error.peer_id or session.remote_peer_id
        if (
            peer_id
            and not session.is_idle
            and session.state != CallState.CLOSED
            and not isinstance(error, TransportLoss)
        ):
            await self._send_quietly(
                "call-failed", CallFailed(to=peer_id, error=str(error)).to_wire()
            )
        await self.teardown(reason=type(error).__name__)

    async def _notify_user(self, error: CallError) -> None:
        if not self.on_error:
            return
        try:
            await _maybe_await(self.on_error(error))
        except Exception as e:
            logger.error(f"[WebRTC] 오류 콜백 실패: {e}", exc_info=True)

    def _on_binding_error(self, error: TrackBindingError) -> None:
        self._spawn(self._notify_user(error))

    async def _send_quietly(self, message_type: str, payload: dict) -> None:
        """전송 실패(TransportLoss)를 로그로만 남기는 전송."""
        try:
            await self.channel.send(message_type, payload)
        except TransportLoss as e:
            logger.warning(f"[WebRTC] {message_type} 전송 실패: {e}")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
