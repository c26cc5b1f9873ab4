"""통화 세션 저장소 모듈.

단일 활성 통화의 식별 정보와 상태, 그리고 릴레이 접속자 로스터를 보관합니다.
협상 상태 머신, 오디오 파이프라인, 트랙 바인딩 관리자는 각자 핸들을 따로
들고 있지 않고 이 저장소의 세션 객체를 유일한 기준(single source of truth)으로 참조합니다.

주요 기능:
    - 통화 상태(CallState) 보관 및 전이 통지 (subscribe)
    - 피어 연결 컨텍스트(NegotiationContext) 보관 - 세션당 최대 1개
    - active-users 로스터 관리 (Peer)

Architecture:
    - session: CallSession - 현재 통화 (없으면 idle 세션)
    - context: Optional[NegotiationContext] - 현재 피어 연결
    - roster: Dict[str, Peer] - 소켓 ID → Peer

Examples:
    >>> store = CallSessionStore()
    >>> store.subscribe(lambda session, prev: print(prev, "->", session.state))
    >>> store.begin("socket-456", CallState.OUTGOING_OFFER_PENDING)
    idle -> outgoing-offer-pending
"""

import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional

from ..errors import InvalidStateError
from ..shared import UserEntry
from .media import MediaStream

logger = logging.getLogger(__name__)


class CallState(str, Enum):
    """통화 협상 상태."""

    IDLE = "idle"
    OUTGOING_OFFER_PENDING = "outgoing-offer-pending"
    AWAITING_ANSWER = "awaiting-answer"
    INCOMING_OFFER_RECEIVED = "incoming-offer-received"
    ANSWERING = "answering"
    CONNECTED = "connected"
    RENEGOTIATING = "renegotiating"
    CLOSED = "closed"


# 협상이 진행 중인 상태 (새 offer/통화 시도 차단)
NEGOTIATING_STATES = frozenset({
    CallState.OUTGOING_OFFER_PENDING,
    CallState.AWAITING_ANSWER,
    CallState.INCOMING_OFFER_RECEIVED,
    CallState.ANSWERING,
    CallState.RENEGOTIATING,
})


@dataclass
class Peer:
    """릴레이 로스터의 접속자.

    Attributes:
        peer_id (str): 릴레이가 부여한 소켓 ID
        display_name (str): 사용자 표시 이름
    """
    peer_id: str
    display_name: str


@dataclass
class NegotiationContext:
    """하나의 피어 연결과 그 협상 부속 상태.

    Attributes:
        pc: RTCPeerConnection
        remote_peer_id: 상대 피어 소켓 ID
        pending_remote_candidates: remote description 전에 도착한 candidate (도착 순서)
        pending_local_candidates: 상대 피어 ID가 정해지기 전에 생성된 로컬 candidate
        flushing: 원격 candidate 큐를 적용 중인지 여부
    """
    pc: Any
    remote_peer_id: Optional[str] = None
    pending_remote_candidates: Deque[Any] = field(default_factory=deque)
    pending_local_candidates: Deque[dict] = field(default_factory=deque)
    flushing: bool = False

    @property
    def signaling_state(self) -> str:
        return self.pc.signalingState

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None


@dataclass
class CallSession:
    """현재 통화.

    Attributes:
        state (CallState): 협상 상태
        remote_peer_id (Optional[str]): 상대 피어 소켓 ID
        local_stream (Optional[MediaStream]): 로컬 캡처 스트림 (원본)
        remote_stream (Optional[MediaStream]): 수신한 원격 트랙 묶음
    """
    state: CallState = CallState.IDLE
    remote_peer_id: Optional[str] = None
    local_stream: Optional[MediaStream] = None
    remote_stream: Optional[MediaStream] = None
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def negotiating(self) -> bool:
        return self.state in NEGOTIATING_STATES

    @property
    def is_idle(self) -> bool:
        return self.state == CallState.IDLE


SessionListener = Callable[[CallSession, CallState], None]


class CallSessionStore:
    """단일 활성 통화와 접속자 로스터를 관리하는 클래스.

    Attributes:
        session (CallSession): 현재 세션. 통화가 없으면 idle 세션
        context (Optional[NegotiationContext]): 현재 피어 연결 컨텍스트
        roster (Dict[str, Peer]): 소켓 ID → Peer

    Thread Safety:
        - asyncio 환경에서 단일 스레드로 동작
    """

    def __init__(self):
        self.session = CallSession()
        self.context: Optional[NegotiationContext] = None
        self.roster: Dict[str, Peer] = {}
        self._listeners: List[SessionListener] = []

    # ------------------------------------------------------------
    # 관찰자
    # ------------------------------------------------------------

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """상태 전이 관찰자를 등록합니다.

        Args:
            listener: (session, previous_state)를 받는 함수

        Returns:
            Callable[[], None]: 등록 해제 함수
        """
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener) if listener in self._listeners else None

    def _notify(self, previous: CallState) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.session, previous)
            except Exception as e:
                logger.error(f"[Session] 상태 관찰자 오류: {e}", exc_info=True)

    # ------------------------------------------------------------
    # 세션 상태
    # ------------------------------------------------------------

    def begin(self, remote_peer_id: Optional[str], state: CallState) -> CallSession:
        """idle 세션에서 새 통화를 시작합니다.

        Raises:
            InvalidStateError: 현재 세션이 idle이 아닌 경우
        """
        if not self.session.is_idle:
            raise InvalidStateError(
                f"이미 통화 중 (state={self.session.state.value})", peer_id=remote_peer_id
            )
        self.session.remote_peer_id = remote_peer_id
        self.transition(state)
        return self.session

    def transition(self, state: CallState) -> None:
        previous = self.session.state
        if previous == state:
            return
        self.session.state = state
        logger.info(
            f"[Session] {self.session.session_id[:8]} 상태 전이: {previous.value} -> {state.value}"
        )
        self._notify(previous)

    def attach_context(self, context: NegotiationContext) -> None:
        """세션에 피어 연결 컨텍스트를 붙입니다 (세션당 1개).

        Raises:
            InvalidStateError: 이미 컨텍스트가 있는 경우
        """
        if self.context is not None:
            raise InvalidStateError("세션에 이미 피어 연결이 있음")
        context.remote_peer_id = self.session.remote_peer_id
        self.context = context

    def clear_context(self) -> Optional[NegotiationContext]:
        context, self.context = self.context, None
        return context

    def reset(self) -> None:
        """통화를 폐기하고 새 idle 세션으로 교체합니다."""
        previous = self.session.state
        self.context = None
        self.session = CallSession()
        if previous != CallState.IDLE:
            logger.info(f"[Session] 세션 초기화 (이전 상태: {previous.value})")
            self._notify(previous)

    # ------------------------------------------------------------
    # 접속자 로스터
    # ------------------------------------------------------------

    def update_roster(self, users: Iterable[UserEntry], self_id: Optional[str] = None) -> List[Peer]:
        """active-users 목록으로 로스터를 교체합니다 (자기 자신 제외).

        Returns:
            List[Peer]: 갱신된 로스터
        """
        self.roster = {
            user.socket_id: Peer(peer_id=user.socket_id, display_name=user.user_id)
            for user in users
            if user.socket_id != self_id
        }
        logger.info(f"[Session] 접속자 로스터 갱신: {len(self.roster)}명")
        return self.peers

    def remove_peer(self, peer_id: str) -> Optional[Peer]:
        peer = self.roster.pop(peer_id, None)
        if peer:
            logger.info(f"[Session] 접속자 퇴장: {peer.display_name} ({peer_id})")
        return peer

    def get_peer(self, peer_id: str) -> Peer:
        """로스터에서 피어를 조회합니다. 없으면 이름 없는 Peer를 반환."""
        return self.roster.get(peer_id) or Peer(peer_id=peer_id, display_name="Unknown User")

    @property
    def peers(self) -> List[Peer]:
        return list(self.roster.values())
