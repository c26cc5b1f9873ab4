"""송신 트랙 바인딩 모듈.

피어 연결에 실제로 바인딩된 송신 트랙(sender)을 "흘러야 하는" 트랙 목록과
일치시킵니다. 같은 종류(kind)의 sender가 있으면 replaceTrack으로 교체하고
(재협상 불필요), 없으면 addTrack으로 새 sender를 추가합니다 (SDP 구조 변경 →
재협상 필요).

Reconcile Rules:
    1. 이미 같은 트랙이 바인딩됨 → 아무것도 하지 않음 (멱등)
    2. 같은 kind의 sender가 있음 → replaceTrack
    3. sender가 없거나 트랙이 비어있음 → addTrack + 재협상 요청
       (시그널링 상태가 이미 협상 중이면 재협상은 그 협상에 포함되므로 생략)
    4. 원하는 목록에 없는 kind의 sender → replaceTrack(None)으로 송신만 중단
    5. replaceTrack 실패 → 보고 후 addTrack으로 1회 재시도

Note:
    - 종류별로 정확히 하나의 송신 트랙만 바인딩됨 (원본/처리 오디오 동시 바인딩 없음)
    - 실패는 on_error 콜백과 로그로 보고되며 예외로 전파되지 않음
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Set

from aiortc import MediaStreamTrack

from ..errors import TrackBindingError
from .session_store import CallSessionStore

logger = logging.getLogger(__name__)


@dataclass
class BindingResult:
    """reconcile() 결과 (kind 목록)."""

    replaced: List[str] = field(default_factory=list)
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    renegotiation_needed: bool = False

    @property
    def churn(self) -> bool:
        """sender에 변화가 있었는지 여부."""
        return bool(self.replaced or self.added or self.removed)


class TrackBindingManager:
    """송신 트랙과 피어 연결 sender를 일치시키는 클래스.

    Attributes:
        store (CallSessionStore): 현재 피어 연결을 참조할 세션 저장소
        on_renegotiation_needed: 구조 변경 시 호출되는 콜백 (보통 request_renegotiation)
        on_error: 바인딩 실패 보고 콜백
    """

    def __init__(
        self,
        store: CallSessionStore,
        on_renegotiation_needed: Optional[Callable[[], Any]] = None,
        on_error: Optional[Callable[[TrackBindingError], Any]] = None,
    ):
        self.store = store
        self.on_renegotiation_needed = on_renegotiation_needed
        self.on_error = on_error
        self._tasks: Set[asyncio.Task] = set()

    def reconcile(self, desired_tracks: Iterable[Optional[MediaStreamTrack]]) -> BindingResult:
        """원하는 송신 트랙 목록과 현재 sender를 일치시킵니다.

        Args:
            desired_tracks: 흘러야 하는 트랙 목록 (kind당 하나, None은 무시)

        Returns:
            BindingResult: 교체/추가/제거/실패한 kind 목록과 재협상 필요 여부
        """
        result = BindingResult()
        context = self.store.context
        if context is None:
            logger.warning("[Binding] 활성 피어 연결 없음 - reconcile 생략")
            return result

        pc = context.pc
        desired = {}
        for track in desired_tracks:
            if track is None:
                continue
            if track.kind in desired:
                logger.warning(f"[Binding] {track.kind} 트랙 중복 지정 - 첫 번째만 사용")
                continue
            desired[track.kind] = track

        structural = False
        for kind, track in desired.items():
            sender = self._find_sender(pc, kind)

            if sender is not None and sender.track is track:
                result.unchanged.append(kind)
                continue

            had_track = sender is not None and sender.track is not None
            if had_track:
                try:
                    self._replace(pc, sender, track)
                    result.replaced.append(kind)
                    logger.info(f"[Binding] {kind} 트랙 교체 (재협상 없음)")
                    continue
                except Exception as e:
                    self._report(TrackBindingError(f"{kind} 트랙 교체 실패: {e}"))
                    logger.info(f"[Binding] {kind} 트랙 addTrack으로 재시도")
                    # 같은 transceiver를 재사용하도록 비워둔 뒤 추가
                    try:
                        sender.replaceTrack(None)
                    except Exception:
                        logger.debug(f"[Binding] {kind} sender 비우기 실패", exc_info=True)

            senders_before = len(pc.getSenders())
            try:
                pc.addTrack(track)
            except Exception as e:
                self._report(TrackBindingError(f"{kind} 트랙 추가 실패: {e}"))
                result.failed.append(kind)
                continue

            result.added.append(kind)
            if not had_track or len(pc.getSenders()) > senders_before:
                structural = True
            logger.info(f"[Binding] {kind} 트랙 추가 (senders={len(pc.getSenders())})")

        for sender in pc.getSenders():
            kind = self._sender_kind(sender)
            if sender.track is not None and kind not in desired:
                try:
                    sender.replaceTrack(None)
                    result.removed.append(kind)
                    logger.info(f"[Binding] {kind} 송신 중단")
                except Exception as e:
                    self._report(TrackBindingError(f"{kind} 송신 중단 실패: {e}"))
                    result.failed.append(kind)

        if structural:
            if context.signaling_state != "stable":
                logger.info(
                    f"[Binding] 협상 진행 중 (signaling={context.signaling_state}) - 재협상 생략"
                )
            else:
                result.renegotiation_needed = True
                self._trigger_renegotiation()

        return result

    @staticmethod
    def _sender_kind(sender) -> Optional[str]:
        if sender.track is not None:
            return sender.track.kind
        return getattr(sender, "kind", None)

    def _find_sender(self, pc, kind: str):
        for sender in pc.getSenders():
            if self._sender_kind(sender) == kind:
                return sender
        return None

    @staticmethod
    def _replace(pc, sender, track: MediaStreamTrack) -> None:
        if track.readyState == "ended":
            raise TrackBindingError("트랙이 이미 종료됨")
        if pc.connectionState == "closed" or pc.signalingState == "closed":
            raise TrackBindingError("피어 연결이 닫힘")
        sender.replaceTrack(track)

    def _report(self, error: TrackBindingError) -> None:
        logger.warning(f"[Binding] {error}")
        if self.on_error:
            try:
                self.on_error(error)
            except Exception as e:
                logger.error(f"[Binding] 오류 콜백 실패: {e}", exc_info=True)

    def _trigger_renegotiation(self) -> None:
        if not self.on_renegotiation_needed:
            return
        logger.info("[Binding] sender 구조 변경 - 재협상 요청")
        outcome = self.on_renegotiation_needed()
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
