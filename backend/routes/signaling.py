"""시그널링 릴레이 WebSocket 라우터.

두 클라이언트 간 통화 협상 메시지를 중계하는 개발용 릴레이입니다.
메시지 내용은 해석하지 않고, 수신자(to)에게 발신자(from)를 채워 전달합니다.

메시지 흐름:
    - 연결 직후: registered{socketId} 전송
    - register{userId, socketId}: 사용자 등록 후 모두에게 active-users 브로드캐스트
    - call-user{to, offer} → 수신자에게 call-received{from, offer}
    - call-accepted / call-rejected / ice-candidate / end-call / call-failed /
      renegotiation-needed
      → 같은 타입으로 수신자에게 {from, ...} 전달
    - 연결 종료: user-disconnected{socketId}와 active-users 브로드캐스트
"""

import json
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from peercall.relay import PresenceRegistry
from peercall.shared import RegisterPayload, SignalEnvelope

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 레지스트리 참조 (app.py에서 설정됨)
_registry: Optional[PresenceRegistry] = None

# 수신 타입 → (전달 타입, 함께 전달할 필드)
ROUTED_MESSAGES = {
    "call-user": ("call-received", "offer"),
    "call-accepted": ("call-accepted", "answer"),
    "call-rejected": ("call-rejected", None),
    "ice-candidate": ("ice-candidate", "candidate"),
    "end-call": ("end-call", None),
    "call-failed": ("call-failed", "error"),
    "renegotiation-needed": ("renegotiation-needed", None),
}


def init_registry(registry: PresenceRegistry):
    """레지스트리 인스턴스를 초기화합니다. app.py에서 호출."""
    global _registry
    _registry = registry
    logger.info("[Relay] 시그널링 라우터 레지스트리 초기화 완료")


def get_registry() -> Optional[PresenceRegistry]:
    return _registry


async def send_to(socket_id: str, message_type: str, data) -> bool:
    """특정 소켓에 메시지를 전송합니다.

    Returns:
        bool: 전송 성공 여부
    """
    connection = _registry.get(socket_id) if _registry else None
    if connection is None:
        return False
    try:
        await connection.websocket.send_json({"type": message_type, "data": data})
        return True
    except Exception as e:
        logger.error(f"[Relay] {socket_id} 에 {message_type} 전송 중 오류: {e}")
        return False


async def broadcast(message_type: str, data, exclude: Optional[str] = None):
    """모든 연결에 메시지를 브로드캐스트합니다."""
    if _registry is None:
        return
    for socket_id in list(_registry.connections):
        if socket_id != exclude:
            await send_to(socket_id, message_type, data)


async def broadcast_active_users():
    await broadcast("active-users", _registry.active_users())


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """시그널링 릴레이 WebSocket 엔드포인트.

    Args:
        websocket: FastAPI WebSocket 연결 객체
    """
    if _registry is None:
        logger.error("[Relay] 레지스트리가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    await websocket.accept()

    socket_id = str(uuid.uuid4())
    _registry.connect(socket_id, websocket)

    # 클라이언트에 소켓 ID 전송
    await websocket.send_json({"type": "registered", "data": {"socketId": socket_id}})

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                envelope = SignalEnvelope.model_validate(json.loads(raw))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"[Relay] 잘못된 메시지 무시 ({socket_id}): {e}")
                continue

            await _handle_message(socket_id, envelope.type, envelope.data)

    except WebSocketDisconnect:
        logger.info(f"[Relay] 소켓 {socket_id} 연결 해제")
    except Exception as e:
        logger.error(f"[Relay] 소켓 {socket_id} 처리 중 오류: {e}", exc_info=True)
    finally:
        if _registry.disconnect(socket_id) is not None:
            await broadcast("user-disconnected", {"socketId": socket_id})
            await broadcast_active_users()


async def _handle_message(socket_id: str, message_type: str, data) -> None:
    if message_type == "register":
        await _handle_register(socket_id, data)
        return

    route = ROUTED_MESSAGES.get(message_type)
    if route is None:
        logger.warning(f"[Relay] 알 수 없는 메시지 타입: {message_type}")
        return

    if not isinstance(data, dict) or not data.get("to"):
        logger.warning(f"[Relay] {message_type} 수신자 없음 ({socket_id})")
        return

    target = data["to"]
    forward_type, field = route
    forwarded = {"from": socket_id}
    if field is not None:
        forwarded[field] = data.get(field)

    delivered = await send_to(target, forward_type, forwarded)
    if delivered:
        logger.debug(f"[Relay] {message_type} 전달: {socket_id[:8]} -> {target[:8]}")
        return

    logger.info(f"[Relay] {message_type} 수신자 없음: {target}")
    if message_type == "call-user":
        # 발신자에게 통화 실패 알림 (수신자 부재)
        await send_to(socket_id, "call-failed", {"from": target, "error": "User not available"})


async def _handle_register(socket_id: str, data) -> None:
    try:
        payload = RegisterPayload.model_validate(data)
    except ValidationError as e:
        logger.warning(f"[Relay] 잘못된 register 페이로드 ({socket_id}): {e}")
        return

    if payload.socket_id != socket_id:
        logger.warning(
            f"[Relay] register socketId 불일치: {payload.socket_id} != {socket_id} - 연결 소켓 사용"
        )
    if _registry.register(socket_id, payload.user_id):
        await broadcast_active_users()
