"""릴레이 접속자 관리 모듈.

개발용 릴레이 서버에 연결된 클라이언트(소켓)와 등록된 사용자 이름을 추적합니다.

Architecture:
    - connections: Dict[str, Connection] - 소켓 ID → 연결 정보
    - 등록(register) 전 연결은 로스터에 나타나지 않음

Examples:
    >>> registry = PresenceRegistry()
    >>> registry.connect("sock-1", websocket)
    >>> registry.register("sock-1", "상담사")
    >>> registry.active_users()
    [{'userId': '상담사', 'socketId': 'sock-1'}]
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """릴레이에 연결된 클라이언트.

    Attributes:
        socket_id (str): 릴레이가 부여한 소켓 ID (UUID)
        websocket: 클라이언트 WebSocket (send_json 제공)
        user_id (Optional[str]): 등록된 표시 이름 (등록 전 None)
    """
    socket_id: str
    websocket: Any
    user_id: Optional[str] = None


class PresenceRegistry:
    """소켓 연결과 사용자 등록을 관리하는 클래스.

    Thread Safety:
        - asyncio 환경에서 단일 스레드로 동작
    """

    def __init__(self):
        # socket_id -> Connection
        self.connections: Dict[str, Connection] = {}

    def connect(self, socket_id: str, websocket: Any) -> Connection:
        connection = Connection(socket_id=socket_id, websocket=websocket)
        self.connections[socket_id] = connection
        logger.info(f"[Relay] 소켓 연결: {socket_id}. 현재 {len(self.connections)}개")
        return connection

    def register(self, socket_id: str, user_id: str) -> bool:
        """소켓에 사용자 이름을 등록합니다 (재등록 시 덮어씀).

        Returns:
            bool: 소켓이 존재해 등록되었는지 여부
        """
        connection = self.connections.get(socket_id)
        if connection is None:
            logger.warning(f"[Relay] 없는 소켓 등록 시도: {socket_id}")
            return False
        connection.user_id = user_id
        logger.info(f"[Relay] 사용자 등록: '{user_id}' ({socket_id})")
        return True

    def disconnect(self, socket_id: str) -> Optional[Connection]:
        connection = self.connections.pop(socket_id, None)
        if connection:
            logger.info(
                f"[Relay] 소켓 해제: '{connection.user_id}' ({socket_id}). "
                f"현재 {len(self.connections)}개"
            )
        return connection

    def get(self, socket_id: str) -> Optional[Connection]:
        return self.connections.get(socket_id)

    def active_users(self) -> List[dict]:
        """등록된 사용자 목록 (active-users 페이로드)."""
        return [
            {"userId": c.user_id, "socketId": c.socket_id}
            for c in self.connections.values()
            if c.user_id is not None
        ]

    def __len__(self) -> int:
        return len(self.connections)
