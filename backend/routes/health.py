"""Health Check API 라우터.

릴레이 서버 상태 확인을 위한 엔드포인트를 제공합니다.
"""

from fastapi import APIRouter

from .signaling import get_registry

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 상태와 현재 연결 수
    """
    registry = get_registry()
    if registry is None:
        return {"status": "not_initialized", "users": 0}
    return {
        "status": "ok",
        "users": len(registry.active_users()),
        "connections": len(registry),
    }
