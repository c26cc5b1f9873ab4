"""개발용 릴레이 서버 모듈."""

from .presence import Connection, PresenceRegistry

__all__ = ["Connection", "PresenceRegistry"]
