"""FastAPI 시그널링 릴레이 서버.

이 모듈은 1:1 음성/영상 통화를 위한 개발용 시그널링 릴레이를 제공합니다.
FastAPI와 WebSocket을 사용하여 두 클라이언트 간 offer/answer/ICE candidate를
중계합니다. 미디어는 서버를 거치지 않습니다 (peer-to-peer).

주요 기능:
    - 접속자 등록 및 active-users 브로드캐스트
    - 통화 협상 메시지 중계 (수신자에게 발신자 ID를 채워 전달)
    - 접속 종료 알림 (user-disconnected)
    - ICE 서버(STUN) 설정 제공
    - CORS 설정을 통한 크로스 오리진 요청 지원

Architecture:
    - PresenceRegistry: 소켓 연결 및 사용자 등록 상태 관리
    - WebSocket: 실시간 시그널링 메시지 전송
"""
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# config/.env 환경변수 로드
load_dotenv(Path(__file__).parent / "config" / ".env")

from peercall.relay import PresenceRegistry  # noqa: E402
from peercall.utils import setup_logging  # noqa: E402
from peercall.webrtc.config import ice_config  # noqa: E402
from routes import health_router, signaling_router, init_signaling_registry  # noqa: E402

# 로그 설정
setup_logging(prefix="relay")
logger = logging.getLogger(__name__)


# 글로벌 레지스트리 인스턴스
registry = PresenceRegistry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 종료 시 남아있는 WebSocket 연결을 닫음
    """
    logger.info("[Relay] 시그널링 릴레이 서버 시작 중...")

    yield

    logger.info("[Relay] 서버 종료 중...")
    for connection in list(registry.connections.values()):
        try:
            await connection.websocket.close(code=1001)
        except Exception as e:
            logger.debug(f"[Relay] 연결 종료 중 오류 무시: {e}")


app = FastAPI(title="Peercall Signaling Relay", lifespan=lifespan)

# CORS - 개발 환경에서는 로컬 네트워크 허용
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^http://(localhost|127\.0\.0\.1|192\.168\.\d{1,3}\.\d{1,3}):\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 레지스트리 전달
init_signaling_registry(registry)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트.

    Returns:
        dict: 서버 상태 정보
            - status (str): 서버 상태
            - service (str): 서비스 이름
    """
    return {"status": "ok", "service": "Peercall Signaling Relay"}


@app.get("/api/ice-servers")
async def get_ice_servers():
    """클라이언트가 사용할 ICE 서버 목록을 제공합니다.

    TURN 릴레이는 지원하지 않으므로 STUN 서버만 반환합니다.

    Returns:
        list: ICE server 설정 리스트
            [{"urls": "stun:stun.l.google.com:19302"}, ...]
    """
    ice_servers = [{"urls": url} for url in ice_config.stun_urls]
    logger.info(f"[Relay] ICE 서버 제공: STUN {len(ice_servers)}개")
    return ice_servers


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000, log_level="info")
