"""로깅 설정 모듈.

릴레이 서버와 통화 클라이언트가 공통으로 사용하는 로깅 설정입니다.
- 콘솔 출력
- 일자별 파일 출력 (logs/<prefix>_YYYYMMDD.log)
- 오래된 로그 파일 정리

사용 예시:
    from peercall.utils.logging_config import setup_logging

    # 애플리케이션 시작 시 호출
    setup_logging(prefix="relay")
"""

import glob
import logging
import os
from datetime import datetime, timedelta
from typing import Optional

# 환경별 로그 레벨 설정 (환경변수로 제어)
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")

# 로그 보관 기간 (일) - 기본 60일
LOG_RETENTION_DAYS = int(os.getenv("LOG_RETENTION_DAYS", "60"))


def cleanup_old_logs(log_dir: str = LOG_DIR, retention_days: int = LOG_RETENTION_DAYS) -> int:
    """오래된 로그 파일을 삭제합니다.

    Args:
        log_dir: 로그 디렉토리 경로
        retention_days: 보관 기간 (일)

    Returns:
        삭제된 파일 수
    """
    if not os.path.exists(log_dir):
        return 0

    cutoff_date = datetime.now() - timedelta(days=retention_days)
    deleted_count = 0

    for log_file in glob.glob(os.path.join(log_dir, "*_*.log")):
        try:
            filename = os.path.basename(log_file)
            date_str = filename.rsplit("_", 1)[1].replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")

            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, IndexError, OSError):
            continue

    return deleted_count


def setup_logging(
    prefix: str = "peercall",
    level: Optional[str] = None,
    log_dir: Optional[str] = LOG_DIR,
) -> str:
    """로깅 설정을 초기화합니다.

    Args:
        prefix: 로그 파일 이름 접두사 ("relay", "client" 등)
        level: 로그 레벨 (기본: LOG_LEVEL 환경변수)
        log_dir: 로그 디렉토리. None이면 파일 출력 없이 콘솔만 사용

    Returns:
        str: 적용된 로그 레벨 이름

    Note:
        애플리케이션 시작 시 한 번만 호출해야 합니다.
    """
    level_name = (level or LOG_LEVEL).upper()
    handlers = [logging.StreamHandler()]  # 콘솔 출력

    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        log_filename = os.path.join(log_dir, f"{prefix}_{datetime.now().strftime('%Y%m%d')}.log")
        handlers.append(logging.FileHandler(log_filename, encoding="utf-8"))  # 파일 저장

    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
        force=True,
    )

    # aioice/aiortc 내부 로그는 너무 많음
    logging.getLogger("aioice").setLevel(logging.WARNING)
    logging.getLogger("aiortc").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"로깅 초기화 완료: level={level_name}, prefix={prefix}")

    if log_dir:
        deleted = cleanup_old_logs(log_dir)
        if deleted > 0:
            logger.info(f"오래된 로그 파일 {deleted}개 정리 완료 ({LOG_RETENTION_DAYS}일 이상)")

    return level_name
