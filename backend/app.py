"""FastAPI 시그널링 릴레이 서버.

이 모듈은 풀메시 룸 통화를 위한 시그널링 릴레이 서버를 제공합니다.
미디어는 서버를 거치지 않고 피어 간에 직접 흐르며, 서버는 룸 멤버십과
offer / answer / ice 메시지 중계만 담당합니다.

주요 기능:
    - 룸 입장 시 기존 멤버 목록(all-users) 전달
    - offer / answer / ice 메시지 1:1 중계 (세션 쌍별 순서 보장)
    - 퇴장 / 연결 끊김 시 peer-left 브로드캐스트
    - CORS / WebSocket Origin 검증, 선택적 접근 토큰

Architecture:
    - Mesh 패턴 (각 세션이 다른 모든 세션과 직접 연결)
    - SignalingRelay: 세션 / 송신 큐 관리 및 메시지 중계
    - RoomRegistry: 룸 멤버십 테이블 (단일 프로세스 메모리)
    - WebSocket: 실시간 시그널링 메시지 전송
"""

import glob
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from pathlib import Path

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load 환경변수 from config/.env
load_dotenv(Path(__file__).parent / "config" / ".env")

from meshcall.signaling import SignalingRelay, relay_config, log_config  # noqa: E402
from routes import health_router, signaling_router, init_relay  # noqa: E402

# 로그 설정
os.makedirs(log_config.DIR, exist_ok=True)
log_filename = log_config.DIR / f"server_{datetime.now().strftime('%Y%m%d')}.log"


def cleanup_old_logs(log_dir: Path = log_config.DIR, retention_days: int = log_config.RETENTION_DAYS) -> int:
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

    for log_file in glob.glob(os.path.join(log_dir, "server_*.log")):
        try:
            date_str = os.path.basename(log_file).replace("server_", "").replace(".log", "")
            file_date = datetime.strptime(date_str, "%Y%m%d")
            if file_date < cutoff_date:
                os.remove(log_file)
                deleted_count += 1
        except (ValueError, OSError):
            continue

    return deleted_count


logging.basicConfig(
    level=getattr(logging, log_config.LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    handlers=[
        logging.StreamHandler(),  # 콘솔 출력
        logging.FileHandler(log_filename, encoding="utf-8"),  # 파일 저장
    ]
)

logger = logging.getLogger(__name__)
logger.info(f"로깅 초기화 완료: level={log_config.LEVEL}")

# 글로벌 릴레이 인스턴스
relay = SignalingRelay()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI 앱의 생명주기를 관리하는 컨텍스트 매니저.

    Note:
        - 시작: 오래된 로그 파일 정리
        - 종료: 모든 세션 정리 (송신 태스크 취소)
    """
    logger.info("[Relay] 시그널링 릴레이 서버 시작 중...")

    deleted_logs = cleanup_old_logs()
    if deleted_logs > 0:
        logger.info(f"오래된 로그 파일 {deleted_logs}개 정리 완료 ({log_config.RETENTION_DAYS}일 이상)")

    yield

    logger.info("[Relay] 서버 종료 중...")
    await relay.close_all()


app = FastAPI(title="Mesh Call Signaling Relay", lifespan=lifespan)

# CORS - ALLOWED_ORIGINS 와 WebSocket Origin 검증이 같은 목록을 사용
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(relay_config.ALLOWED_ORIGINS),
    allow_credentials=not relay_config.allow_any_origin,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 라우터 등록
app.include_router(health_router)
app.include_router(signaling_router)

# WebSocket 시그널링 라우터에 릴레이 인스턴스 전달
init_relay(relay)


@app.get("/")
async def root():
    """서버 상태 확인 엔드포인트 (Health check).

    Returns:
        dict: 서버 상태 정보를 포함하는 딕셔너리
            - status (str): 서버 상태
            - service (str): 서비스 이름

    Examples:
        >>> response = await root()
        >>> print(response)
        {"status": "ok", "service": "Mesh Call Signaling Relay"}
    """
    return {"status": "ok", "service": "Mesh Call Signaling Relay"}


if __name__ == "__main__":
    uvicorn.run(app, host=relay_config.HOST, port=relay_config.PORT)
