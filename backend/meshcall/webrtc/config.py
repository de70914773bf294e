"""WebRTC 클라이언트 모듈 설정.

STUN 서버, 후보 대기 시간, 파일 전송 청크 크기, 캡처 장치 등
환경변수 기반 설정.
"""

import os
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정. STUN 서버 하나만 사용 (TURN 없음)."""

    STUN_SERVER_URL: str = os.getenv("STUN_SERVER_URL", "stun:stun.l.google.com:19302")


# ============================================================
# 메시 연결 설정
# ============================================================

@dataclass(frozen=True)
class ConnectionConfig:
    """피어 연결 / 재협상 관련 설정."""

    # remote description 적용 전 도착한 ICE 후보 최대 대기 시간 (초)
    PENDING_CANDIDATE_TTL: float = float(os.getenv("PENDING_CANDIDATE_TTL", "10.0"))

    # 같은 종류 트랙 교체만 있어도 재협상할지 여부
    RENEGOTIATE_ON_REPLACE: bool = _parse_bool(os.getenv("RENEGOTIATE_ON_REPLACE"), True)

    # 파일 전송용 데이터 채널 라벨
    DATA_CHANNEL_LABEL: str = "file-transfer"


# ============================================================
# 파일 전송 설정
# ============================================================

@dataclass(frozen=True)
class TransferConfig:
    """데이터 채널 파일 전송 설정."""

    # 청크 크기 (bytes) - 16 KiB
    CHUNK_SIZE: int = int(os.getenv("FILE_CHUNK_SIZE", str(16 * 1024)))

    # bufferedAmount 가 이 값을 넘으면 송신 대기
    HIGH_WATER: int = int(os.getenv("CHANNEL_HIGH_WATER", str(1024 * 1024)))

    # bufferedamountlow 이벤트 임계값
    LOW_WATER: int = int(os.getenv("CHANNEL_LOW_WATER", str(256 * 1024)))


# ============================================================
# 캡처 장치 설정
# ============================================================

@dataclass(frozen=True)
class CaptureConfig:
    """로컬 캡처 장치 (FFmpeg 입력) 설정. 기본값은 Linux 기준."""

    CAMERA_DEVICE: str = os.getenv("CAMERA_DEVICE", "/dev/video0")
    CAMERA_FORMAT: str = os.getenv("CAMERA_FORMAT", "v4l2")
    MIC_DEVICE: str = os.getenv("MIC_DEVICE", "default")
    MIC_FORMAT: str = os.getenv("MIC_FORMAT", "pulse")
    SCREEN_DEVICE: str = os.getenv("SCREEN_DEVICE", ":0.0")
    SCREEN_FORMAT: str = os.getenv("SCREEN_FORMAT", "x11grab")


# ============================================================
# 데이터 저장 경로
# ============================================================

@dataclass(frozen=True)
class StorageConfig:
    """데이터 저장 경로 설정."""

    # 수신 파일 저장 경로
    DOWNLOADS_DIR: Path = Path(os.getenv("DOWNLOADS_DIR", "data/downloads"))

    def ensure_dirs(self) -> None:
        """필요한 디렉토리 생성."""
        self.DOWNLOADS_DIR.mkdir(parents=True, exist_ok=True)


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
connection_config = ConnectionConfig()
transfer_config = TransferConfig()
capture_config = CaptureConfig()
storage_config = StorageConfig()
