"""시그널링 릴레이 설정.

릴레이 서버 포트, 허용 Origin, 접근 토큰, 로그 설정 등 환경변수 기반 설정.
"""

import hmac
import os
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Tuple

# 환경변수 로드 (상위에서 이미 로드됨)
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_origins(value: str) -> Tuple[str, ...]:
    """쉼표로 구분된 Origin 목록을 튜플로 변환."""
    return tuple(origin.strip().rstrip("/") for origin in value.split(",") if origin.strip())


# ============================================================
# 릴레이 서버 설정
# ============================================================

@dataclass(frozen=True)
class RelayConfig:
    """시그널링 릴레이 서버 설정."""

    HOST: str = os.getenv("RELAY_HOST", "0.0.0.0")
    PORT: int = int(os.getenv("RELAY_PORT", "3001"))

    # 허용 Origin ("*" 이면 전체 허용)
    ALLOWED_ORIGINS: Tuple[str, ...] = field(
        default_factory=lambda: _parse_origins(os.getenv("ALLOWED_ORIGINS", "*"))
    )

    # 접근 토큰 (비어 있으면 검증 생략)
    ACCESS_PASSWORD: str = os.getenv("ACCESS_PASSWORD", "")

    @property
    def allow_any_origin(self) -> bool:
        """모든 Origin 허용 여부."""
        return "*" in self.ALLOWED_ORIGINS

    def is_origin_allowed(self, origin) -> bool:
        """WebSocket 업그레이드 요청의 Origin 허용 여부.

        Origin 헤더가 없는 요청(브라우저가 아닌 클라이언트)은 허용합니다.
        """
        if not origin or self.allow_any_origin:
            return True
        return origin.rstrip("/") in self.ALLOWED_ORIGINS

    @property
    def auth_required(self) -> bool:
        return bool(self.ACCESS_PASSWORD)

    def is_token_valid(self, token) -> bool:
        """접근 토큰 검증. ACCESS_PASSWORD 가 비어 있으면 항상 통과합니다."""
        if not self.auth_required:
            return True
        if not isinstance(token, str) or not token:
            return False
        return hmac.compare_digest(token.encode(), self.ACCESS_PASSWORD.encode())

    @staticmethod
    def bearer_token(authorization) -> Optional[str]:
        """Bearer <token> 형식의 Authorization 헤더에서 토큰을 꺼냅니다.

        Returns:
            Optional[str]: 토큰. 헤더가 없거나 형식이 다르면 None
        """
        scheme, _, token = (authorization or "").strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            return None
        return token


# ============================================================
# 로그 설정
# ============================================================

@dataclass(frozen=True)
class LogConfig:
    """서버 로그 설정."""

    LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()
    DIR: Path = Path(os.getenv("LOG_DIR", "logs"))

    # 로그 보관 기간 (일) - 기본 60일
    RETENTION_DAYS: int = int(os.getenv("LOG_RETENTION_DAYS", "60"))


# ============================================================
# 싱글톤 인스턴스
# ============================================================

relay_config = RelayConfig()
log_config = LogConfig()
