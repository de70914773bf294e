"""시그널링 릴레이 모듈 (서버).

Classes:
    SignalingRelay: 룸 입장 및 offer/answer/ice 중계
    Session: 릴레이에 연결된 세션
    RoomRegistry: 룸 → 세션 멤버십 테이블

Config:
    relay_config: 포트 / Origin / 접근 토큰
    log_config: 로그 레벨 / 디렉토리 / 보관 기간
"""

from .room_registry import RoomRegistry, Member
from .relay import SignalingRelay, Session
from .config import relay_config, log_config, RelayConfig, LogConfig

__all__ = [
    "RoomRegistry",
    "Member",
    "SignalingRelay",
    "Session",
    "relay_config",
    "log_config",
    "RelayConfig",
    "LogConfig",
]
