"""시그널링 / 데이터 채널 공용 DTO.

릴레이 서버와 클라이언트가 주고받는 메시지의 envelope 과
파일 전송 핸드셰이크 레코드를 정의합니다.
"""

from typing import Any, Dict, Literal

from pydantic import BaseModel, Field


# 시그널링 메시지 타입
SESSION_ID = "session-id"
JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
ALL_USERS = "all-users"
PEER_LEFT = "peer-left"
OFFER = "offer"
ANSWER = "answer"
ICE = "ice"
ERROR = "error"

# 릴레이가 target 으로 그대로 전달하는 메시지 타입
RELAYED_TYPES = (OFFER, ANSWER, ICE)


class SignalMessage(BaseModel):
    """시그널링 envelope: {"type": ..., "data": {...}}."""

    type: str
    data: Dict[str, Any] = Field(default_factory=dict)


class FileStart(BaseModel):
    """파일 전송 핸드셰이크 레코드."""

    type: Literal["file-start"] = "file-start"
    name: str = Field(description="전송 파일 이름")
    size: int = Field(ge=0, description="선언된 전체 바이트 수")
