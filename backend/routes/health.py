"""Health Check / 룸 조회 API 라우터.

릴레이 상태 확인과 현재 룸 목록 조회 엔드포인트를 제공합니다.
"""

from fastapi import APIRouter, Depends

from .deps import require_access_token
from .signaling import get_relay

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check():
    """릴레이 상태를 확인합니다.

    Returns:
        dict: 상태, 연결된 세션 수, 활성 룸 수
    """
    relay = get_relay()
    if relay is None:
        return {"status": "not_initialized", "sessions": 0, "rooms": 0}

    return {
        "status": "ok",
        "sessions": relay.session_count,
        "rooms": len(relay.rooms.rooms),
    }


@router.get("/rooms", dependencies=[Depends(require_access_token)])
async def list_rooms():
    """활성 룸 목록과 멤버 세션 ID 를 반환합니다."""
    relay = get_relay()
    rooms = relay.rooms.get_room_list() if relay is not None else []
    return {"rooms": rooms}
