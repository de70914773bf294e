"""룸 기반 세션 관리 모듈.

이 모듈은 시그널링 릴레이의 룸(방)과 세션(참가자) 멤버십을 관리합니다.
프로세스 메모리에만 존재하는 룸 테이블이며, 릴레이 외부에서는 변경하지 않습니다.

주요 기능:
    - 첫 입장 시 룸 자동 생성, 비어 있으면 자동 삭제
    - 세션 입장/퇴장 관리 (세션은 동시에 하나의 룸에만 속함)
    - 룸별 멤버 목록 조회

Architecture:
    - rooms: Dict[str, Dict[str, Member]] - 룸 ID → 멤버 맵 (입장 순서 유지)
    - session_to_room: Dict[str, str] - 세션 ID → 룸 ID (빠른 조회용)

Examples:
    >>> registry = RoomRegistry()
    >>> registry.join("R1", "session-a")
    []
    >>> registry.join("R1", "session-b")
    ['session-a']
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class Member:
    """룸에 입장한 세션.

    Attributes:
        session_id (str): 릴레이가 발급한 세션 ID
        joined_at (float): 입장 시각 (epoch seconds)
    """
    session_id: str
    joined_at: float = field(default_factory=time.time)


class RoomRegistry:
    """룸 ID → 세션 집합 매핑.

    Thread Safety:
        - asyncio 이벤트 루프 단일 스레드에서만 변경됨
        - 락 없이 사용 (SignalingRelay 가 유일한 소유자)
    """

    def __init__(self):
        # room_id -> {session_id: Member}
        self.rooms: Dict[str, Dict[str, Member]] = {}

        # session_id -> room_id (for quick lookup)
        self.session_to_room: Dict[str, str] = {}

    def join(self, room_id: str, session_id: str) -> List[str]:
        """세션을 룸에 추가하고 기존 멤버 목록을 반환합니다.

        이미 같은 룸의 멤버이면 멤버십은 변하지 않고 목록만 반환합니다.
        다른 룸에 속해 있다면 호출자가 먼저 leave() 해야 합니다.

        Args:
            room_id (str): 입장할 룸 ID
            session_id (str): 입장하는 세션 ID

        Returns:
            List[str]: 본인을 제외한 멤버 세션 ID (입장 순서)

        Raises:
            ValueError: 세션이 이미 다른 룸에 속해 있는 경우
        """
        current = self.session_to_room.get(session_id)
        if current is not None and current != room_id:
            raise ValueError(f"session {session_id} is already in room '{current}'")

        if room_id not in self.rooms:
            self.rooms[room_id] = {}
            logger.info(f"[Room] Room '{room_id}' created")

        members = self.rooms[room_id]
        if session_id not in members:
            members[session_id] = Member(session_id=session_id)
            self.session_to_room[session_id] = room_id
            logger.info(f"[Room] 세션 {session_id[:8]} 입장: room='{room_id}', 멤버 {len(members)}명")

        return [sid for sid in members if sid != session_id]

    def leave(self, session_id: str) -> Optional[str]:
        """세션을 현재 룸에서 제거합니다.

        마지막 멤버가 나가면 룸도 삭제됩니다.

        Returns:
            Optional[str]: 세션이 속해 있던 룸 ID. 어떤 룸에도 없었으면 None
        """
        room_id = self.session_to_room.pop(session_id, None)
        if room_id is None:
            return None

        members = self.rooms.get(room_id, {})
        members.pop(session_id, None)

        if not members:
            self.rooms.pop(room_id, None)
            logger.info(f"[Room] Room '{room_id}' deleted (empty)")
        else:
            logger.info(f"[Room] 세션 {session_id[:8]} 퇴장: room='{room_id}', 멤버 {len(members)}명")

        return room_id

    def members(self, room_id: str) -> List[str]:
        """룸의 모든 멤버 세션 ID. 룸이 없으면 빈 리스트."""
        return list(self.rooms.get(room_id, {}))

    def room_of(self, session_id: str) -> Optional[str]:
        return self.session_to_room.get(session_id)

    def get_room_list(self) -> List[dict]:
        """모든 룸의 정보를 리스트로 반환합니다.

        Returns:
            List[dict]: room_id, member_count, members 키를 가진 딕셔너리 리스트
        """
        return [
            {
                "room_id": room_id,
                "member_count": len(members),
                "members": list(members),
            }
            for room_id, members in self.rooms.items()
        ]

    def get_room_count(self, room_id: str) -> int:
        return len(self.rooms.get(room_id, {}))
