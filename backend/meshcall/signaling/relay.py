"""시그널링 릴레이 모듈.

세션별 장기 연결(WebSocket)을 받아 룸 입장을 처리하고, 두 세션 사이의
offer / answer / ice 메시지를 그대로 중계합니다. 페이로드 내용은 해석하지 않으며
라우팅 필드(target)만 사용합니다.

Architecture:
    - Session: 세션 ID + 송신 함수 + 송신 큐(outbox) + writer 태스크
    - 송신은 항상 세션별 asyncio.Queue 에 동기적으로 적재되고 writer 태스크 하나가
      순서대로 내보냄 → 같은 (sender, target) 쌍의 메시지 순서(FIFO)가 보장됨
    - 느린 수신자가 다른 세션의 수신 루프를 막지 않음

Broadcast:
    - peer-left 만 룸 전체에 브로드캐스트됩니다 (퇴장/연결 끊김 시)

Examples:
    >>> relay = SignalingRelay()
    >>> session = relay.register(websocket.send_json)
    >>> relay.handle(session.session_id, {"type": "join-room", "data": {"roomId": "R1"}})
    >>> await relay.disconnect(session.session_id)
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, Optional

from pydantic import ValidationError

from .room_registry import RoomRegistry
from ..shared.dto import (
    SignalMessage,
    SESSION_ID,
    JOIN_ROOM,
    LEAVE_ROOM,
    ALL_USERS,
    PEER_LEFT,
    ERROR,
    RELAYED_TYPES,
)

logger = logging.getLogger(__name__)

SendFunc = Callable[[dict], Awaitable[None]]


@dataclass
class Session:
    """릴레이에 연결된 클라이언트 하나.

    Attributes:
        session_id (str): 릴레이가 발급한 UUID
        send (SendFunc): 실제 소켓으로 JSON 메시지를 보내는 코루틴 함수
        outbox (asyncio.Queue): 송신 대기 메시지 큐
        writer (Optional[asyncio.Task]): outbox 를 비우는 태스크
        busy (bool): writer 가 send() 를 기다리는 중인지 여부
        closed (bool): 연결 종료 여부 (이후 적재되는 메시지는 버려짐)
    """
    session_id: str
    send: SendFunc
    outbox: asyncio.Queue = field(default_factory=asyncio.Queue)
    writer: Optional[asyncio.Task] = None
    busy: bool = False
    closed: bool = False


class SignalingRelay:
    """룸 입장과 1:1 시그널링 메시지 중계를 담당하는 릴레이.

    RoomRegistry 의 유일한 소유자이며, 모든 변경은 이벤트 루프 스레드에서
    한 번에 하나의 이벤트로만 일어납니다.

    Attributes:
        rooms (RoomRegistry): 룸 멤버십 테이블
        sessions (Dict[str, Session]): 세션 ID → Session
    """

    def __init__(self, rooms: Optional[RoomRegistry] = None):
        self.rooms = rooms or RoomRegistry()
        self.sessions: Dict[str, Session] = {}

    # ------------------------------------------------------------
    # 연결 수명주기
    # ------------------------------------------------------------

    def register(self, send: SendFunc, session_id: Optional[str] = None) -> Session:
        """새 연결을 세션으로 등록하고 session-id 메시지를 보냅니다.

        Args:
            send: 소켓으로 dict 를 JSON 전송하는 코루틴 함수
            session_id: 테스트 등에서 고정 ID 를 쓰고 싶을 때 지정

        Returns:
            Session: 등록된 세션
        """
        session_id = session_id or str(uuid.uuid4())
        session = Session(session_id=session_id, send=send)
        self.sessions[session_id] = session
        session.writer = asyncio.create_task(self._write_loop(session))

        self._enqueue(session, {"type": SESSION_ID, "data": {"sessionId": session_id}})
        logger.info(f"[Relay] 세션 {session_id[:8]} 연결됨 (총 {len(self.sessions)}개)")
        return session

    async def disconnect(self, session_id: str) -> None:
        """세션 연결 종료를 처리합니다.

        룸에서 제거하고 남은 멤버에게 peer-left 를 브로드캐스트한 뒤
        writer 태스크를 정리합니다. 이미 정리된 세션이면 아무 것도 하지 않습니다.
        """
        session = self.sessions.pop(session_id, None)
        if session is None:
            return

        session.closed = True
        self.leave(session_id)

        writer = session.writer
        if writer is not None and writer is not asyncio.current_task() and not writer.done():
            writer.cancel()
            try:
                await writer
            except asyncio.CancelledError:
                pass

        logger.info(f"[Relay] 세션 {session_id[:8]} 정리 완료 (남은 세션 {len(self.sessions)}개)")

    async def close_all(self) -> None:
        """모든 세션을 정리합니다. 서버 종료(lifespan) 시 호출됩니다."""
        for session_id in list(self.sessions):
            await self.disconnect(session_id)

    # ------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------

    def handle(self, session_id: str, raw: dict) -> None:
        """클라이언트가 보낸 메시지 하나를 처리합니다.

        처리하는 메시지 타입:
            - join-room: 룸 입장 (roomId)
            - leave-room: 현재 룸 퇴장
            - offer / answer / ice: target 세션으로 중계
        """
        session = self.sessions.get(session_id)
        if session is None:
            return

        try:
            message = SignalMessage.model_validate(raw)
        except ValidationError as e:
            logger.warning(f"[Relay] 세션 {session_id[:8]} 잘못된 메시지: {e.error_count()}개 오류")
            self._enqueue(session, {"type": ERROR, "data": {"message": "Malformed message"}})
            return

        if message.type == JOIN_ROOM:
            self.join(session_id, message.data.get("roomId"))
        elif message.type == LEAVE_ROOM:
            self.leave(session_id)
        elif message.type in RELAYED_TYPES:
            self.relay(message.type, session_id, message.data)
        else:
            logger.warning(f"[Relay] 알 수 없는 메시지 타입: {message.type}")

    def join(self, session_id: str, room_id) -> None:
        """세션을 룸에 입장시키고 기존 멤버 목록(all-users)을 본인에게만 보냅니다."""
        session = self.sessions.get(session_id)
        if session is None:
            return

        if not isinstance(room_id, str) or not room_id:
            self._enqueue(session, {"type": ERROR, "data": {"message": "roomId is required"}})
            return

        current = self.rooms.room_of(session_id)
        if current is not None and current != room_id:
            self.leave(session_id)

        others = self.rooms.join(room_id, session_id)
        self._enqueue(session, {"type": ALL_USERS, "data": {"sessionIds": others}})

    def leave(self, session_id: str) -> Optional[str]:
        """세션을 룸에서 제거하고 남은 멤버에게 peer-left 를 브로드캐스트합니다."""
        room_id = self.rooms.leave(session_id)
        if room_id is None:
            return None

        notice = {"type": PEER_LEFT, "data": {"sessionId": session_id}}
        for member_id in self.rooms.members(room_id):
            self.deliver(member_id, notice)
        return room_id

    def relay(self, kind: str, sender_id: str, data: dict) -> bool:
        """offer / answer / ice 메시지를 target 세션에 그대로 전달합니다.

        target 이 연결되어 있지 않으면 조용히 버립니다. 송신자에게 오류를
        알리지 않습니다 (응답 없는 offer 는 메시 코디네이터가 감당).

        Returns:
            bool: 전달 큐에 적재되었는지 여부
        """
        target = data.get("target")
        if not isinstance(target, str) or not target:
            logger.warning(f"[Relay] {kind} 메시지에 target 없음 (sender={sender_id[:8]})")
            return False

        payload = {key: value for key, value in data.items() if key != "target"}
        payload["callerId"] = sender_id

        delivered = self.deliver(target, {"type": kind, "data": payload})
        if not delivered:
            logger.debug(f"[Relay] {kind} 전달 실패: target {target[:8]} 연결 없음")
        return delivered

    def deliver(self, session_id: str, message: dict) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        return self._enqueue(session, message)

    # ------------------------------------------------------------
    # 상태 조회
    # ------------------------------------------------------------

    @property
    def session_count(self) -> int:
        return len(self.sessions)

    async def drain(self) -> None:
        """모든 세션의 송신 큐가 빌 때까지 기다립니다.

        전송 처리 중 새 메시지가 적재될 수 있으므로 모든 큐가 동시에
        비어 있을 때까지 반복합니다.
        """
        while True:
            pending = [
                s for s in list(self.sessions.values())
                if s.busy or not s.outbox.empty()
            ]
            if not pending:
                return
            for session in pending:
                if not session.closed:
                    await session.outbox.join()

    # ------------------------------------------------------------
    # 내부
    # ------------------------------------------------------------

    def _enqueue(self, session: Session, message: dict) -> bool:
        if session.closed:
            return False
        session.outbox.put_nowait(message)
        return True

    async def _write_loop(self, session: Session) -> None:
        """세션의 outbox 를 순서대로 소켓에 씁니다."""
        while True:
            message = await session.outbox.get()
            session.busy = True
            try:
                await session.send(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[Relay] 세션 {session.session_id[:8]} 전송 실패: {e}")
                session.busy = False
                session.outbox.task_done()
                self._abandon(session)
                asyncio.get_running_loop().create_task(self.disconnect(session.session_id))
                return
            session.busy = False
            session.outbox.task_done()

    def _abandon(self, session: Session) -> None:
        """전송 불가 세션의 남은 메시지를 버립니다."""
        session.closed = True
        while not session.outbox.empty():
            session.outbox.get_nowait()
            session.outbox.task_done()
