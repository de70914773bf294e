"""시그널링 릴레이 WebSocket 클라이언트.

MeshCoordinator 에 주입되는 시그널링 송신 객체입니다. 연결 직후 릴레이가
보내는 session-id 를 받아 세션 ID 를 확정하고, 이후 메시지는 messages()
비동기 이터레이터로 순서대로 전달합니다.

Examples:
    >>> client = SignalingClient("ws://localhost:3001/ws")
    >>> await client.connect()
    >>> coordinator = MeshCoordinator(client)
    >>> async for message in client.messages():
    ...     await coordinator.handle_message(message)
"""
import json
import logging
from typing import AsyncIterator, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed

from ..shared.dto import SESSION_ID

logger = logging.getLogger(__name__)


class SignalingClient:
    """릴레이와의 WebSocket 연결 하나.

    Attributes:
        url (str): 릴레이 WebSocket URL (토큰 포함)
        session_id (Optional[str]): 릴레이가 발급한 세션 ID
    """

    def __init__(self, url: str, token: Optional[str] = None):
        if token:
            separator = "&" if "?" in url else "?"
            url = f"{url}{separator}{urlencode({'token': token})}"
        self.url = url
        self.session_id: Optional[str] = None
        self.websocket = None

    async def connect(self) -> str:
        """릴레이에 연결하고 session-id 메시지를 기다립니다.

        Returns:
            str: 발급된 세션 ID

        Raises:
            ConnectionError: 첫 메시지가 session-id 가 아닌 경우
        """
        self.websocket = await websockets.connect(self.url)

        first = json.loads(await self.websocket.recv())
        if first.get("type") != SESSION_ID:
            await self.close()
            raise ConnectionError(f"expected {SESSION_ID}, got {first.get('type')}")

        self.session_id = first["data"]["sessionId"]
        logger.info(f"[Signaling] 릴레이 연결 완료 (세션 {self.session_id[:8]})")
        return self.session_id

    async def send(self, message_type: str, data: dict) -> None:
        if self.websocket is None:
            raise ConnectionError("signaling client is not connected")
        await self.websocket.send(json.dumps({"type": message_type, "data": data}))

    async def messages(self) -> AsyncIterator[dict]:
        """릴레이 메시지를 도착 순서대로 내보냅니다. 연결이 끊기면 종료합니다."""
        try:
            async for raw in self.websocket:
                try:
                    yield json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning("[Signaling] JSON 파싱 실패, 무시")
        except ConnectionClosed as e:
            logger.info(f"[Signaling] 릴레이 연결 종료: {e}")

    async def close(self) -> None:
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
