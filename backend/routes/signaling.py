"""시그널링 WebSocket 라우터.

세션별 장기 WebSocket 연결을 받아 SignalingRelay 에 연결합니다.
룸 입장/퇴장, offer/answer/ice 중계는 모두 릴레이가 처리하며,
이 모듈은 연결 수락, 수신 루프, 연결 종료 정리만 담당합니다.
"""

import json
import logging
from typing import Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query

from meshcall.signaling import SignalingRelay, relay_config

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 릴레이 참조 (app.py에서 설정됨)
_relay: Optional[SignalingRelay] = None


def init_relay(relay: SignalingRelay):
    """릴레이 인스턴스를 초기화합니다.

    app.py에서 호출하여 글로벌 릴레이 참조를 설정합니다.

    Args:
        relay: SignalingRelay 인스턴스
    """
    global _relay
    _relay = relay
    logger.info("[Relay] 시그널링 라우터 초기화 완료")


def get_relay() -> Optional[SignalingRelay]:
    return _relay


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, token: Optional[str] = Query(None)):
    """시그널링 WebSocket 엔드포인트.

    처리하는 메시지 타입:
        - join-room: 룸 입장 (roomId)
        - leave-room: 현재 룸 퇴장
        - offer / answer / ice: target 세션으로 중계

    Close Codes:
        - 1011: 릴레이가 초기화되지 않음
        - 4001: 토큰 불일치
        - 4003: 허용되지 않은 Origin

    Args:
        websocket: FastAPI WebSocket 연결 객체
        token: 인증 토큰 (쿼리 파라미터)
    """
    if _relay is None:
        logger.error("[Relay] 릴레이가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    # 연결 수락 전 Origin / 토큰 검증
    origin = websocket.headers.get("origin")
    if not relay_config.is_origin_allowed(origin):
        logger.warning(f"[Relay] 허용되지 않은 Origin 거부: {origin}")
        await websocket.close(code=4003, reason="Origin not allowed")
        return

    if not relay_config.is_token_valid(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()

    session = _relay.register(websocket.send_json)
    session_id = session.session_id

    try:
        while True:
            text = await websocket.receive_text()
            try:
                raw = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"[Relay] 세션 {session_id[:8]} JSON 파싱 실패, 무시")
                continue

            _relay.handle(session_id, raw)

    except WebSocketDisconnect:
        logger.info(f"[Relay] 세션 {session_id[:8]} 연결 끊김")
    except Exception as e:
        logger.error(f"[Relay] 세션 {session_id[:8]}의 WebSocket 연결 중 오류: {e}")
    finally:
        await _relay.disconnect(session_id)
