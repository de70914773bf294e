"""라우터 공용 FastAPI 의존성.

토큰 규칙은 RelayConfig 에 있으며, 여기서는 검증 실패를 HTTP 오류로 바꿉니다.
"""

from typing import Optional

from fastapi import Header, HTTPException

from meshcall.signaling import relay_config


async def require_access_token(authorization: Optional[str] = Header(None)) -> None:
    """ACCESS_PASSWORD 가 설정된 경우 Bearer 토큰을 요구합니다.

    Raises:
        HTTPException: 401 (헤더 없음, 형식 오류, 토큰 불일치)
    """
    if not relay_config.auth_required:
        return

    token = relay_config.bearer_token(authorization)
    if token is None or not relay_config.is_token_valid(token):
        raise HTTPException(
            status_code=401,
            detail="Valid bearer token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
