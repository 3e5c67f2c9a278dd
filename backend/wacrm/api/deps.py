from typing import Optional

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from pydantic import ValidationError

from wacrm.core.config import settings
from wacrm.core.exceptions import MissingSessionIdException
from wacrm.core.security import decode_access_token, is_token_revoked

reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/login/access-token"
)


def get_current_user(token: str = Depends(reusable_oauth2)) -> str:
    """单管理员模式: 令牌有效、未注销且 sub 为管理员"""
    try:
        _, token_data = decode_access_token(token)
    except (JWTError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )

    if token_data.jti and is_token_revoked(token_data.jti):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has been revoked",
        )

    if token_data.sub != settings.ADMIN_USERNAME:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User not authorized",
        )

    return token_data.sub


def get_runtime(request: Request):
    """lifespan 中创建的 WhatsAppRuntime"""
    return request.app.state.runtime


def require_session_id(
    session_id: Optional[str] = Query(None),
    sessionId: Optional[str] = Query(None),
) -> str:
    """列表类接口必须指定 WhatsApp 会话 (session_id 或 sessionId)"""
    value = (session_id or sessionId or "").strip()
    if not value:
        raise MissingSessionIdException()
    return value
