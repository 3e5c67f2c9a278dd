from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordRequestForm
from jose import JWTError
from pydantic import BaseModel, ValidationError
from sqlmodel import Session, select

from wacrm.core import security
from wacrm.core.db import get_session
from wacrm.api.deps import get_current_user, reusable_oauth2
from wacrm.models.token import Token
from wacrm.models.user import User

router = APIRouter()


class LogoutResponse(BaseModel):
    message: str


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/login/access-token", response_model=Token)
def login_access_token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    session: Session = Depends(get_session),
) -> Any:
    """
    OAuth2 compatible token login, get an access token for future requests.
    """
    ip = _client_ip(request)
    if security.login_blocked(ip):
        security.create_log(session, "login", form_data.username, "Too many attempts", ip, "failed")
        raise HTTPException(status_code=429, detail="Too many login attempts. Try again later.")

    user = session.exec(select(User).where(User.username == form_data.username)).first()
    if not user or not user.is_active or not security.verify_password(form_data.password, user.hashed_password):
        security.record_failed_login(ip)
        security.create_log(session, "login", form_data.username, "Incorrect credentials", ip, "failed")
        raise HTTPException(status_code=400, detail="Incorrect username or password")

    security.reset_login_attempts(ip)
    security.create_log(session, "login", user.username, "Login successful", ip, "success")
    return {
        "access_token": security.create_access_token(subject=user.username),
        "token_type": "bearer",
    }


@router.post("/logout", response_model=LogoutResponse)
def logout(
    request: Request,
    token: str = Depends(reusable_oauth2),
    current_user: str = Depends(get_current_user),
    session: Session = Depends(get_session),
) -> Any:
    """当前令牌加入黑名单"""
    try:
        payload, token_data = security.decode_access_token(token)
    except (JWTError, ValidationError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Could not validate credentials")

    if not token_data.jti:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Token does not contain a jti claim")

    security.revoke_token(token_data.jti, security.remaining_lifetime(payload))
    security.create_log(session, "logout", current_user, None, _client_ip(request), "success")
    return {"message": "Successfully logged out"}
