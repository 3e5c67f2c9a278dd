"""
认证相关: 密码哈希、JWT 签发与解析、Redis 令牌黑名单、登录限流、操作日志
"""
import uuid
import logging
from datetime import timedelta, datetime
from typing import Any, Dict, Optional, Tuple, Union

from jose import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from wacrm.core.config import settings
from wacrm.models.operation_log import OperationLog
from wacrm.models.token import TokenPayload

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = settings.ALGORITHM

_REVOKED_TOKEN_PREFIX = "revoked_token:"
_LOGIN_ATTEMPTS_PREFIX = "login_attempts:"

# 同一 IP 连续失败次数上限与封禁时间
MAX_LOGIN_ATTEMPTS = 5
LOGIN_BLOCK_SECONDS = 900

_redis_client = None


def _get_redis():
    global _redis_client
    if _redis_client is None:
        import redis
        _redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _redis_client


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(subject: Union[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    now = datetime.utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "exp": expire,
        "sub": str(subject),
        "jti": str(uuid.uuid4()),
        "iat": int(now.timestamp()),
    }
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> Tuple[Dict[str, Any], TokenPayload]:
    """解析并校验签名 / 过期时间；失败时抛出 JWTError 或 ValidationError"""
    payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
    return payload, TokenPayload(**payload)


def remaining_lifetime(payload: Dict[str, Any]) -> int:
    """令牌剩余有效秒数 (至少 1)"""
    now_ts = int(datetime.utcnow().timestamp())
    return max(int(payload.get("exp", now_ts)) - now_ts, 1)


def revoke_token(jti: str, ttl: int) -> None:
    """jti 加入黑名单，TTL 与令牌剩余寿命一致，过期后自动清除"""
    _get_redis().setex(f"{_REVOKED_TOKEN_PREFIX}{jti}", ttl, "1")


def is_token_revoked(jti: str) -> bool:
    return _get_redis().exists(f"{_REVOKED_TOKEN_PREFIX}{jti}") > 0


# ==================== 登录限流 ====================

def login_blocked(ip: str) -> bool:
    attempts = _get_redis().get(f"{_LOGIN_ATTEMPTS_PREFIX}{ip}")
    return bool(attempts) and int(attempts) > MAX_LOGIN_ATTEMPTS


def record_failed_login(ip: str) -> None:
    redis_client = _get_redis()
    key = f"{_LOGIN_ATTEMPTS_PREFIX}{ip}"
    redis_client.incr(key)
    redis_client.expire(key, LOGIN_BLOCK_SECONDS)


def reset_login_attempts(ip: str) -> None:
    _get_redis().delete(f"{_LOGIN_ATTEMPTS_PREFIX}{ip}")


def create_log(session: Session, action: str, username: str, details: str = None, ip_address: str = None, status: str = "success", session_id: str = None):
    """写入操作日志，失败只记录不抛出"""
    try:
        log = OperationLog(
            action=action,
            username=username,
            details=details,
            ip_address=ip_address,
            status=status,
            session_id=session_id,
        )
        session.add(log)
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error(f"Failed to create operation log '{action}': {e}")
