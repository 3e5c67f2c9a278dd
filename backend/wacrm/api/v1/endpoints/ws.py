import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, Query
from jose import JWTError
from pydantic import ValidationError

from wacrm.core.config import settings
from wacrm.core.security import decode_access_token

logger = logging.getLogger(__name__)
router = APIRouter()


async def _authenticate(websocket: WebSocket, token: str):
    """返回用户名；校验失败时关闭连接并返回 None"""
    peer = websocket.client.host if websocket.client else "unknown"
    if not token:
        logger.warning(f"WebSocket rejected from {peer}: missing token")
        await websocket.close(code=4001, reason="Authentication required")
        return None
    try:
        _, token_data = decode_access_token(token)
    except (JWTError, ValidationError) as e:
        logger.warning(f"WebSocket rejected from {peer}: {e}")
        await websocket.close(code=4003, reason="Token expired or invalid")
        return None
    if not token_data.sub:
        await websocket.close(code=4002, reason="Invalid token")
        return None
    return token_data.sub


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: str = Query(None, description="JWT Token for authentication")
):
    """
    实时事件推送 {"event": ..., "data": ...}
    连接示例: ws://host/api/v1/ws?token=your_jwt_token (SECURITY_ENABLED 时必须)
    """
    username = "anonymous"
    if settings.SECURITY_ENABLED:
        username = await _authenticate(websocket, token)
        if username is None:
            return

    runtime = websocket.app.state.runtime
    notifier = runtime.notifier
    await notifier.connect(websocket)
    logger.info(f"WebSocket connected: user={username}")

    try:
        # 新客户端补发各会话当前状态与待扫二维码
        for frame in runtime.sessions.initial_events():
            await notifier.send(websocket, frame["event"], frame["data"])
        while True:
            if await websocket.receive_text() == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected: user={username}")
    except Exception as e:
        logger.error(f"WebSocket error for user={username}: {e}")
    finally:
        notifier.disconnect(websocket)
