import hmac
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel

from wacrm.api.deps import get_runtime
from wacrm.core.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


class GatewayEvent(BaseModel):
    event: str
    data: Any = None


def verify_webhook_secret(x_webhook_secret: Optional[str] = Header(None)) -> None:
    """配置了 WEBHOOK_SECRET 时校验网关回调头"""
    if not settings.WEBHOOK_SECRET:
        return
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.WEBHOOK_SECRET):
        logger.warning("Rejected gateway webhook with invalid secret")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


@router.post("/whatsapp/{session_id}", dependencies=[Depends(verify_webhook_secret)])
async def whatsapp_webhook(
    session_id: str,
    payload: GatewayEvent,
    runtime=Depends(get_runtime),
):
    """网关事件入口 (connection.update / messages.upsert / ...)"""
    handled = await runtime.events.dispatch(session_id, payload.event, payload.data)
    return {"success": True, "handled": handled}
