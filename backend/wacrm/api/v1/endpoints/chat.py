from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import FileResponse
from sqlmodel import Session

from wacrm.api.deps import get_runtime, require_session_id
from wacrm.core.db import get_session
from wacrm.core.exceptions import InvalidInputException, MessageNotFoundException, NotFoundException
from wacrm.models.message import Message, SendMessageRequest, MEDIA_TYPES
from wacrm.services.message_service import MessageService, message_payload

router = APIRouter()


@router.get("/messages/{message_id}/media")
async def get_message_media(
    message_id: int,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """返回本地缓存的媒体文件；尚未下载时同步下载一次"""
    message = session.get(Message, message_id)
    if not message:
        raise MessageNotFoundException(message_id)
    if message.message_type not in MEDIA_TYPES:
        raise NotFoundException(message_id, "Message has no media")

    path = runtime.media.get_media_path(message)
    if path is None:
        filename = await runtime.media.materialize(message.session_id, message.id)
        if not filename:
            raise NotFoundException(message_id, "Media not available")
        path = runtime.media.path_for(filename)

    return FileResponse(path, media_type=message.media_mimetype or None, filename=path.name)


@router.post("/chat/send")
async def send_chat_message(
    request: SendMessageRequest,
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """从 CRM 界面给联系人发消息"""
    if not request.content.strip():
        raise InvalidInputException("Message content is required")
    runtime.sessions.require_ready(request.session_id)
    message = await MessageService(session, runtime).send_message(request.session_id, request.phone, request.content)
    return {"success": True, "message": message_payload(message)}


@router.get("/chat/conversations")
def list_conversations(
    session_id: str = Depends(require_session_id),
    search: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return {"conversations": MessageService(session).list_conversations(session_id, search, limit)}
