from typing import Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlmodel import Session

from wacrm.api.deps import get_runtime, require_session_id
from wacrm.core.db import get_session
from wacrm.core.exceptions import InvalidInputException
from wacrm.models.group import GroupCategoryUpdate, GroupParticipantRead, WhatsAppGroupRead
from wacrm.services.group_service import GroupService
from wacrm.services.message_service import message_payload
from wacrm.services.phone import to_group_jid

router = APIRouter()


@router.get("")
def list_groups(
    session_id: str = Depends(require_session_id),
    category: Optional[str] = None,
    session: Session = Depends(get_session),
):
    """群组列表，按最近活跃排序"""
    return {"groups": GroupService(session).list_groups(session_id, category)}


@router.get("/{group_ref}")
def get_group(
    group_ref: str,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    """group_ref 可以是数据库 ID 或群 JID"""
    return {"group": GroupService(session).get_group_details(session_id, group_ref)}


@router.get("/{group_ref}/messages")
def get_group_messages(
    group_ref: str,
    session_id: str = Depends(require_session_id),
    limit: int = Query(100, ge=1, le=1000),
    session: Session = Depends(get_session),
):
    messages = GroupService(session).get_group_messages(session_id, group_ref, limit)
    return {"messages": [message_payload(m) for m in messages]}


@router.post("/{group_ref}/messages")
async def send_group_message(
    group_ref: str,
    session_id: str = Body(..., embed=True, alias="sessionId"),
    content: str = Body(..., embed=True),
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    if not content.strip():
        raise InvalidInputException("Message content is required")
    runtime.sessions.require_ready(session_id)
    service = GroupService(session, runtime)
    group = service.require_group(session_id, group_ref)
    message = await service.send_group_message(session_id, group, content)
    return {"success": True, "message": message_payload(message)}


@router.post("/{group_ref}/participants/sync")
async def sync_group_participants(
    group_ref: str,
    session_id: str = Body(..., embed=True, alias="sessionId"),
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """强制从网关刷新群元数据和成员名单"""
    runtime.sessions.require_ready(session_id)
    service = GroupService(session, runtime)
    group = service.require_group(session_id, group_ref)
    group = await service.refresh_group(session_id, to_group_jid(group.group_id), force=True)
    participants = service.list_participants(group)
    return {
        "success": True,
        "group": WhatsAppGroupRead.model_validate(group),
        "participantCount": len(participants),
    }


@router.get("/{group_ref}/participants")
def list_group_participants(
    group_ref: str,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    service = GroupService(session)
    group = service.require_group(session_id, group_ref)
    return {"participants": [GroupParticipantRead.model_validate(p) for p in service.list_participants(group)]}


@router.put("/{group_ref}/category")
def update_group_category(
    group_ref: str,
    update: GroupCategoryUpdate,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    group = GroupService(session).update_group_category(session_id, group_ref, update.category)
    return {"success": True, "group": WhatsAppGroupRead.model_validate(group)}
