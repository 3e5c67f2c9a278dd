from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func, or_

from wacrm.api.deps import get_runtime, require_session_id
from wacrm.core.db import get_session
from wacrm.core.exceptions import (
    ContactNotFoundException,
    DuplicateResourceException,
    InvalidInputException,
    NotFoundException,
    ResourceInUseException,
)
from wacrm.core.security import create_log
from wacrm.models.contact import (
    Contact, ContactImportRequest, ContactTag,
    Note, NoteCreate, NoteRead, NoteUpdate,
    Tag, TagCreate, CONTACT_SOURCES,
)
from wacrm.models.lead_status import LeadStatus, LeadStatusCreate, LeadStatusRead, LeadStatusUpdate
from wacrm.models.message import Message
from wacrm.services.contact_service import ContactService
from wacrm.services.message_service import MessageService, message_payload

router = APIRouter()


def _get_contact(session: Session, contact_id: int, session_id: Optional[str] = None) -> Contact:
    contact = session.get(Contact, contact_id)
    if not contact or (session_id and contact.session_id != session_id):
        raise ContactNotFoundException(contact_id)
    return contact


def _lead_status_payload(status: Optional[LeadStatus]) -> Optional[Dict[str, Any]]:
    if status is None:
        return None
    return {"id": status.id, "name": status.name, "color": status.color}


# --- Contacts ---

@router.get("/contacts")
def list_contacts(
    session_id: str = Depends(require_session_id),
    search: Optional[str] = None,
    status_id: Optional[int] = Query(None, alias="statusId"),
    tag_id: Optional[int] = Query(None, alias="tagId"),
    limit: int = Query(20, ge=1, le=500),
    session: Session = Depends(get_session),
):
    """联系人列表，附阶段、标签、最后一条消息"""
    query = select(Contact).where(Contact.session_id == session_id)
    if search:
        pattern = f"%{search}%"
        query = query.where(or_(Contact.name.ilike(pattern), Contact.phone.ilike(pattern)))
    if status_id:
        query = query.where(Contact.lead_status_id == status_id)
    if tag_id:
        query = query.where(Contact.id.in_(select(ContactTag.contact_id).where(ContactTag.tag_id == tag_id)))
    query = query.order_by(Contact.last_interaction_at.desc(), Contact.id.desc()).limit(limit)
    contacts = session.exec(query).all()

    statuses = {s.id: s for s in session.exec(select(LeadStatus).where(LeadStatus.session_id == session_id)).all()}
    result = []
    for c in contacts:
        last = session.exec(
            select(Message).where(Message.contact_id == c.id).order_by(Message.timestamp.desc())
        ).first()
        message_count = session.exec(select(func.count(Message.id)).where(Message.contact_id == c.id)).one()
        tag_ids = session.exec(select(ContactTag.tag_id).where(ContactTag.contact_id == c.id)).all()
        result.append({
            "id": c.id,
            "sessionId": c.session_id,
            "phone": c.phone,
            "name": c.name,
            "pushName": c.push_name,
            "profilePicUrl": c.profile_pic_url,
            "source": c.source,
            "externalContactId": c.external_contact_id,
            "leadStatus": _lead_status_payload(statuses.get(c.lead_status_id)),
            "tagIds": list(tag_ids),
            "lastInteraction": c.last_interaction_at,
            "messageCount": message_count,
            "lastMessage": {
                "content": last.content if last else None,
                "timestamp": last.timestamp if last else None,
            },
        })
    return {"contacts": result}


@router.post("/contacts/import")
def import_contacts(
    request: ContactImportRequest,
    session: Session = Depends(get_session),
):
    """导入 Google / Outlook 通讯录，与已有 WhatsApp 联系人合并"""
    if request.source not in CONTACT_SOURCES:
        raise InvalidInputException(f"Unknown contact source: {request.source}")
    stats = ContactService(session).import_contacts(request.session_id, request.contacts, request.source)
    create_log(session, "contact_import", "system", f"{request.source}: {stats}", session_id=request.session_id)
    return {"success": True, **stats}


@router.get("/contacts/{contact_id}")
def get_contact(
    contact_id: int,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    """联系人详情 (标签、备注)"""
    contact = _get_contact(session, contact_id, session_id)
    tags = session.exec(
        select(Tag).join(ContactTag, ContactTag.tag_id == Tag.id).where(ContactTag.contact_id == contact_id)
    ).all()
    notes = session.exec(
        select(Note).where(Note.contact_id == contact_id).order_by(Note.created_at.desc())
    ).all()
    status = session.get(LeadStatus, contact.lead_status_id) if contact.lead_status_id else None
    return {
        "contact": {
            "id": contact.id,
            "sessionId": contact.session_id,
            "phone": contact.phone,
            "name": contact.name,
            "pushName": contact.push_name,
            "email": contact.email,
            "whatsappJid": contact.whatsapp_jid,
            "profilePicUrl": contact.profile_pic_url,
            "source": contact.source,
            "externalContactId": contact.external_contact_id,
            "leadStatus": _lead_status_payload(status),
            "tags": [{"id": t.id, "name": t.name, "color": t.color} for t in tags],
            "notes": [NoteRead.model_validate(n).model_dump() for n in notes],
            "lastInteraction": contact.last_interaction_at,
            "createdAt": contact.created_at,
        }
    }


@router.get("/contacts/{contact_id}/messages")
def get_contact_messages(
    contact_id: int,
    session_id: str = Depends(require_session_id),
    limit: int = Query(50, ge=1, le=1000),
    session: Session = Depends(get_session),
):
    """会话记录 (不含已撤回消息)"""
    _get_contact(session, contact_id, session_id)
    messages = MessageService(session).get_contact_history(session_id, contact_id, limit)
    return {"messages": [message_payload(m) for m in messages]}


@router.post("/contacts/{contact_id}/sync-history")
async def sync_contact_history(
    contact_id: int,
    session_id: str = Body(..., embed=True, alias="sessionId"),
    count: int = Body(50, embed=True),
    session: Session = Depends(get_session),
    runtime=Depends(get_runtime),
):
    """请求网关回填更早的历史消息，结果经 webhook 以 append 方式入库"""
    runtime.sessions.require_ready(session_id)
    contact = _get_contact(session, contact_id, session_id)
    result = await MessageService(session, runtime).request_history(session_id, contact, count)
    return {"success": True, "requested": count, "result": result}


@router.put("/contacts/{contact_id}/status")
def update_contact_status(
    contact_id: int,
    status_id: Optional[int] = Body(None, embed=True, alias="statusId"),
    session: Session = Depends(get_session),
):
    """更新联系人漏斗阶段，statusId 为空表示清除"""
    contact = _get_contact(session, contact_id)
    if status_id is not None:
        status = session.get(LeadStatus, status_id)
        if not status or status.session_id != contact.session_id:
            raise NotFoundException(status_id, "Lead status not found")
    contact.lead_status_id = status_id
    contact.updated_at = datetime.utcnow()
    session.add(contact)
    session.commit()
    return {"success": True}


@router.post("/contacts/{contact_id}/tags")
def add_contact_tag(
    contact_id: int,
    tag_id: int = Body(..., embed=True, alias="tagId"),
    session: Session = Depends(get_session),
):
    contact = _get_contact(session, contact_id)
    tag = session.get(Tag, tag_id)
    if not tag or tag.session_id != contact.session_id:
        raise NotFoundException(tag_id, "Tag not found")
    if session.get(ContactTag, (contact_id, tag_id)) is None:
        session.add(ContactTag(contact_id=contact_id, tag_id=tag_id))
        session.commit()
    return {"success": True}


@router.delete("/contacts/{contact_id}/tags/{tag_id}")
def remove_contact_tag(
    contact_id: int,
    tag_id: int,
    session: Session = Depends(get_session),
):
    link = session.get(ContactTag, (contact_id, tag_id))
    if link:
        session.delete(link)
        session.commit()
    return {"success": True}


# --- Tags ---

@router.get("/tags")
def list_tags(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    """标签列表 (附使用次数)"""
    rows = session.exec(
        select(Tag, func.count(ContactTag.contact_id))
        .join(ContactTag, ContactTag.tag_id == Tag.id, isouter=True)
        .where(Tag.session_id == session_id)
        .group_by(Tag.id)
        .order_by(Tag.name)
    ).all()
    return {
        "tags": [
            {"id": tag.id, "name": tag.name, "color": tag.color, "usage_count": count}
            for tag, count in rows
        ]
    }


@router.post("/tags")
def create_tag(
    tag_in: TagCreate,
    session: Session = Depends(get_session),
):
    if not tag_in.name.strip():
        raise InvalidInputException("Tag name is required")
    tag = Tag.model_validate(tag_in)
    session.add(tag)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(f"Tag '{tag_in.name}' already exists")
    session.refresh(tag)
    return {"success": True, "tagId": tag.id}


@router.delete("/tags/{tag_id}")
def delete_tag(
    tag_id: int,
    session: Session = Depends(get_session),
):
    tag = session.get(Tag, tag_id)
    if not tag:
        raise NotFoundException(tag_id, "Tag not found")
    for link in session.exec(select(ContactTag).where(ContactTag.tag_id == tag_id)).all():
        session.delete(link)
    session.delete(tag)
    session.commit()
    return {"success": True}


# --- Lead statuses ---

@router.get("/lead-statuses")
def list_lead_statuses(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    statuses = session.exec(
        select(LeadStatus).where(LeadStatus.session_id == session_id).order_by(LeadStatus.order_index)
    ).all()
    return {"statuses": [LeadStatusRead.model_validate(s) for s in statuses]}


@router.post("/lead-statuses")
def create_lead_status(
    status_in: LeadStatusCreate,
    session: Session = Depends(get_session),
):
    if not status_in.name.strip():
        raise InvalidInputException("Lead status name is required")
    order_index = status_in.order_index
    if order_index is None:
        current_max = session.exec(
            select(func.max(LeadStatus.order_index)).where(LeadStatus.session_id == status_in.session_id)
        ).one()
        order_index = (current_max or 0) + 1
    status = LeadStatus(
        session_id=status_in.session_id,
        name=status_in.name.strip(),
        color=status_in.color,
        order_index=order_index,
        is_default=status_in.is_default,
    )
    session.add(status)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(f"Lead status '{status_in.name}' already exists")
    session.refresh(status)
    return {"success": True, "statusId": status.id}


@router.put("/lead-statuses/{status_id}")
def update_lead_status(
    status_id: int,
    status_in: LeadStatusUpdate,
    session: Session = Depends(get_session),
):
    status = session.get(LeadStatus, status_id)
    if not status:
        raise NotFoundException(status_id, "Lead status not found")
    for key, value in status_in.model_dump(exclude_unset=True).items():
        setattr(status, key, value)
    session.add(status)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(f"Lead status '{status_in.name}' already exists")
    session.refresh(status)
    return {"success": True, "status": LeadStatusRead.model_validate(status)}


@router.delete("/lead-statuses/{status_id}")
def delete_lead_status(
    status_id: int,
    session: Session = Depends(get_session),
):
    """仍有联系人处于该阶段时拒绝删除"""
    status = session.get(LeadStatus, status_id)
    if not status:
        raise NotFoundException(status_id, "Lead status not found")
    in_use = session.exec(select(func.count(Contact.id)).where(Contact.lead_status_id == status_id)).one()
    if in_use:
        raise ResourceInUseException("Lead status", in_use)
    session.delete(status)
    session.commit()
    return {"success": True}


# --- Notes ---

@router.get("/contacts/{contact_id}/notes")
def list_notes(
    contact_id: int,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    notes = session.exec(
        select(Note)
        .where(Note.contact_id == contact_id, Note.session_id == session_id)
        .order_by(Note.created_at.desc())
    ).all()
    return {"notes": [NoteRead.model_validate(n) for n in notes]}


@router.post("/contacts/{contact_id}/notes")
def create_note(
    contact_id: int,
    note_in: NoteCreate,
    session: Session = Depends(get_session),
):
    _get_contact(session, contact_id, note_in.session_id)
    if not note_in.content.strip():
        raise InvalidInputException("Note content is required")
    note = Note(
        session_id=note_in.session_id,
        contact_id=contact_id,
        content=note_in.content,
        created_by=note_in.created_by,
    )
    session.add(note)
    session.commit()
    session.refresh(note)
    return {"success": True, "noteId": note.id}


@router.put("/notes/{note_id}")
def update_note(
    note_id: int,
    note_in: NoteUpdate,
    session: Session = Depends(get_session),
):
    note = session.get(Note, note_id)
    if not note:
        raise NotFoundException(note_id, "Note not found")
    note.content = note_in.content
    note.updated_at = datetime.utcnow()
    session.add(note)
    session.commit()
    return {"success": True}


@router.delete("/notes/{note_id}")
def delete_note(
    note_id: int,
    session: Session = Depends(get_session),
):
    note = session.get(Note, note_id)
    if not note:
        raise NotFoundException(note_id, "Note not found")
    session.delete(note)
    session.commit()
    return {"success": True}
