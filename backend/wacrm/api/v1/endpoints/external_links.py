from fastapi import APIRouter, Depends
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from wacrm.api.deps import require_session_id
from wacrm.core.db import get_session
from wacrm.core.exceptions import ContactNotFoundException, DuplicateResourceException, NotFoundException
from wacrm.models.contact import Contact
from wacrm.models.external_link import ExternalAppLink, ExternalAppLinkCreate, ExternalAppLinkRead

router = APIRouter()


@router.get("/contacts/{contact_id}/external-links")
def list_external_links(
    contact_id: int,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    links = session.exec(
        select(ExternalAppLink)
        .where(ExternalAppLink.contact_id == contact_id, ExternalAppLink.session_id == session_id)
        .order_by(ExternalAppLink.app_name)
    ).all()
    return {"links": [ExternalAppLinkRead.model_validate(link) for link in links]}


@router.post("/contacts/{contact_id}/external-links", status_code=201)
def create_external_link(
    contact_id: int,
    link_in: ExternalAppLinkCreate,
    session: Session = Depends(get_session),
):
    """关联外部系统记录 (学生档案 / 付款 / 工单)"""
    contact = session.get(Contact, contact_id)
    if not contact or contact.session_id != link_in.session_id:
        raise ContactNotFoundException(contact_id)
    link = ExternalAppLink(contact_id=contact_id, **link_in.model_dump())
    session.add(link)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(
            f"Contact already linked to {link_in.app_name} record {link_in.external_id}"
        )
    session.refresh(link)
    return {"success": True, "link": ExternalAppLinkRead.model_validate(link)}


@router.delete("/external-links/{link_id}")
def delete_external_link(
    link_id: int,
    session: Session = Depends(get_session),
):
    link = session.get(ExternalAppLink, link_id)
    if not link:
        raise NotFoundException(link_id, "External link not found")
    session.delete(link)
    session.commit()
    return {"success": True}
