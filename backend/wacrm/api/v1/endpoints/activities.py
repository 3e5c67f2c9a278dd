import math
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select, func

from wacrm.api.deps import require_session_id
from wacrm.core.db import get_session
from wacrm.core.exceptions import (
    ContactNotFoundException,
    DuplicateResourceException,
    InvalidInputException,
    NotFoundException,
    ResourceInUseException,
)
from wacrm.models.activity import (
    Activity, ActivityCreate, ActivityUpdate,
    ActivityType, ActivityTypeCreate, ActivityTypeRead, ActivityTypeUpdate,
)
from wacrm.models.contact import Contact

router = APIRouter()


def activity_payload(activity: Activity, contact: Optional[Contact], activity_type: Optional[ActivityType]) -> Dict[str, Any]:
    return {
        "id": activity.id,
        "sessionId": activity.session_id,
        "contactId": activity.contact_id,
        "contactName": contact.name if contact else None,
        "contactPhone": contact.phone if contact else None,
        "activityType": {
            "id": activity.activity_type_id,
            "name": activity_type.name if activity_type else None,
            "icon": activity_type.icon if activity_type else None,
            "color": activity_type.color if activity_type else None,
        },
        "title": activity.title,
        "description": activity.description,
        "activityDate": activity.activity_date,
        "createdBy": activity.created_by,
        "outcome": activity.outcome,
        "nextAction": activity.next_action,
        "nextActionDate": activity.next_action_date,
        "createdAt": activity.created_at,
        "updatedAt": activity.updated_at,
    }


def _get_activity(session: Session, activity_id: int) -> Activity:
    activity = session.get(Activity, activity_id)
    if not activity:
        raise NotFoundException(activity_id, "Activity not found")
    return activity


def _check_activity_type(session: Session, session_id: str, activity_type_id: int) -> ActivityType:
    activity_type = session.get(ActivityType, activity_type_id)
    if not activity_type or activity_type.session_id != session_id:
        raise InvalidInputException(f"Activity type {activity_type_id} does not exist")
    return activity_type


# --- Activities ---

@router.get("/activities")
def list_activities(
    session_id: str = Depends(require_session_id),
    contact_id: Optional[int] = Query(None, alias="contactId"),
    activity_type_id: Optional[int] = Query(None, alias="activityTypeId"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    limit: int = Query(50, ge=1, le=500),
    page: int = Query(1, ge=1),
    session: Session = Depends(get_session),
):
    """活动列表 (分页)"""
    conditions = [Activity.session_id == session_id]
    if contact_id:
        conditions.append(Activity.contact_id == contact_id)
    if activity_type_id:
        conditions.append(Activity.activity_type_id == activity_type_id)
    if start_date:
        conditions.append(Activity.activity_date >= start_date)
    if end_date:
        conditions.append(Activity.activity_date <= end_date)

    total = session.exec(select(func.count(Activity.id)).where(*conditions)).one()
    rows = session.exec(
        select(Activity, Contact, ActivityType)
        .join(Contact, Activity.contact_id == Contact.id)
        .join(ActivityType, Activity.activity_type_id == ActivityType.id)
        .where(*conditions)
        .order_by(Activity.activity_date.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()

    total_pages = math.ceil(total / limit) if total else 0
    return {
        "activities": [activity_payload(a, c, t) for a, c, t in rows],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": total_pages,
            "hasNext": page < total_pages,
            "hasPrev": page > 1,
        },
    }


@router.get("/activities/{activity_id}")
def get_activity(
    activity_id: int,
    session: Session = Depends(get_session),
):
    activity = _get_activity(session, activity_id)
    contact = session.get(Contact, activity.contact_id)
    activity_type = session.get(ActivityType, activity.activity_type_id)
    return {"activity": activity_payload(activity, contact, activity_type)}


@router.get("/contacts/{contact_id}/activities")
def list_contact_activities(
    contact_id: int,
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    contact = session.get(Contact, contact_id)
    if not contact or contact.session_id != session_id:
        raise ContactNotFoundException(contact_id)
    rows = session.exec(
        select(Activity, ActivityType)
        .join(ActivityType, Activity.activity_type_id == ActivityType.id)
        .where(Activity.contact_id == contact_id, Activity.session_id == session_id)
        .order_by(Activity.activity_date.desc())
    ).all()
    return {"activities": [activity_payload(a, contact, t) for a, t in rows]}


@router.post("/activities", status_code=201)
def create_activity(
    activity_in: ActivityCreate,
    session: Session = Depends(get_session),
):
    if not activity_in.title or not activity_in.title.strip():
        raise InvalidInputException("Title is required")
    contact = session.get(Contact, activity_in.contact_id)
    if not contact or contact.session_id != activity_in.session_id:
        raise ContactNotFoundException(activity_in.contact_id)
    activity_type = _check_activity_type(session, activity_in.session_id, activity_in.activity_type_id)

    data = activity_in.model_dump(exclude_none=True)
    activity = Activity(**data)
    session.add(activity)
    # 记录一次跟进即视为一次互动
    if activity.activity_date and (contact.last_interaction_at is None or activity.activity_date > contact.last_interaction_at):
        contact.last_interaction_at = activity.activity_date
        session.add(contact)
    session.commit()
    session.refresh(activity)
    return {"success": True, "activity": activity_payload(activity, contact, activity_type)}


@router.put("/activities/{activity_id}")
def update_activity(
    activity_id: int,
    activity_in: ActivityUpdate,
    session: Session = Depends(get_session),
):
    activity = _get_activity(session, activity_id)
    update_data = activity_in.model_dump(exclude_unset=True)
    if not update_data:
        raise InvalidInputException("No fields to update")
    if update_data.get("activity_type_id") is not None:
        _check_activity_type(session, activity.session_id, update_data["activity_type_id"])
    for key, value in update_data.items():
        setattr(activity, key, value)
    activity.updated_at = datetime.utcnow()
    session.add(activity)
    session.commit()
    session.refresh(activity)
    contact = session.get(Contact, activity.contact_id)
    activity_type = session.get(ActivityType, activity.activity_type_id)
    return {"success": True, "activity": activity_payload(activity, contact, activity_type)}


@router.delete("/activities/{activity_id}")
def delete_activity(
    activity_id: int,
    session: Session = Depends(get_session),
):
    activity = _get_activity(session, activity_id)
    session.delete(activity)
    session.commit()
    return {"success": True}


# --- Activity types ---

@router.get("/activity-types")
def list_activity_types(
    session_id: str = Depends(require_session_id),
    session: Session = Depends(get_session),
):
    types = session.exec(
        select(ActivityType).where(ActivityType.session_id == session_id).order_by(ActivityType.name)
    ).all()
    return {"activityTypes": [ActivityTypeRead.model_validate(t) for t in types]}


@router.post("/activity-types", status_code=201)
def create_activity_type(
    type_in: ActivityTypeCreate,
    session: Session = Depends(get_session),
):
    if not type_in.name.strip():
        raise InvalidInputException("Activity type name is required")
    activity_type = ActivityType.model_validate(type_in)
    session.add(activity_type)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(f"Activity type '{type_in.name}' already exists")
    session.refresh(activity_type)
    return {"success": True, "activityType": ActivityTypeRead.model_validate(activity_type)}


@router.put("/activity-types/{type_id}")
def update_activity_type(
    type_id: int,
    type_in: ActivityTypeUpdate,
    session: Session = Depends(get_session),
):
    activity_type = session.get(ActivityType, type_id)
    if not activity_type:
        raise NotFoundException(type_id, "Activity type not found")
    for key, value in type_in.model_dump(exclude_unset=True).items():
        setattr(activity_type, key, value)
    session.add(activity_type)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise DuplicateResourceException(f"Activity type '{type_in.name}' already exists")
    session.refresh(activity_type)
    return {"success": True, "activityType": ActivityTypeRead.model_validate(activity_type)}


@router.delete("/activity-types/{type_id}")
def delete_activity_type(
    type_id: int,
    session: Session = Depends(get_session),
):
    """已被活动引用的类型不能删除"""
    activity_type = session.get(ActivityType, type_id)
    if not activity_type:
        raise NotFoundException(type_id, "Activity type not found")
    in_use = session.exec(select(func.count(Activity.id)).where(Activity.activity_type_id == type_id)).one()
    if in_use:
        raise ResourceInUseException("Activity type", in_use)
    session.delete(activity_type)
    session.commit()
    return {"success": True}
