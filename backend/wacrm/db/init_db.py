import logging

from sqlmodel import Session, select

from wacrm.core.config import settings
from wacrm.core.security import get_password_hash
from wacrm.models.activity import ActivityType, DEFAULT_ACTIVITY_TYPES
from wacrm.models.lead_status import LeadStatus, DEFAULT_LEAD_STATUSES
from wacrm.models.user import User

logger = logging.getLogger(__name__)


def init_db(session: Session) -> None:
    # 检查是否已存在管理员
    user = session.exec(
        select(User).where(User.username == settings.ADMIN_USERNAME)
    ).first()

    if not user:
        user = User(
            username=settings.ADMIN_USERNAME,
            hashed_password=get_password_hash(settings.ADMIN_PASSWORD),
            is_superuser=True,
        )
        session.add(user)
        session.commit()
        logger.info(f"Admin user {settings.ADMIN_USERNAME} created")


def seed_session_defaults(session: Session, session_id: str) -> None:
    """新会话的默认漏斗阶段与活动类型，已有同名记录时跳过"""
    existing = set(session.exec(
        select(LeadStatus.name).where(LeadStatus.session_id == session_id)
    ).all())
    for name, color, order_index in DEFAULT_LEAD_STATUSES:
        if name not in existing:
            session.add(LeadStatus(
                session_id=session_id,
                name=name,
                color=color,
                order_index=order_index,
                is_default=order_index == 1,
            ))

    existing = set(session.exec(
        select(ActivityType.name).where(ActivityType.session_id == session_id)
    ).all())
    for name, icon, color in DEFAULT_ACTIVITY_TYPES:
        if name not in existing:
            session.add(ActivityType(session_id=session_id, name=name, icon=icon, color=color))

    session.commit()
