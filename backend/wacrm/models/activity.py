from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field

# 新会话默认活动类型 (name, icon, color)
DEFAULT_ACTIVITY_TYPES = [
    ("Phone Call", "📞", "#3b82f6"),
    ("WhatsApp Message", "💬", "#22c55e"),
    ("Email", "📧", "#06b6d4"),
    ("Meeting", "👥", "#8b5cf6"),
    ("Note", "📝", "#6b7280"),
    ("Follow-up", "🔜", "#14b8a6"),
]


class ActivityTypeBase(SQLModel):
    session_id: str = Field(index=True)
    name: str
    icon: Optional[str] = None
    color: str = Field(default="#6366f1")


class ActivityType(ActivityTypeBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "name", name="uq_activity_type_session_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ActivityTypeCreate(SQLModel):
    session_id: str
    name: str
    icon: Optional[str] = None
    color: str = "#6366f1"


class ActivityTypeUpdate(SQLModel):
    name: Optional[str] = None
    icon: Optional[str] = None
    color: Optional[str] = None


class ActivityTypeRead(ActivityTypeBase):
    id: int


class ActivityBase(SQLModel):
    session_id: str = Field(index=True)
    contact_id: int = Field(foreign_key="contact.id", index=True)
    activity_type_id: int = Field(foreign_key="activitytype.id", index=True)
    title: str
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    activity_date: datetime = Field(default_factory=datetime.utcnow, index=True)
    created_by: Optional[str] = None
    outcome: Optional[str] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = Field(default=None, index=True)


class Activity(ActivityBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ActivityCreate(SQLModel):
    session_id: str
    contact_id: int
    activity_type_id: int
    title: str
    description: Optional[str] = None
    activity_date: Optional[datetime] = None
    created_by: Optional[str] = None
    outcome: Optional[str] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None


class ActivityUpdate(SQLModel):
    activity_type_id: Optional[int] = None
    title: Optional[str] = None
    description: Optional[str] = None
    activity_date: Optional[datetime] = None
    outcome: Optional[str] = None
    next_action: Optional[str] = None
    next_action_date: Optional[datetime] = None
