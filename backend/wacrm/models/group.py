"""
WhatsApp 群组与成员
成员名单以网关返回的群元数据为准，只通过同步修改
"""
from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field

GROUP_CATEGORIES = ("business", "internal", "personal")


class WhatsAppGroupBase(SQLModel):
    session_id: str = Field(index=True)
    group_id: str = Field(index=True)  # 群 JID 去掉 @g.us
    subject: Optional[str] = None
    description: Optional[str] = Field(default=None, sa_column=Column(Text))
    owner_jid: Optional[str] = None
    profile_pic_url: Optional[str] = None
    participant_count: int = Field(default=0)
    is_broadcast: bool = Field(default=False)
    category: str = Field(default="business", index=True)  # business/internal/personal
    last_interaction_at: Optional[datetime] = None


class WhatsAppGroup(WhatsAppGroupBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "group_id", name="uq_group_session_group_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    metadata_synced_at: Optional[datetime] = None  # 上次从网关拉取元数据的时间
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class WhatsAppGroupRead(SQLModel):
    id: int
    session_id: str
    group_id: str
    subject: Optional[str] = None
    description: Optional[str] = None
    owner_jid: Optional[str] = None
    profile_pic_url: Optional[str] = None
    participant_count: int
    is_broadcast: bool
    category: str
    last_interaction_at: Optional[datetime] = None


class GroupCategoryUpdate(SQLModel):
    category: str


class GroupParticipantBase(SQLModel):
    group_id: int = Field(foreign_key="whatsappgroup.id", index=True)
    participant_jid: str
    participant_name: Optional[str] = None
    is_admin: bool = Field(default=False)
    is_superadmin: bool = Field(default=False)
    contact_id: Optional[int] = Field(default=None, foreign_key="contact.id", index=True)


class GroupParticipant(GroupParticipantBase, table=True):
    __table_args__ = (UniqueConstraint("group_id", "participant_jid", name="uq_participant_group_jid"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    joined_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class GroupParticipantRead(GroupParticipantBase):
    id: int
