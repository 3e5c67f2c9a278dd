"""
联系人模型
同一会话内按规范化号码唯一；标签多对多；备注
"""
from typing import Optional, List
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field

# 联系人来源
SOURCE_WHATSAPP = "whatsapp"
SOURCE_GOOGLE = "google"
SOURCE_OUTLOOK = "outlook"
SOURCE_MERGED = "merged"
CONTACT_SOURCES = (SOURCE_WHATSAPP, SOURCE_GOOGLE, SOURCE_OUTLOOK, SOURCE_MERGED)


class ContactBase(SQLModel):
    session_id: str = Field(index=True)
    phone: str = Field(index=True)  # 规范化后的纯数字号码，@lid 联系人暂存 lid 用户部分
    name: Optional[str] = None
    push_name: Optional[str] = None  # WhatsApp 昵称
    email: Optional[str] = None
    whatsapp_jid: Optional[str] = Field(default=None, index=True)  # xxx@s.whatsapp.net
    whatsapp_lid: Optional[str] = Field(default=None, index=True)  # xxx@lid
    profile_pic_url: Optional[str] = None
    is_business: bool = Field(default=False)
    is_blocked: bool = Field(default=False)
    source: str = Field(default=SOURCE_WHATSAPP, index=True)  # whatsapp/google/outlook/merged
    external_contact_id: Optional[str] = None  # Google / Outlook 通讯录 ID
    lead_status_id: Optional[int] = Field(default=None, foreign_key="leadstatus.id", index=True)
    last_interaction_at: Optional[datetime] = Field(default=None, index=True)


class Contact(ContactBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "phone", name="uq_contact_session_phone"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class ContactCreate(SQLModel):
    session_id: str
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    source: str = SOURCE_WHATSAPP
    lead_status_id: Optional[int] = None


class ContactUpdate(SQLModel):
    name: Optional[str] = None
    email: Optional[str] = None
    is_blocked: Optional[bool] = None
    lead_status_id: Optional[int] = None


class ContactRead(ContactBase):
    id: int
    created_at: datetime
    updated_at: datetime


class ContactImportEntry(SQLModel):
    """外部通讯录 (Google / Outlook) 导入条目"""
    phone: str
    name: Optional[str] = None
    email: Optional[str] = None
    external_contact_id: Optional[str] = None


class ContactImportRequest(SQLModel):
    session_id: str
    source: str = SOURCE_GOOGLE
    contacts: List[ContactImportEntry] = []


# ==================== 标签 ====================

class TagBase(SQLModel):
    session_id: str = Field(index=True)
    name: str
    color: str = Field(default="#06b6d4")


class Tag(TagBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "name", name="uq_tag_session_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class TagCreate(SQLModel):
    session_id: str
    name: str
    color: str = "#06b6d4"


class TagRead(TagBase):
    id: int
    created_at: datetime


class ContactTag(SQLModel, table=True):
    contact_id: int = Field(foreign_key="contact.id", primary_key=True)
    tag_id: int = Field(foreign_key="tag.id", primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


# ==================== 备注 ====================

class NoteBase(SQLModel):
    session_id: str = Field(index=True)
    contact_id: int = Field(foreign_key="contact.id", index=True)
    content: str = Field(sa_column=Column(Text, nullable=False))
    created_by: str = Field(default="system")


class Note(NoteBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class NoteCreate(SQLModel):
    session_id: str
    content: str
    created_by: str = "system"


class NoteUpdate(SQLModel):
    content: str


class NoteRead(SQLModel):
    id: int
    session_id: str
    contact_id: int
    content: str
    created_by: str
    created_at: datetime
    updated_at: datetime
