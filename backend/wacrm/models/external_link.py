"""
外部应用关联
把联系人与外部系统中的记录 (学生档案、付款单、工单等) 关联起来
"""
from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field


class ExternalAppLinkBase(SQLModel):
    session_id: str = Field(index=True)
    contact_id: int = Field(foreign_key="contact.id", index=True)
    app_name: str = Field(index=True)  # 外部系统名称
    external_id: str  # 外部系统中的记录 ID
    link_type: str = Field(default="record")  # record/payment/ticket
    url: Optional[str] = None
    label: Optional[str] = None


class ExternalAppLink(ExternalAppLinkBase, table=True):
    __table_args__ = (
        UniqueConstraint("contact_id", "app_name", "external_id", name="uq_external_link_contact_app_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class ExternalAppLinkCreate(SQLModel):
    session_id: str
    app_name: str
    external_id: str
    link_type: str = "record"
    url: Optional[str] = None
    label: Optional[str] = None


class ExternalAppLinkRead(ExternalAppLinkBase):
    id: int
    created_at: datetime
