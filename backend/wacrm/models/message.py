"""
消息模型
(session_id, message_id) 唯一，live notify 与 history append 两条路径共用此约束去重
"""
from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text, UniqueConstraint
from sqlmodel import SQLModel, Field

DIRECTION_INCOMING = "incoming"
DIRECTION_OUTGOING = "outgoing"

# 投递状态，数值越大越靠后，状态只允许前进 (failed 除外)
STATUS_ORDER = {"pending": 0, "sent": 1, "delivered": 2, "read": 3}
STATUS_FAILED = "failed"

MEDIA_TYPES = ("image", "video", "audio", "document", "sticker")


class MessageBase(SQLModel):
    session_id: str = Field(index=True)
    message_id: str = Field(index=True)  # 传输层分配的消息 ID
    contact_id: Optional[int] = Field(default=None, foreign_key="contact.id", index=True)
    group_id: Optional[int] = Field(default=None, foreign_key="whatsappgroup.id", index=True)
    remote_jid: Optional[str] = None
    direction: str = Field(default=DIRECTION_INCOMING)  # incoming / outgoing
    message_type: str = Field(default="text")  # text/image/video/audio/document/sticker/location/contact
    content: Optional[str] = Field(default=None, sa_column=Column(Text))
    media_url: Optional[str] = None  # 本地媒体缓存文件名
    media_mimetype: Optional[str] = None
    status: str = Field(default="sent")  # pending/sent/delivered/read/failed
    is_deleted: bool = Field(default=False)
    is_group_message: bool = Field(default=False)
    participant_jid: Optional[str] = None
    participant_name: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.utcnow, index=True)


class Message(MessageBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "message_id", name="uq_message_session_message_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    raw_message: Optional[str] = Field(default=None, sa_column=Column(Text))  # 原始 WAMessage JSON
    media_attempts: int = Field(default=0)  # 媒体下载失败次数，达到上限后定时任务不再重试
    created_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def has_media(self) -> bool:
        return self.message_type in MEDIA_TYPES


class MessageRead(SQLModel):
    id: int
    session_id: str
    message_id: str
    contact_id: Optional[int] = None
    group_id: Optional[int] = None
    direction: str
    message_type: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_mimetype: Optional[str] = None
    status: str
    is_group_message: bool
    participant_jid: Optional[str] = None
    participant_name: Optional[str] = None
    timestamp: datetime


class SendMessageRequest(SQLModel):
    session_id: str
    phone: str
    content: str
