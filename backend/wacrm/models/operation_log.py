from typing import Optional
from datetime import datetime
from sqlmodel import SQLModel, Field


class OperationLogBase(SQLModel):
    action: str = Field(index=True)  # login / session_logout / broadcast_start / contact_import ...
    username: str  # 操作人，后台任务为 "system"
    session_id: Optional[str] = Field(default=None, index=True)  # 相关 WhatsApp 会话
    details: Optional[str] = None
    ip_address: Optional[str] = None
    status: str = Field(default="success")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class OperationLog(OperationLogBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)


class OperationLogCreate(OperationLogBase):
    pass


class OperationLogRead(OperationLogBase):
    id: int
