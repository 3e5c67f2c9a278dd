from typing import Optional
from datetime import datetime
from sqlalchemy import UniqueConstraint
from sqlmodel import SQLModel, Field

# 新会话默认漏斗阶段 (name, color, order_index)
DEFAULT_LEAD_STATUSES = [
    ("New Lead", "#22c55e", 1),
    ("Contacted", "#06b6d4", 2),
    ("Qualified", "#3b82f6", 3),
    ("Proposal Sent", "#f59e0b", 4),
    ("Closed Won", "#10b981", 5),
    ("Closed Lost", "#ef4444", 6),
]

# 计入转化的阶段名
CONVERTED_STATUS_NAMES = ("Closed Won", "Enrolled", "Accepted")


class LeadStatusBase(SQLModel):
    session_id: str = Field(index=True)
    name: str
    color: str = Field(default="#94a3b8")
    order_index: int = Field(default=0)
    is_default: bool = Field(default=False)


class LeadStatus(LeadStatusBase, table=True):
    __table_args__ = (UniqueConstraint("session_id", "name", name="uq_lead_status_session_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class LeadStatusCreate(SQLModel):
    session_id: str
    name: str
    color: str = "#94a3b8"
    order_index: Optional[int] = None
    is_default: bool = False


class LeadStatusUpdate(SQLModel):
    name: Optional[str] = None
    color: Optional[str] = None
    order_index: Optional[int] = None
    is_default: Optional[bool] = None


class LeadStatusRead(LeadStatusBase):
    id: int
