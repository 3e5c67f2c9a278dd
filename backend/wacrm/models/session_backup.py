from typing import Optional
from datetime import datetime
from sqlalchemy import Column, Text
from sqlmodel import SQLModel, Field


class SessionBackup(SQLModel, table=True):
    """WhatsApp 认证目录的加密云端备份"""
    id: Optional[int] = Field(default=None, primary_key=True)
    session_id: str = Field(unique=True, index=True)
    session_data: str = Field(sa_column=Column(Text, nullable=False))  # base64(header + nonce + ciphertext)
    file_count: int = Field(default=0)
    last_synced_at: datetime = Field(default_factory=datetime.utcnow)
    created_at: datetime = Field(default_factory=datetime.utcnow)
