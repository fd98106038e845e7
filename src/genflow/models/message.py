"""
会话消息数据模型
"""
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class ConversationMessage(SQLModel, table=True):
    """
    助手消息记录

    由状态通知写入会话，不回写生成记录。
    """
    __tablename__ = "conversation_messages"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    conversation_id: str = Field(index=True, description="会话ID")
    role: str = Field(default="assistant", description="消息角色")
    kind: str = Field(default="info", description="消息类型: info/result/error")
    content: str = Field(description="消息内容")
    # metadata 与 SQLModel 保留属性重名，字段名用 meta，列名仍为 metadata
    meta: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column("metadata", JSON)
    )
    created_at: datetime = Field(default_factory=datetime.now)
