"""
生成请求数据模型
"""
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel


class MediaType(str, Enum):
    """生成媒体类型"""
    VIDEO = "video"
    AUDIO = "audio"


class Provider(str, Enum):
    """生成服务提供方"""
    GOOGLE = "google"
    VEO3 = "veo3"  # 兼容历史数据
    RUNWAY = "runway"
    PIKA = "pika"
    STABLE_VIDEO = "stable_video"
    ELEVENLABS = "elevenlabs"
    MURF = "murf"
    SYNTHESIA = "synthesia"


class GenerationStatus(str, Enum):
    """生成生命周期状态"""
    PENDING_CLARIFICATION = "pending_clarification"
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# 状态单调顺序。cancelled 可以从任意非终态进入，排在最后以保证对账时总是"前进"。
STATUS_RANK: dict[GenerationStatus, int] = {
    GenerationStatus.PENDING_CLARIFICATION: 0,
    GenerationStatus.PENDING_CONFIRMATION: 1,
    GenerationStatus.CONFIRMED: 2,
    GenerationStatus.QUEUED: 3,
    GenerationStatus.PROCESSING: 4,
    GenerationStatus.COMPLETED: 5,
    GenerationStatus.FAILED: 5,
    GenerationStatus.CANCELLED: 6,
}

TERMINAL_STATUSES = frozenset({
    GenerationStatus.COMPLETED,
    GenerationStatus.FAILED,
    GenerationStatus.CANCELLED,
})

# 等待用户补充信息的阶段，worker 追问时允许在其中回到 pending_clarification
CLARIFICATION_STATUSES = frozenset({
    GenerationStatus.PENDING_CLARIFICATION,
    GenerationStatus.PENDING_CONFIRMATION,
})


def rank_of(status: GenerationStatus | str) -> int:
    """返回状态在单调顺序中的位置"""
    return STATUS_RANK[GenerationStatus(status)]


def is_terminal(status: GenerationStatus | str) -> bool:
    return GenerationStatus(status) in TERMINAL_STATUSES


class GenerationResult(BaseModel):
    """
    生成结果，仅在 completed 时写入记录

    同时接受 worker 的驼峰字段（videoUrl、fileSize 等）。
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    result_url: Optional[str] = PydanticField(
        default=None,
        validation_alias=AliasChoices("result_url", "resultUrl", "videoUrl", "audioUrl"),
    )
    thumbnail_url: Optional[str] = PydanticField(
        default=None, validation_alias=AliasChoices("thumbnail_url", "thumbnailUrl")
    )
    duration: Optional[float] = PydanticField(default=None, ge=0, description="时长（秒）")
    file_size: Optional[int] = PydanticField(
        default=None, ge=0, validation_alias=AliasChoices("file_size", "fileSize")
    )
    resolution: Optional[str] = None
    format: Optional[str] = None
    processing_time: Optional[float] = PydanticField(
        default=None, ge=0, validation_alias=AliasChoices("processing_time", "processingTime")
    )
    cost: Optional[float] = PydanticField(default=None, ge=0, description="费用（USD）")

    def to_record(self) -> dict[str, Any]:
        """写入记录时只保留有值的字段"""
        return self.model_dump(exclude_none=True)


class GenerationRequest(SQLModel, table=True):
    """
    生成请求记录

    所有变更都必须经过 GenerationStore.update_if，version 用于乐观并发控制。
    """
    __tablename__ = "generation_requests"

    # 主键
    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)

    # worker 派发成功后写入，只能写一次
    external_job_id: Optional[str] = Field(
        default=None, index=True, unique=True, description="外部任务ID"
    )

    # 关联
    owner_id: str = Field(index=True, description="所属用户ID")
    conversation_id: str = Field(index=True, description="所属会话ID")
    source_message_id: str = Field(description="触发生成的消息ID")

    # 请求内容（创建后不可变）
    media_type: MediaType = Field(description="媒体类型")
    provider: Provider = Field(description="服务提供方")
    model: str = Field(description="模型版本")
    prompt: str = Field(description="提示词")
    parameters: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON), description="生成参数"
    )

    # 澄清
    clarification_questions: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON), description="澄清问题"
    )
    clarification_responses: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON), description="用户澄清回答"
    )

    # 状态
    status: GenerationStatus = Field(
        default=GenerationStatus.PENDING_CLARIFICATION, index=True
    )
    progress: int = Field(default=0, ge=0, le=100)
    queue_position: Optional[int] = Field(default=None)
    # 每次确认占位加一，重新占位时保证版本号前进
    dispatch_attempts: int = Field(default=0, description="派发尝试次数")
    result: Optional[dict[str, Any]] = Field(
        default=None, sa_column=Column(JSON), description="生成结果"
    )
    error_message: Optional[str] = Field(default=None, description="错误信息")
    version: int = Field(default=1, description="乐观锁版本号")

    # 时间戳
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)
    started_at: Optional[datetime] = Field(default=None)
    completed_at: Optional[datetime] = Field(default=None)
    failed_at: Optional[datetime] = Field(default=None)
    cancelled_at: Optional[datetime] = Field(default=None)

    @property
    def status_rank(self) -> int:
        return rank_of(self.status)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)

    @property
    def can_cancel(self) -> bool:
        return not self.is_terminal

    def to_payload(self) -> dict[str, Any]:
        """派发给 worker 的完整请求内容"""
        return {
            "generationId": self.id,
            "userId": self.owner_id,
            "type": self.media_type.value,
            "provider": self.provider.value,
            "model": self.model,
            "prompt": self.prompt,
            "parameters": {
                **(self.parameters or {}),
                "conversationId": self.conversation_id,
                "messageId": self.source_message_id,
                "clarificationResponses": self.clarification_responses or {},
            },
        }
