"""
状态通知服务 - 状态变化后向会话追加一条助手消息
"""
from enum import Enum
from typing import Any, Optional, Protocol

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from genflow.core import get_logger
from genflow.models import (
    ConversationMessage,
    GenerationRequest,
    GenerationStatus,
    MediaType,
)

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    INFO = "info"
    RESULT = "result"
    ERROR = "error"


class NotificationSink(Protocol):
    """通知出口，编排层只依赖这个接口"""

    def post(
        self,
        conversation_id: str,
        text: str,
        kind: NotificationKind,
        metadata: dict[str, Any],
    ) -> Any:
        ...


_MEDIA_NOUN = {
    MediaType.VIDEO: "视频",
    MediaType.AUDIO: "音频",
}


def _format_file_size(size: Optional[int]) -> str:
    if not size:
        return "未知"
    return f"{size / 1024 / 1024:.1f} MB"


def render_status_message(record: GenerationRequest) -> tuple[str, NotificationKind]:
    """根据记录当前状态生成消息文本和消息类型"""
    noun = _MEDIA_NOUN.get(record.media_type, "作品")
    status = record.status

    if status == GenerationStatus.PROCESSING:
        return f"🎬 正在生成你的{noun}，请稍候...\n\n进度: {record.progress}%", NotificationKind.INFO

    if status == GenerationStatus.COMPLETED:
        result = record.result or {}
        if not result.get("result_url"):
            return f"✅ 你的{noun}已生成完成！", NotificationKind.RESULT
        lines = [f"✅ 你的{noun}已生成完成！", ""]
        lines.append(f"时长: {result.get('duration') or '未知'}s")
        if record.media_type == MediaType.VIDEO:
            lines.append(f"分辨率: {result.get('resolution') or '未知'}")
        lines.append(f"文件大小: {_format_file_size(result.get('file_size'))}")
        return "\n".join(lines), NotificationKind.RESULT

    if status == GenerationStatus.FAILED:
        return (
            f"❌ 抱歉，{noun}生成失败。\n\n错误: {record.error_message or '未知错误'}",
            NotificationKind.ERROR,
        )

    if status == GenerationStatus.CANCELLED:
        return f"⏹️ {noun}生成已取消。", NotificationKind.INFO

    if status == GenerationStatus.QUEUED:
        text = f"🕒 {noun}生成任务已提交，正在排队。"
        if record.queue_position is not None:
            text += f"\n\n当前排队位置: {record.queue_position}"
        return text, NotificationKind.INFO

    if status == GenerationStatus.PENDING_CLARIFICATION:
        questions = record.clarification_questions or {}
        lines = [f"🤔 为了更好地生成{noun}，还需要你补充一些信息："]
        lines.extend(f"- {question}" for question in questions.values())
        return "\n".join(lines), NotificationKind.INFO

    return f"{noun}生成状态: {status.value}", NotificationKind.INFO


def build_metadata(record: GenerationRequest) -> dict[str, Any]:
    """消息附带的结构化信息"""
    metadata: dict[str, Any] = {
        "generation_id": record.id,
        "job_id": record.external_job_id,
        "status": record.status.value,
        "version": record.version,
    }
    if record.status == GenerationStatus.PROCESSING:
        metadata["progress"] = record.progress
    if record.result:
        metadata["result"] = record.result
    if record.error_message:
        metadata["error"] = record.error_message
    return metadata


class ConversationNotifier:
    """
    会话消息通知

    只追加 ConversationMessage，不修改生成记录。
    """

    def __init__(self, engine: Engine):
        self.engine = engine

    def post(
        self,
        conversation_id: str,
        text: str,
        kind: NotificationKind,
        metadata: dict[str, Any],
    ) -> ConversationMessage:
        with Session(self.engine) as session:
            message = ConversationMessage(
                conversation_id=conversation_id,
                role="assistant",
                kind=NotificationKind(kind).value,
                content=text,
                meta=metadata,
            )
            session.add(message)
            session.commit()
            session.refresh(message)
            logger.debug(f"会话消息已写入: conversation={conversation_id}, kind={message.kind}")
            return message

    def list_messages(self, conversation_id: str) -> list[ConversationMessage]:
        """按时间顺序获取会话中的通知消息"""
        with Session(self.engine) as session:
            statement = (
                select(ConversationMessage)
                .where(ConversationMessage.conversation_id == conversation_id)
                .order_by(ConversationMessage.created_at.asc())
            )
            return list(session.exec(statement).all())
