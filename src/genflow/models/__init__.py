"""
数据模型模块
"""
from .generation import (
    CLARIFICATION_STATUSES,
    STATUS_RANK,
    TERMINAL_STATUSES,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
    MediaType,
    Provider,
    is_terminal,
    rank_of,
)
from .message import ConversationMessage

__all__ = [
    "CLARIFICATION_STATUSES",
    "STATUS_RANK",
    "TERMINAL_STATUSES",
    "GenerationRequest",
    "GenerationResult",
    "GenerationStatus",
    "MediaType",
    "Provider",
    "is_terminal",
    "rank_of",
    "ConversationMessage",
]
