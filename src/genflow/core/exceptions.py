"""
业务异常定义

每个异常带 HTTP 状态码和机器可读的 code，由 main.py 统一转换为响应。
"""
from typing import Optional


class GenerationError(Exception):
    """生成流程异常基类"""

    status_code: int = 500
    code: str = "generation_error"

    def __init__(self, message: str, *, generation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.generation_id = generation_id

    def to_dict(self) -> dict:
        payload = {"detail": self.message, "code": self.code}
        if self.generation_id:
            payload["generation_id"] = self.generation_id
        return payload


class ValidationError(GenerationError):
    """输入不合法，用户可修正"""

    status_code = 400
    code = "validation_error"


class InvalidStateError(GenerationError):
    """当前状态下不允许该操作"""

    status_code = 409
    code = "invalid_state"


class NotFoundError(GenerationError):
    """生成记录不存在"""

    status_code = 404
    code = "not_found"


class VersionConflictError(GenerationError):
    """版本号过期，记录已被并发修改"""

    status_code = 409
    code = "version_conflict"


class ReconcileConflictError(GenerationError):
    """对账写入连续两次竞争失败，调用方可重试"""

    status_code = 503
    code = "reconcile_conflict"


class UpstreamUnavailableError(GenerationError):
    """Worker 调用失败或超时"""

    status_code = 502
    code = "upstream_unavailable"


class InternalError(GenerationError):
    """存储层故障"""

    status_code = 500
    code = "internal_error"


__all__ = [
    "GenerationError",
    "ValidationError",
    "InvalidStateError",
    "NotFoundError",
    "VersionConflictError",
    "ReconcileConflictError",
    "UpstreamUnavailableError",
    "InternalError",
]
