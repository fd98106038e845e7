"""
Worker 回调 API

只有处理成功（包括幂等空操作）才返回 2xx；处理失败返回 5xx，
让 worker 按自己的重试策略重新投递。
"""
import asyncio
import time
import uuid
from datetime import datetime
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from genflow.api.deps import get_generation_orchestrator, verify_webhook_token
from genflow.core import get_logger
from genflow.core.exceptions import GenerationError, NotFoundError
from genflow.models import GenerationResult, GenerationStatus
from genflow.services.orchestrator import GenerationOrchestrator, StatusReport
from genflow.services.worker_client import normalize_questions

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["worker 回调"])


class WorkerWebhookEvent(BaseModel):
    """worker 推送的事件"""
    model_config = ConfigDict(populate_by_name=True)

    event: Literal[
        "generation.clarification_required",
        "generation.queued",
        "generation.started",
        "generation.progress",
        "generation.completed",
        "generation.failed",
        "generation.cancelled",
    ]
    job_id: str = Field(alias="jobId", min_length=1)
    generation_id: str = Field(alias="generationId", min_length=1)
    user_id: str = Field(alias="userId", min_length=1)
    status: GenerationStatus
    progress: Optional[float] = None  # 范围在对账时检查，越界只丢弃该值
    result: Optional[GenerationResult] = None
    error: Optional[str] = None
    clarification_questions: Optional[Any] = Field(default=None, alias="clarificationQuestions")
    timestamp: str

    def to_report(self) -> StatusReport:
        return StatusReport(
            status=self.status,
            progress=self.progress,
            result=self.result.to_record() if self.result else None,
            error_message=self.error,
            clarification_questions=normalize_questions(self.clarification_questions),
            external_job_id=self.job_id,
        )


# 记录缺失可能是创建事务尚未可见，交给 worker 重试
_NOT_FOUND_STATUS = 503


@router.post("/worker", dependencies=[Depends(verify_webhook_token)])
async def receive_worker_webhook(
    request: Request,
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """接收 worker 状态回调"""
    started = time.monotonic()
    request_id = f"webhook_{uuid.uuid4().hex[:12]}"

    try:
        body = await request.json()
    except ValueError:
        logger.warning(f"[WEBHOOK] 请求体不是合法 JSON: request_id={request_id}")
        return JSONResponse(status_code=400, content={"detail": "请求体不是合法 JSON", "request_id": request_id})

    try:
        event = WorkerWebhookEvent.model_validate(body)
    except ValidationError as e:
        logger.warning(f"[WEBHOOK] 回调格式校验失败: request_id={request_id}, errors={e.errors()}")
        return JSONResponse(
            status_code=400,
            content={
                "detail": "回调格式错误",
                "errors": e.errors(include_url=False, include_context=False),
                "request_id": request_id,
            },
        )

    logger.info(
        f"[WEBHOOK] 收到回调: request_id={request_id}, event={event.event}, "
        f"job={event.job_id}, generation={event.generation_id}, status={event.status.value}"
    )

    try:
        outcome = await asyncio.to_thread(
            orchestrator.reconcile,
            event.to_report(),
            generation_id=event.generation_id,
            external_job_id=event.job_id,
            owner_id=event.user_id,
        )
    except NotFoundError as e:
        logger.error(f"[WEBHOOK] 生成记录不存在: request_id={request_id}, generation={event.generation_id}")
        return JSONResponse(
            status_code=_NOT_FOUND_STATUS,
            content={**e.to_dict(), "request_id": request_id},
        )
    except GenerationError as e:
        logger.error(f"[WEBHOOK] 回调处理失败: request_id={request_id}, {e.code}: {e.message}")
        status_code = e.status_code if e.status_code >= 500 else 500
        return JSONResponse(status_code=status_code, content={**e.to_dict(), "request_id": request_id})

    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        f"[WEBHOOK] 回调处理完成: request_id={request_id}, generation={outcome.generation.id}, "
        f"status={outcome.generation.status.value}, changed={outcome.changed}, {elapsed_ms}ms"
    )
    return {
        "success": True,
        "request_id": request_id,
        "generation_id": outcome.generation.id,
        "status": outcome.generation.status.value,
        "version": outcome.generation.version,
        "changed": outcome.changed,
        "processing_time_ms": elapsed_ms,
    }


@router.get("/worker")
async def webhook_health():
    """回调端点健康检查"""
    return {
        "status": "ok",
        "endpoint": "webhook",
        "timestamp": datetime.now().isoformat(),
    }
