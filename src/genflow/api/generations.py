"""
生成请求 API 路由
"""
import asyncio
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from genflow.api.deps import get_current_user_id, get_generation_orchestrator
from genflow.core import get_logger
from genflow.models import GenerationRequest, GenerationStatus, MediaType, Provider
from genflow.services.orchestrator import GenerationOrchestrator

logger = get_logger(__name__)
router = APIRouter(prefix="/generations", tags=["生成请求"])


# ============ 请求/响应模型 ============

class CreateGenerationRequest(BaseModel):
    """创建生成请求"""
    conversation_id: str = Field(min_length=1)
    message_id: str = Field(min_length=1)
    type: MediaType
    provider: Provider
    model: str = Field(min_length=1, max_length=100)
    prompt: str = Field(min_length=1, max_length=2000)
    parameters: Optional[dict[str, Any]] = None


class ClarifyRequest(BaseModel):
    """提交澄清"""
    responses: dict[str, Any]
    questions: Optional[dict[str, Any]] = None  # 可选：同时更新问题
    version: int


class VersionedRequest(BaseModel):
    """确认 / 取消，需要携带读取时的版本号"""
    version: int


def _generation_to_response(record: GenerationRequest) -> dict:
    """将 GenerationRequest 转换为响应字典"""
    return {
        "id": record.id,
        "external_job_id": record.external_job_id,
        "owner_id": record.owner_id,
        "conversation_id": record.conversation_id,
        "message_id": record.source_message_id,
        "type": record.media_type.value,
        "provider": record.provider.value,
        "model": record.model,
        "prompt": record.prompt,
        "parameters": record.parameters,
        "clarification_questions": record.clarification_questions,
        "clarification_responses": record.clarification_responses,
        "status": record.status.value,
        "progress": record.progress,
        "queue_position": record.queue_position,
        "dispatch_attempts": record.dispatch_attempts,
        "result": record.result,
        "error_message": record.error_message,
        "version": record.version,
        "created_at": record.created_at.isoformat(),
        "updated_at": record.updated_at.isoformat(),
        "started_at": record.started_at.isoformat() if record.started_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
        "failed_at": record.failed_at.isoformat() if record.failed_at else None,
        "cancelled_at": record.cancelled_at.isoformat() if record.cancelled_at else None,
    }


def _detail_response(record: GenerationRequest) -> dict:
    """详情接口额外返回的计算字段"""
    return {
        **_generation_to_response(record),
        "is_active": not record.is_terminal,
        "is_completed": record.status == GenerationStatus.COMPLETED,
        "is_failed": record.status == GenerationStatus.FAILED,
        "can_cancel": record.can_cancel,
    }


# ============ API 接口 ============

@router.post("", status_code=201)
async def create_generation(
    request: CreateGenerationRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """创建生成请求，进入澄清阶段"""
    record = await asyncio.to_thread(
        orchestrator.create_request,
        owner_id=user_id,
        conversation_id=request.conversation_id,
        source_message_id=request.message_id,
        media_type=request.type,
        provider=request.provider,
        model=request.model,
        prompt=request.prompt,
        parameters=request.parameters,
    )
    return _generation_to_response(record)


@router.get("")
async def list_generations(
    conversation_id: Optional[str] = None,
    status: list[GenerationStatus] = Query(default=[]),
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """获取当前用户的生成记录"""
    records = await asyncio.to_thread(
        orchestrator.list_requests,
        user_id,
        conversation_id=conversation_id,
        statuses=status or None,
    )
    return {
        "items": [_generation_to_response(record) for record in records],
        "total": len(records),
    }


@router.get("/{generation_id}")
async def get_generation(
    generation_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """获取生成详情"""
    record = await asyncio.to_thread(orchestrator.get, generation_id, user_id)
    return _detail_response(record)


@router.post("/{generation_id}/clarify")
async def submit_clarification(
    generation_id: str,
    request: ClarifyRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """提交澄清回答"""
    record = await asyncio.to_thread(
        orchestrator.submit_clarification,
        generation_id,
        request.responses,
        request.version,
        questions=request.questions,
        owner_id=user_id,
    )
    return {
        "generation": _generation_to_response(record),
        "next_step": "confirmation",
    }


@router.post("/{generation_id}/confirm")
async def confirm_generation(
    generation_id: str,
    request: VersionedRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """确认并派发到 worker"""
    record = await asyncio.to_thread(
        orchestrator.confirm, generation_id, request.version, owner_id=user_id
    )
    return {
        "generation": _generation_to_response(record),
        "job_id": record.external_job_id,
        "status": record.status.value,
    }


@router.post("/{generation_id}/cancel")
async def cancel_generation(
    generation_id: str,
    request: VersionedRequest,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """取消生成"""
    record = await asyncio.to_thread(
        orchestrator.cancel, generation_id, request.version, owner_id=user_id
    )
    return {"generation": _generation_to_response(record)}


@router.get("/{generation_id}/status")
async def poll_generation_status(
    generation_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: GenerationOrchestrator = Depends(get_generation_orchestrator),
):
    """
    轮询生成状态

    未收到 webhook 时由前端调用；worker 不可用时返回本地记录和错误信息。
    """
    poll = await asyncio.to_thread(orchestrator.refresh_status, generation_id, user_id)
    return {
        "generation": _detail_response(poll.generation),
        "error": poll.error,
    }
