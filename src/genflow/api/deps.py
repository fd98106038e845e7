"""
API 依赖 - 调用方身份与服务实例
"""
import hmac
from typing import Optional

from fastapi import Header, HTTPException

from genflow.core import get_settings
from genflow.services.orchestrator import GenerationOrchestrator, get_orchestrator


def get_current_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """
    调用方身份

    会话校验由网关完成，这里只读取网关注入的 X-User-Id。
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="未登录")
    return x_user_id.strip()


def get_generation_orchestrator() -> GenerationOrchestrator:
    return get_orchestrator()


def verify_webhook_token(authorization: Optional[str] = Header(default=None)) -> None:
    """校验 worker 回调的 Bearer 密钥；未配置密钥时跳过"""
    secret = get_settings().webhook_secret
    if not secret:
        return
    expected = f"Bearer {secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Webhook 鉴权失败")
