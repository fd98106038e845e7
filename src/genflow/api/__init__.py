"""
API 路由模块
"""
from fastapi import APIRouter
from .generations import router as generations_router
from .webhooks import router as webhooks_router

# 创建主路由
api_router = APIRouter(prefix="/api")

api_router.include_router(generations_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
