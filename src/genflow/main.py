"""
FastAPI 应用入口
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from genflow import __version__
from genflow.core import setup_logging, get_settings, get_logger
from genflow.core.database import engine, init_db
from genflow.core.exceptions import GenerationError
from genflow.api import api_router

# 初始化日志
settings = get_settings()
setup_logging(settings.log_level)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时执行
    init_db(engine)
    logger.info("🚀 生成编排服务启动中...")
    yield
    # 关闭时执行
    logger.info("👋 生成编排服务关闭")


# 创建 FastAPI 应用
app = FastAPI(
    title="生成编排 API",
    description="AI 视频/音频生成请求的生命周期编排与 worker 状态对账",
    version=__version__,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    """业务异常统一转换为 JSON 响应"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} 失败: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# 注册 API 路由
app.include_router(api_router)


@app.get("/")
async def root():
    """健康检查"""
    return {"status": "ok", "message": "生成编排 API 运行中"}


@app.get("/health")
async def health():
    """健康检查"""
    return {"status": "healthy"}


if __name__ == "__main__":
    import uvicorn

    logger.info(f"启动服务: http://{settings.api_host}:{settings.api_port}")
    uvicorn.run(
        "genflow.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
