"""
配置管理 - 类似 Java 的 @ConfigurationProperties
"""
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """应用配置"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API 配置
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    debug: bool = False
    cors_origins: list[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ]

    # 外部生成 Worker 配置
    # 保留 CLOUDFLARE_WORKER_* 作为兼容别名，避免历史环境变量立即失效。
    worker_base_url: str = Field(
        default="http://localhost:8787",
        validation_alias=AliasChoices("WORKER_BASE_URL", "CLOUDFLARE_WORKER_URL"),
    )
    worker_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("WORKER_API_KEY", "CLOUDFLARE_WORKER_API_KEY"),
    )
    worker_timeout: float = Field(default=30.0, description="单次请求超时（秒）")
    worker_retry_attempts: int = Field(default=3, ge=1)
    worker_retry_delay: float = Field(default=1.0, description="指数退避基数（秒）")
    # confirmed 占位超过该时长仍未拿到任务ID，允许重新确认
    dispatch_claim_timeout: float = Field(default=300.0, gt=0)

    # Webhook 鉴权，为空时不校验
    webhook_secret: str = ""

    # 数据库配置
    database_url: str = "sqlite:///./data/genflow.db"

    # 日志配置
    log_level: str = "INFO"


@lru_cache()
def get_settings() -> Settings:
    """获取配置单例"""
    return Settings()
