"""
数据库连接管理 - 统一管理数据库连接
"""
from pathlib import Path

from sqlalchemy.engine import Engine, make_url
from sqlmodel import SQLModel, create_engine

from genflow.core.config import get_settings


def build_engine(database_url: str) -> Engine:
    """按连接串创建引擎，SQLite 需要允许跨线程使用连接。"""
    connect_args = {}
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(database_url, echo=False, connect_args=connect_args)


def init_db(target: Engine) -> None:
    """创建所有数据表"""
    # 导入模型以注册到 metadata
    from genflow import models  # noqa: F401

    SQLModel.metadata.create_all(target)


# 创建全局数据库引擎
_settings = get_settings()
engine = build_engine(_settings.database_url)

__all__ = ["engine", "build_engine", "init_db"]
