"""
创建数据库表
"""
from genflow.core import get_settings
from genflow.core.database import build_engine, init_db

settings = get_settings()

if __name__ == "__main__":
    # 创建引擎
    engine = build_engine(settings.database_url)

    # 创建所有表
    init_db(engine)

    print("✅ 数据库表创建完成")
