"""
日志配置
"""
import logging
import sys


def setup_logging(log_level: str = "INFO") -> None:
    """
    配置日志系统

    只挂一个 stdout 处理器，重复调用不会叠加输出。
    """
    fmt = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    formatter = logging.Formatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    for handler in list(root_logger.handlers):
        if getattr(handler, "_genflow_console", False):
            root_logger.removeHandler(handler)
    console_handler._genflow_console = True
    root_logger.addHandler(console_handler)

    # 设置第三方库日志级别
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """
    获取日志记录器

    用法:
        logger = get_logger(__name__)
        logger.info("信息日志")
    """
    return logging.getLogger(name)
