"""
wikisync 日志配置。
使用 loguru 进行结构化日志记录，同步运行期间每条日志都带有 run_id。
"""
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from loguru import logger

# 不在同步运行中时 run_id 显示为 "-"
NO_RUN = "-"

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[run_id]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[run_id]} | {name}:{function}:{line} | {message}"


def setup_logging(
    level: str = "INFO",
    log_file: Optional[Path] = None,
    rotation: str = "10 MB",
    retention: str = "7 days"
) -> None:
    """
    配置 loguru 日志记录器。

    Args:
        level: 日志级别 (DEBUG, INFO, WARNING, ERROR)
        log_file: 可选的日志文件路径，定时任务通常写到文件
        rotation: 日志文件轮转大小
        retention: 日志文件保留时间
    """
    logger.remove()
    logger.configure(extra={"run_id": NO_RUN})

    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            encoding="utf-8",
        )


def get_logger(name: str = __name__):
    """获取指定名称的日志记录器实例。"""
    return logger.bind(name=name)


@contextmanager
def run_context(run_id: str) -> Iterator[None]:
    """在上下文内 (包括其中创建的协程任务) 的日志都带上 run_id。"""
    with logger.contextualize(run_id=run_id):
        yield
