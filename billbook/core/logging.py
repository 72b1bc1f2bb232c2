import sys
from loguru import logger
from .config import settings


def setup_logging():
    """Configure the loguru sink once per process and return the logger"""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{line} - {message} | {extra}",
        backtrace=False,
    )
    return logger
