import os
import sys

from loguru import logger

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan> - <level>{message}</level>"
)

_configured = False


def setup_logger(name: str):
    """Return a loguru logger bound to *name*, configuring the sink once."""
    global _configured
    if not _configured:
        logger.remove()
        logger.configure(extra={"name": "crdb"})
        logger.add(sys.stderr, level=LOG_LEVEL, format=LOG_FORMAT)
        _configured = True
    return logger.bind(name=name)
