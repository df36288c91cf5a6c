"""
Central logging setup.

Log lines go to stdout (container friendly) with timestamp, level, process id
and logger name. Modules log via ``logging.getLogger(__name__)``.
"""

import logging
import os
import sys

LOG_FORMAT = (
    "%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s"
)

_configured = False


def setup_logging(level: str | None = None) -> None:
    """
    Configure the root logger once.

    ``LOG_LEVEL`` (default INFO) picks the level. Chatty third-party loggers
    (httpx, aiosqlite, asyncio) are held at WARNING.
    """
    global _configured
    if _configured:
        return

    level = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    for noisy in ("httpx", "httpcore", "aiosqlite", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
