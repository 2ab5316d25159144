"""Crawler logging: console plus a rotating crawler.log under log_dir."""

import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Union

LOGGER_NAME = "regwatch"
LOG_FILE = "crawler.log"

# Per-request chatter from the HTTP stack drowns out per-page crawl lines
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "asyncio")


def resolve_level(level: Union[int, str, None] = None) -> int:
    if level is None:
        level = os.environ.get("REGWATCH_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logger(log_dir: str = "logs", level: Union[int, str, None] = None) -> logging.Logger:
    level = resolve_level(level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    os.makedirs(log_dir, exist_ok=True)
    fmt = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console = logging.StreamHandler()
    console.setFormatter(fmt)

    # 10MB x 5
    rotating = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    rotating.setFormatter(fmt)

    for handler in (console, rotating):
        handler.setLevel(level)
        logger.addHandler(handler)
    return logger
