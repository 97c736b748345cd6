"""Loguru configuration shared by the library and the terminal client."""

import logging
import sys

from loguru import logger

from stepstream.interface import ILogger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)

NOISY_LOGGERS = ("httpx", "httpcore", "asyncio")

default_logger: ILogger = logger


def setup_logging(level: str = "INFO", *, noisy_level: str = "WARNING") -> None:
    """Replace loguru's default sink with a formatted stderr sink."""
    logger.remove()
    logger.add(sys.stderr, format=LOG_FORMAT, level=level.upper(), colorize=True)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level.upper())
