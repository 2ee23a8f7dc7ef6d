import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import LOG_DIR, VERBOSE_LOGGING


def setup_logger(name: str) -> logging.Logger:
    LOG_DIR.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger(f"attendance_companion.{name}")
    if logger.handlers:
        return logger

    logger.setLevel(logging.DEBUG if VERBOSE_LOGGING else logging.INFO)
    logger.propagate = False
    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    file_handler = RotatingFileHandler(
        LOG_DIR / "companion.log",
        maxBytes=2_000_000,
        backupCount=5,
    )
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


def mask_token(token: Optional[str]) -> str:
    if token is None or not token.strip():
        return "(absent)"
    trimmed = token.strip()
    if len(trimmed) <= 8:
        return "***"
    return f"{trimmed[:4]}...{trimmed[-4:]}"
