from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from pythonjsonlogger import jsonlogger

from .settings import settings

LOGGER_NAME = "loop_router"
LOG_FILE_NAME = "loop_router.log.jsonl"


def _file_handler(log_dir: str) -> logging.Handler | None:
    """JSONL file sink under LOG_DIR; None when unset or not writable."""
    if not str(log_dir or "").strip():
        return None
    path = Path(log_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
        return logging.FileHandler(path / LOG_FILE_NAME, encoding="utf-8")
    except OSError:
        return None


def get_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    level = logging.getLevelName(settings.log_level.upper())
    logger.setLevel(level if isinstance(level, int) else logging.INFO)
    logger.propagate = False

    formatter = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    file_handler = _file_handler(settings.log_dir)
    if file_handler is not None:
        handlers.append(file_handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger


LOGGER: logging.Logger | None = None


def log_event(event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit one structured record; `event` is both the message and a field."""
    global LOGGER
    if LOGGER is None:
        LOGGER = get_logger()
    LOGGER.log(level, event, extra={"event": event, **fields})
