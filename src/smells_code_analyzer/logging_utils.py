import collections
import json
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, OrderedDict, Union

if TYPE_CHECKING:
    from .config import LogConfig

PACKAGE_LOGGER = "smells_code_analyzer"
LOG_LEVEL_ENV = "SCA_LOG_LEVEL"
_DEFAULT_LEVEL = "WARNING"
_MAX_FIELD_CHARS = 500

_MAX_CACHED_LOGGERS = 64
_LOGGER_CACHE: "OrderedDict[str, logging.Logger]" = collections.OrderedDict()
_CONSOLE_HANDLER_NAME = "sca-console"


def resolve_log_level(level: Optional[Union[str, int]] = None) -> int:
    if isinstance(level, int):
        return level
    raw = level or os.environ.get(LOG_LEVEL_ENV) or _DEFAULT_LEVEL
    resolved = logging.getLevelName(str(raw).strip().upper())
    if isinstance(resolved, int):
        return resolved
    return logging.WARNING


def setup_logging(level: Optional[Union[str, int]] = None) -> logging.Logger:
    """
    Attach a single stderr handler to the package logger.
    Calling again only adjusts the level.
    """
    resolved = resolve_log_level(level)
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(resolved)
    for handler in logger.handlers:
        if handler.get_name() == _CONSOLE_HANDLER_NAME:
            handler.setLevel(resolved)
            return logger
    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_CONSOLE_HANDLER_NAME)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def setup_rotating_logger(name: str, log_config: "LogConfig") -> logging.Logger:
    """
    Configure (or retrieve) an isolated rotating logger for the given name.
    Each logger owns a single file handler.
    """
    existing = _LOGGER_CACHE.get(name)
    if existing is not None:
        _LOGGER_CACHE.move_to_end(name)
        return existing

    log_path: Path = log_config.path
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_path,
        maxBytes=log_config.max_bytes,
        backupCount=log_config.backup_count,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))

    logger = logging.getLogger(name)
    logger.handlers.clear()
    logger.setLevel(logging.DEBUG)
    logger.addHandler(handler)

    _LOGGER_CACHE[name] = logger
    _LOGGER_CACHE.move_to_end(name)
    while len(_LOGGER_CACHE) > _MAX_CACHED_LOGGERS:
        _, evicted = _LOGGER_CACHE.popitem(last=False)
        try:
            for h in list(evicted.handlers):
                try:
                    h.close()
                except Exception:
                    pass
            evicted.handlers.clear()
        except Exception:
            pass
    return logger


def log_event(
    logger: logging.Logger,
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit one JSON object per record: the event name plus non-null fields."""
    try:
        if not logger.isEnabledFor(level):
            return
        payload: dict[str, Any] = {"event": event}
        for key, value in fields.items():
            if value is None:
                continue
            payload[key] = _coerce_field(value)
        if exc is not None:
            payload["error"] = str(exc) or exc.__class__.__name__
            payload["error_type"] = exc.__class__.__name__
        logger.log(level, json.dumps(payload, default=str, ensure_ascii=False))
    except Exception:
        pass


def _coerce_field(value: Any) -> Any:
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_coerce_field(item) for item in value]
    if isinstance(value, dict):
        return value
    text = str(value)
    if len(text) > _MAX_FIELD_CHARS:
        return text[:_MAX_FIELD_CHARS] + "..."
    return text
