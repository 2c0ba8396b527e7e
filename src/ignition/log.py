"""structlog configuration for the engine."""

import logging
from typing import Any, List, Optional

import structlog

from .config import IgnitionSettings


def configure_logging(settings: Optional[IgnitionSettings] = None) -> None:
    """
    Configure structlog processors and level.

    Runs bind ``execution_id`` and ``installation_id`` through
    ``structlog.contextvars``; ``merge_contextvars`` adds them to every line.
    """
    settings = settings or IgnitionSettings()
    level = logging.getLevelName(settings.log_level)
    if not isinstance(level, int):
        level = logging.INFO

    processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if settings.log_format == "json":
        processors.append(structlog.processors.dict_tracebacks)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )
