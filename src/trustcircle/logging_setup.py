"""
Structured logging configuration.

All modules obtain their logger with ``structlog.get_logger(__name__)``;
this module wires structlog to the stdlib ``logging`` tree once, choosing a
JSON or console renderer and an optional rotating file handler from
``config``.
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import structlog

from . import config


def _add_timestamp(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Ensure timestamp is always present (ISO 8601, UTC)."""
    if "timestamp" not in event_dict:
        event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    structured: Optional[bool] = None,
    to_file: Optional[bool] = None,
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Parameters
    ----------
    level : str, optional
        Log level name; defaults to ``config.LOG_LEVEL``.
    structured : bool, optional
        Render JSON lines; defaults to ``config.STRUCTURED_LOGGING``.
    to_file : bool, optional
        Also write to a rotating file in ``config.LOG_DIR``.
    """
    level_name = (level or config.LOG_LEVEL).upper()
    level_value = getattr(logging, level_name, logging.INFO)
    structured = config.STRUCTURED_LOGGING if structured is None else structured
    to_file = config.LOG_TO_FILE if to_file is None else to_file

    shared_processors: List[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        _add_timestamp,
    ]

    renderer: Any
    if structured:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=shared_processors
        + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer, foreign_pre_chain=shared_processors
    )

    handlers: List[logging.Handler] = []
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    handlers.append(console)

    if to_file:
        config.LOG_DIR.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.RotatingFileHandler(
            config.LOG_DIR / "trustcircle.log",
            maxBytes=config.MAX_LOG_SIZE_MB * 1024 * 1024,
            backupCount=config.LOG_BACKUP_COUNT,
        )
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.processors.JSONRenderer(),
                foreign_pre_chain=shared_processors,
            )
        )
        handlers.append(file_handler)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(level_value)
