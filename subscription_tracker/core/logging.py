"""
Structured logging setup using structlog.

Every event carries the service name and environment so log lines from the
monitor, the sweeper and the health server can be told apart once shipped.
"""

import sys
import logging
from typing import Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings, settings as default_settings


NOISY_LOGGERS = ("uvicorn.access", "asyncio", "aiohttp", "aiosqlite", "sqlalchemy.engine")


def _service_context(config: Settings):
    def add_service_context(logger, method_name, event_dict):
        event_dict.setdefault("app", config.app_name)
        event_dict.setdefault("environment", config.environment)
        return event_dict

    return add_service_context


def setup_logging(log_file: Optional[str] = None, config: Settings = default_settings) -> None:
    """
    Configure structured logging for the service and its management commands.

    Args:
        log_file: Optional path to log file, overrides ``config.log_file``
        config: Settings providing level, format and environment
    """
    logging.getLogger().handlers.clear()

    if config.log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=config.is_development)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="ISO", utc=True),
            _service_context(config),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, config.log_level)
    handlers = []

    # Rich console output while developing
    if config.is_development and config.log_format != "json":
        rich_handler = RichHandler(
            console=Console(file=sys.stderr),
            show_time=False,
            show_path=True,
            rich_tracebacks=True,
        )
        rich_handler.setLevel(level)
        handlers.append(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(logging.Formatter('%(message)s'))
        handlers.append(stream_handler)

    target = log_file or config.log_file
    if target:
        file_path = Path(target)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter('%(message)s'))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
