"""
Structured logging setup using structlog.
Provides consistent logging across all modules.
"""

import sys
import logging
from typing import List, Optional
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

from .config import Settings, get_settings


def _build_processors(log_format: str) -> List:
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="ISO"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    return processors


def setup_logging(settings: Optional[Settings] = None, log_file: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        settings: Settings to read level/format from (defaults to process settings)
        log_file: Optional path to log file, overrides settings.log_file
    """
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level)

    logging.getLogger().handlers.clear()

    structlog.configure(
        processors=_build_processors(settings.log_format),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: List[logging.Handler] = []

    # Rich console output while developing
    if settings.is_development and settings.log_format != "json":
        rich_handler = RichHandler(
            console=Console(file=sys.stderr),
            show_time=True,
            show_path=True,
            rich_tracebacks=True,
        )
        rich_handler.setLevel(level)
        handlers.append(rich_handler)
    else:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setLevel(level)
        stream_handler.setFormatter(_plain_formatter(settings.log_format))
        handlers.append(stream_handler)

    target = log_file or settings.log_file
    if target:
        file_path = Path(target)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(level)
        file_handler.setFormatter(_plain_formatter(settings.log_format))
        handlers.append(file_handler)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def _plain_formatter(log_format: str) -> logging.Formatter:
    if log_format == "json":
        return logging.Formatter("%(message)s")
    return logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)
    """
    return structlog.get_logger(name)
