"""
Logging configuration for the Skymmich service.
"""

import logging
from typing import Optional
from rich.logging import RichHandler
from .config import settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure clean, simple logging output."""

    # Configure standard library logging with Rich handler
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level or settings.log_level),
        handlers=[RichHandler(
            rich_tracebacks=True,
            show_time=True,
            show_path=False,
            show_level=False,
            markup=False
        )],
        force=True  # Override any existing configuration
    )

    # Silence noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def set_debug_mode(enabled: bool) -> None:
    """Toggle DEBUG output at runtime from the admin settings."""
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if enabled else getattr(logging, settings.log_level))


def get_logger(name: str):
    """Get a standard logger instance."""
    return logging.getLogger(f"skymmich.{name}")
