"""
Logging configuration for the API.

Usage:
    # Request-scoped code can use the contextual logger, which prefixes the
    # request id (and the generation job id on polling routes):
    from middleware.logging_middleware import get_logger
    logger = get_logger(__name__)

    # Everything else uses standard logging:
    import logging
    logger = logging.getLogger(__name__)
"""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from core.config import settings

# Third-party loggers that are too chatty at INFO
NOISY_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "openai",
    "replicate",
    "stripe",
    "sqlalchemy.engine",
    "aiosqlite",
)


def setup_logging():
    """Configure logging for the application."""

    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    shared_processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_format == "json":
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )

    structlog.configure(
        processors=shared_processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.log_format == "json":
        console_format = "%(message)s"
    else:
        console_format = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

    console_handler.setFormatter(logging.Formatter(console_format))
    root_logger.addHandler(console_handler)

    if settings.environment == "production":
        _add_file_handlers(root_logger)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured: level={settings.log_level}, format={settings.log_format}, env={settings.environment}")


def _add_file_handlers(root_logger: logging.Logger, log_dir: Path = Path("logs")):
    """Rotating full log plus a separate error log."""
    log_dir.mkdir(exist_ok=True)
    file_format = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

    file_handler = RotatingFileHandler(
        log_dir / "api.log",
        maxBytes=10 * 1024 * 1024,  # 10MB
        backupCount=5,
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(logging.Formatter(file_format))
    root_logger.addHandler(file_handler)

    # Ledger and payment failures end up here with their tracebacks
    error_handler = RotatingFileHandler(
        log_dir / "api_errors.log",
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(logging.Formatter(file_format))
    root_logger.addHandler(error_handler)
