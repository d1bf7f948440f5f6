import logging
import logging.handlers
import os
import sys
import typing

import structlog


def configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def _resolve_log_dir(log_dir: str) -> str:
    try:
        os.makedirs(log_dir, exist_ok=True)
        # Check if writable
        if not os.access(log_dir, os.W_OK):
            raise PermissionError(f"{log_dir} is not writable")
    except (PermissionError, OSError):
        log_dir = os.path.join(os.getcwd(), ".logs")
        os.makedirs(log_dir, exist_ok=True)
    return log_dir


def setup_logging(level: str = "INFO", log_dir: str = "/var/log/weather-monitor") -> None:
    """Configure structlog and the stdlib handlers for the service."""
    configure_structlog()

    # JSON Formatter for stdlib handlers
    pre_chain: list[typing.Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=pre_chain,
    )

    handlers: list[logging.Handler] = []

    # Stdout
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)

    # File
    log_file = os.path.join(_resolve_log_dir(log_dir), "weather-monitor.log")
    try:
        file_handler = logging.handlers.TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=30, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    except Exception as e:
        print(f"Failed to setup file logging: {e}")

    logging.basicConfig(level=level, handlers=handlers, force=True)

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
