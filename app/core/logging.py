"""Structured logging configuration."""

import logging
import sys
from typing import Any

from app.core.config import settings


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured log output."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record with structured data."""
        # Base format
        log_data = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        # Pipeline correlation fields
        if hasattr(record, "tracking_id"):
            log_data["tracking_id"] = record.tracking_id
        if hasattr(record, "application_id"):
            log_data["application_id"] = record.application_id
        if hasattr(record, "action"):
            log_data["action"] = record.action

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Simple key=value format for readability
        parts = [f"{k}={v}" for k, v in log_data.items()]
        return " ".join(parts)


def setup_logging() -> None:
    """Configure application logging."""
    log_level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Remove existing handlers
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if settings.is_dev:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )
    else:
        formatter = StructuredFormatter()

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)


class PipelineLogger:
    """Logger for intake pipeline events.

    Emits one line per event, tagged with the submission tracking id so a
    single webhook delivery can be followed across ingestion and scoring.
    """

    def __init__(self) -> None:
        self.logger = get_logger("pipeline")

    def log(
        self,
        action: str,
        tracking_id: str | None = None,
        application_id: str | None = None,
        level: int = logging.INFO,
        **details: Any,
    ) -> None:
        """Log a pipeline event."""
        self.logger.log(
            level,
            f"PIPELINE: action={action} tracking_id={tracking_id} "
            f"application={application_id} details={details}",
            extra={
                "action": action,
                "tracking_id": tracking_id,
                "application_id": application_id,
            },
        )


pipeline_logger = PipelineLogger()
