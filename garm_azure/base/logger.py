"""
Structured logging for the Azure provider.

Provides a pre-configured logger that emits JSON-structured log records
with provisioning context (instance, step, operation).  Records go to
stderr because stdout carries the provider's JSON responses.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import uuid
from typing import Any

# Overrides the default INFO level, e.g. GARM_AZURE_LOG_LEVEL=debug
LOG_LEVEL_ENV = "GARM_AZURE_LOG_LEVEL"


class StructuredFormatter(logging.Formatter):
    """Emit log records as single-line JSON objects."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        # Attach any extras injected via ProviderLogger.log_operation
        for key in ("request_id", "instance", "step", "operation"):
            val = getattr(record, key, None)
            if val is not None:
                log_entry[key] = val
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = str(record.exc_info[1])
        return json.dumps(log_entry)


class ProviderLogger:
    """Convenience wrapper around :mod:`logging` for provider operations."""

    def __init__(self, name: str = "garm_azure") -> None:
        self.logger = logging.getLogger(name)
        if not self.logger.handlers:
            handler = logging.StreamHandler(sys.stderr)
            handler.setFormatter(StructuredFormatter())
            self.logger.addHandler(handler)
            self.logger.setLevel(os.environ.get(LOG_LEVEL_ENV, "INFO").upper())

    def log_operation(
        self,
        level: int,
        message: str,
        *,
        instance: str | None = None,
        step: str | None = None,
        operation: str | None = None,
        request_id: str | None = None,
        exc_info: bool = False,
    ) -> None:
        """Emit a structured log record with provisioning context.

        Args:
            level: Logging level (e.g. logging.INFO).
            message: Human-readable message.
            instance: Instance (and resource group) name.
            step: Provisioning step (e.g. 'network_interface').
            operation: Provider operation (e.g. 'CreateInstance').
            request_id: Correlation ID shared by the records of one
                operation; auto-generated if omitted.
            exc_info: Whether to include exception info.
        """
        extra = {
            "instance": instance,
            "step": step,
            "operation": operation,
            "request_id": request_id or uuid.uuid4().hex[:12],
        }
        self.logger.log(level, message, extra=extra, exc_info=exc_info)

    def info(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.ERROR, message, **kwargs)

    def debug(self, message: str, **kwargs: Any) -> None:
        self.log_operation(logging.DEBUG, message, **kwargs)


# Module-level singleton
provider_logger = ProviderLogger()
