"""Logging configuration for the hub.

Supports two formats:
- text: Human-readable for local development
- json: Structured logging for production (log aggregation)

Every record passed with ``extra={"event": LogEvent..., "instance_id": ...}``
keeps those keys as top-level JSON fields.
"""

import logging
import sys
import time
from datetime import datetime, timezone
from typing import Any

from pythonjsonlogger import json as jsonlogger

from instancehub.config import LoggingConfig

# Loggers that are chatty at INFO during provisioning and polling
_NOISY_LOGGERS = (
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "aiosqlite",
    "asyncpg",
    "httpx",
    "httpcore",
)


class RateLimitFilter(logging.Filter):
    """Drop repeats of the same message emitted within a time window.

    The reconcile loop logs per instance on every cycle when a process keeps
    failing; this keeps that from flooding the output. ERROR and above are
    never dropped.
    """

    def __init__(self, window_seconds: float = 5.0, max_keys: int = 1000) -> None:
        super().__init__()
        self._window = window_seconds
        self._max_keys = max_keys
        self._seen: dict[tuple[str, int, str, str | None], float] = {}

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= logging.ERROR:
            return True

        key = (record.name, record.lineno, record.getMessage(), getattr(record, "instance_id", None))
        now = time.monotonic()
        if now - self._seen.get(key, float("-inf")) < self._window:
            return False
        self._seen[key] = now

        if len(self._seen) > self._max_keys:
            cutoff = now - self._window
            self._seen = {k: t for k, t in self._seen.items() if t >= cutoff}
        return True


class HubJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with standard fields for log aggregation.

    Adds:
    - timestamp: ISO 8601 format with timezone
    - level: Log level name
    - logger: Logger name
    - service: Service identifier
    - pid: Process ID
    """

    def __init__(self, config: LoggingConfig, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._service = config.service_name

    def add_fields(
        self,
        log_record: dict[str, Any],
        record: logging.LogRecord,
        message_dict: dict[str, Any],
    ) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(
            record.created, tz=timezone.utc
        ).isoformat()
        log_record["level"] = record.levelname
        log_record["logger"] = record.name
        log_record["service"] = self._service
        log_record["pid"] = record.process
        log_record["lineno"] = record.lineno

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        log_record.pop("color_message", None)


def setup_logging(config: LoggingConfig) -> None:
    """Configure root and uvicorn loggers.

    Args:
        config: Logging configuration settings.
    """
    level = getattr(logging, config.level.upper(), logging.INFO)

    if config.format == "json":
        formatter: logging.Formatter = HubJsonFormatter(config)
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(RateLimitFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in ("uvicorn", "uvicorn.error"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = False
        uv_logger.addHandler(handler)
    logging.getLogger("uvicorn.access").disabled = True

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
