"""
Structured Logging Configuration

One JSON object per line for both pipeline services (or plain text for local
development), with correlation ids that tie every log line to the message or
chunk it is about.

CORRELATION IDS:
- Consumer: "<partition>:<offset>" of the message being processed
- Producer: "<source>#<position>" of the chunk being published

EXAMPLE OUTPUT:
{
  "timestamp": "2025-01-10T14:30:00.123Z",
  "level": "INFO",
  "service": "file-consumer",
  "logger": "file_pipeline.consumer.consumer",
  "message": "Message applied",
  "correlation_id": "2:1057",
  "extra": {"partition": 2, "offset": 1057, "source": "data/input.txt", "line": 12}
}
"""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Tuple

# Root of the package logger hierarchy; module loggers propagate here
PACKAGE_LOGGER = "file_pipeline"

# Attributes every LogRecord carries; anything else came in through extra=
_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "created", "filename", "funcName",
        "levelname", "levelno", "lineno", "module", "msecs",
        "message", "pathname", "process", "processName", "relativeCreated",
        "thread", "threadName", "taskName", "exc_info", "exc_text", "stack_info",
        "correlation_id",
    }
)

# ==============================================================================
# JSON FORMATTER
# ==============================================================================


class JSONFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON.

    Fields: timestamp (ISO 8601, UTC), level, service, logger, message,
    correlation_id (if bound), exception (if any), extra (everything passed
    through extra=).
    """

    def __init__(self, service_name: str = "file-pipeline", include_extra: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self._format_timestamp(record.created),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "correlation_id"):
            log_data["correlation_id"] = record.correlation_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        if self.include_extra:
            extra_fields = {
                k: v
                for k, v in record.__dict__.items()
                if k not in _STANDARD_ATTRS and not k.startswith("_")
            }
            if extra_fields:
                log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str)

    @staticmethod
    def _format_timestamp(created: float) -> str:
        """Unix timestamp -> "2025-01-10T14:30:00.123Z"."""
        dt = datetime.fromtimestamp(created, tz=timezone.utc)
        return dt.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


# ==============================================================================
# PLAIN TEXT FORMATTER (for development)
# ==============================================================================


class PlainTextFormatter(logging.Formatter):
    """
    Human-readable formatter.

    Format: [2025-01-10 14:30:00] INFO [file-consumer] Message applied
    """

    def __init__(self, service_name: str = "file-pipeline"):
        super().__init__(
            fmt=f"[%(asctime)s] %(levelname)s [{service_name}] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


# ==============================================================================
# LOGGER SETUP
# ==============================================================================


def setup_logger(
    name: str,
    service_name: str,
    log_level: str = "INFO",
    log_format: str = "json",
) -> logging.Logger:
    """
    Configure a logger with a single stdout handler.

    Configure PACKAGE_LOGGER to capture every module of the pipeline.
    Calling again for the same name replaces the handler rather than adding a
    second one.

    Args:
        name: Logger name
        service_name: Service identifier ("file-producer", "file-consumer")
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_format: "json" or "text"

    Returns:
        Configured logging.Logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in list(logger.handlers):
        if getattr(handler, "_file_pipeline_handler", False):
            logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logger.level)
    console_handler._file_pipeline_handler = True

    if log_format.lower() == "json":
        formatter: logging.Formatter = JSONFormatter(service_name=service_name)
    else:
        formatter = PlainTextFormatter(service_name=service_name)

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    return logger


# ==============================================================================
# CORRELATION ADAPTER
# ==============================================================================


class CorrelationAdapter(logging.LoggerAdapter):
    """
    Stamps bound context on every record it logs.

    The adapter's extra dict (correlation_id, partition, offset, ...) is merged
    under the call's own extra=, so per-call fields win.

    Example:
        >>> log = CorrelationAdapter(logger, {"correlation_id": "2:1057", "partition": 2})
        >>> log.info("Message applied", extra={"line": 12})
    """

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs

    def bind(self, **context: Any) -> "CorrelationAdapter":
        """Return a new adapter with additional bound context."""
        merged = dict(self.extra or {})
        merged.update(context)
        return CorrelationAdapter(self.logger, merged)
