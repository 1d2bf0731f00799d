"""
Structured Logging

Every record carries the run context (pipeline, run id, step) as JSON fields,
plus the OpenTelemetry trace ids when a span is active. `LOG_FORMAT=text`
switches to a single-line format for local runs of the CLI.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from opentelemetry import trace
from pythonjsonlogger.json import JsonFormatter

from nma_pipeline.app.config import settings

PACKAGE_PREFIX = "nma_pipeline."
MAX_ERROR_MESSAGE_LENGTH = 500

# Libraries that log per request or per page at INFO
QUIET_LOGGERS = ("google", "urllib3", "asyncio", "polars")


def _component(logger_name: str) -> str:
    """nma_pipeline.core.hierarchy.closure -> hierarchy.closure"""
    name = logger_name
    if name.startswith(PACKAGE_PREFIX):
        name = name[len(PACKAGE_PREFIX):]
    if name.startswith("core."):
        name = name[len("core."):]
    return name


class PipelineJsonFormatter(JsonFormatter):
    """JSON records with severity, component, service and trace fields."""

    def add_fields(
        self,
        log_record: Dict[str, Any],
        record: logging.LogRecord,
        message_dict: Dict[str, Any]
    ):
        super().add_fields(log_record, record, message_dict)

        log_record["timestamp"] = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        log_record["severity"] = record.levelname
        log_record["component"] = _component(record.name)
        log_record["service"] = settings.app_name
        log_record["version"] = settings.app_version
        log_record["environment"] = settings.environment

        span_context = trace.get_current_span().get_span_context()
        if span_context.is_valid:
            log_record["trace_id"] = f"{span_context.trace_id:032x}"
            log_record["span_id"] = f"{span_context.span_id:016x}"


class RunContextTextFormatter(logging.Formatter):
    """Plain text lines ending with the run context in brackets."""

    CONTEXT_FIELDS = ("pipeline_id", "step_id", "pipeline_logging_id")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = [
            f"{field}={getattr(record, field)}"
            for field in self.CONTEXT_FIELDS
            if getattr(record, field, None)
        ]
        return f"{line} [{' '.join(context)}]" if context else line


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None):
    """
    Configure root logging for a pipeline run.

    Args:
        log_level: Overrides settings.log_level
        log_format: "json" or "text"; overrides settings.log_format
    """
    level = log_level or settings.log_level
    fmt = log_format or settings.log_format

    handler = logging.StreamHandler(sys.stdout)
    if fmt == "text":
        handler.setFormatter(RunContextTextFormatter("%(asctime)s %(levelname)-7s %(name)s: %(message)s"))
    else:
        handler.setFormatter(PipelineJsonFormatter("%(severity)s %(name)s %(message)s", json_ensure_ascii=False))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()
    root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).debug("Logging configured", extra={"log_level": level, "log_format": fmt})


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def include_stacktraces() -> bool:
    """Tracebacks are logged everywhere except production."""
    return not settings.is_production


def _truncate(message: str) -> str:
    if len(message) <= MAX_ERROR_MESSAGE_LENGTH:
        return message
    return message[:MAX_ERROR_MESSAGE_LENGTH] + "... [TRUNCATED]"


class StructuredLogger:
    """
    Logger that stamps the pipeline run context on every record.

    Keyword arguments given to the log methods become JSON fields. `None`
    values are dropped so unbound context does not show up as nulls.
    """

    def __init__(self, logger: logging.Logger, **context):
        self.logger = logger
        self.context = {key: value for key, value in context.items() if value is not None}

    def bind(self, **context) -> "StructuredLogger":
        """Return a child logger carrying extra context."""
        return StructuredLogger(self.logger, **{**self.context, **context})

    def _log(self, level: int, msg: str, exc_info: bool = False, **fields):
        if not self.logger.isEnabledFor(level):
            return
        self.logger.log(level, msg, exc_info=exc_info, stacklevel=3, extra={**self.context, **fields})

    def debug(self, msg: str, **fields):
        self._log(logging.DEBUG, msg, **fields)

    def info(self, msg: str, **fields):
        self._log(logging.INFO, msg, **fields)

    def warning(self, msg: str, **fields):
        self._log(logging.WARNING, msg, **fields)

    def error(self, msg: str, **fields):
        self._log(logging.ERROR, msg, **fields)

    def safe_error(self, msg: str, error: Exception, **fields):
        """
        Log an unexpected error.

        Outside production the traceback is attached. In production only the
        error class and a truncated message are written.
        """
        fields["error_type"] = type(error).__name__
        error_code = getattr(error, "error_code", None)
        if error_code is not None:
            fields["error_code"] = getattr(error_code, "value", error_code)

        if include_stacktraces():
            self._log(logging.ERROR, msg, exc_info=True, **fields)
        else:
            self._log(logging.ERROR, f"{msg}: {_truncate(str(error))}", **fields)


def create_structured_logger(
    name: str,
    pipeline_id: Optional[str] = None,
    pipeline_logging_id: Optional[str] = None,
    step_id: Optional[str] = None
) -> StructuredLogger:
    """
    Create a structured logger bound to a pipeline run.

    Args:
        name: Logger name, usually the module's __name__
        pipeline_id: Pipeline identifier
        pipeline_logging_id: Unique id of this run
        step_id: Step identifier
    """
    return StructuredLogger(
        get_logger(name),
        pipeline_id=pipeline_id,
        pipeline_logging_id=pipeline_logging_id,
        step_id=step_id
    )
