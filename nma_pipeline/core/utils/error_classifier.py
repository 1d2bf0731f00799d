"""
Error Classification

Decides whether a failed stage attempt is worth retrying. Pipeline exceptions
carry their own category; foreign exceptions (polars, google-cloud, OS) are
classified by type and then by message.

Usage:
    from nma_pipeline.core.utils.error_classifier import is_retryable_exception

    AsyncRetrying(retry=retry_if_exception(is_retryable_exception), ...)
"""

import asyncio
import re
import traceback
from enum import Enum
from typing import Any, Dict, Optional

from nma_pipeline.core.exceptions import ErrorCategory, NmaPipelineException


class ErrorType(str, Enum):
    TRANSIENT = "TRANSIENT"
    PERMANENT = "PERMANENT"
    TIMEOUT = "TIMEOUT"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNKNOWN = "UNKNOWN"


def _any_of(*patterns: str) -> "re.Pattern[str]":
    return re.compile("|".join(f"(?:{p})" for p in patterns), re.IGNORECASE)


# Checked in order; the first match wins.
MESSAGE_RULES = [
    (ErrorType.TIMEOUT, _any_of(r"timeout", r"timed out", r"deadline exceeded")),
    (ErrorType.VALIDATION_ERROR, _any_of(
        r"validation.*error",
        r"missing required columns",
        r"schema.*mismatch",
        r"invalid.*(input|parameter)",
        r"column.*not found",
    )),
    (ErrorType.TRANSIENT, _any_of(
        r"connection.*(reset|refused|aborted)",
        r"temporarily unavailable",
        r"service.*unavailable",
        r"\b50[234]\b",
        r"\b429\b",
        r"rate.*limit",
        r"backend.*error",
        r"internalError",
        r"resource.*busy",
        r"try again",
    )),
    (ErrorType.PERMANENT, _any_of(
        r"not.*found",
        r"does not exist",
        r"\b40[34]\b",
        r"permission.*denied",
        r"access denied",
        r"invalid.*config",
        r"invalidQuery",
    )),
]

_CATEGORY_TO_TYPE = {
    ErrorCategory.TRANSIENT: ErrorType.TRANSIENT,
    ErrorCategory.PERMANENT: ErrorType.PERMANENT,
    ErrorCategory.VALIDATION: ErrorType.VALIDATION_ERROR,
    ErrorCategory.DATA_QUALITY: ErrorType.PERMANENT,
}

RETRYABLE_TYPES = frozenset({ErrorType.TRANSIENT, ErrorType.TIMEOUT})


def classify_error(exception: Exception, error_message: Optional[str] = None) -> ErrorType:
    """
    Classify an error by category, then exception type, then message.

    Args:
        exception: The exception that occurred
        error_message: Message to match instead of str(exception)

    Returns:
        ErrorType; UNKNOWN when nothing matches (never retried)
    """
    if isinstance(exception, NmaPipelineException):
        return _CATEGORY_TO_TYPE[exception.category]

    if isinstance(exception, (TimeoutError, asyncio.TimeoutError)):
        return ErrorType.TIMEOUT
    if isinstance(exception, (ValueError, TypeError, KeyError)):
        return ErrorType.VALIDATION_ERROR

    message = error_message or str(exception)
    for error_type, pattern in MESSAGE_RULES:
        if pattern.search(message):
            return error_type
    return ErrorType.UNKNOWN


def is_retryable(error_type: ErrorType) -> bool:
    return error_type in RETRYABLE_TYPES


def is_retryable_exception(exception: BaseException) -> bool:
    """Retry predicate for tenacity. KeyboardInterrupt and friends are never retried."""
    if not isinstance(exception, Exception):
        return False
    return is_retryable(classify_error(exception))


def create_error_context(
    exception: Exception,
    step_name: Optional[str] = None,
    retry_count: int = 0,
    additional_context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Structured description of a failure for the run summary.

    Must be called from inside the `except` block so the traceback is
    available.
    """
    error_type = classify_error(exception)
    context: Dict[str, Any] = {
        "error_type": error_type.value,
        "error_class": type(exception).__name__,
        "error_message": str(exception),
        "is_retryable": is_retryable(error_type),
        "retry_count": retry_count,
        "stack_trace_truncated": traceback.format_exc()[:2000],
    }

    if isinstance(exception, NmaPipelineException):
        context["error_code"] = exception.error_code.value
    if step_name:
        context["failed_step"] = step_name
    if additional_context:
        context.update(additional_context)

    return context


def format_error_for_logging(error_context: Dict[str, Any]) -> str:
    """One-line rendering of create_error_context() output."""
    labels = [
        ("failed_step", "Failed Step"),
        ("error_type", "Error Type"),
        ("error_class", "Error Class"),
        ("error_code", "Error Code"),
        ("error_message", "Message"),
        ("is_retryable", "Retryable"),
        ("retry_count", "Retry Count"),
    ]
    return " | ".join(
        f"{label}: {error_context[key]}"
        for key, label in labels
        if error_context.get(key) is not None
    )
