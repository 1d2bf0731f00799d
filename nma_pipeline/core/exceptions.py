"""
Structured Error Handling
Error hierarchy with categorization, error codes, and structured context.
"""

from typing import Dict, Any, Optional
from enum import Enum


class ErrorCategory(str, Enum):
    """Error categories for classification and handling."""
    TRANSIENT = "TRANSIENT"  # Temporary errors that should be retried
    PERMANENT = "PERMANENT"  # Errors that won't succeed on retry
    VALIDATION = "VALIDATION"  # Input or configuration validation errors
    DATA_QUALITY = "DATA_QUALITY"  # Output failed quality checks


class ErrorCode(str, Enum):
    """Standardized error codes for monitoring and debugging."""
    # Transient
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    BIGQUERY_UNAVAILABLE = "BQ_UNAVAILABLE"
    NETWORK_ERROR = "NETWORK_ERROR"

    # Permanent
    TABLE_NOT_FOUND = "TABLE_NOT_FOUND"
    INVALID_SCHEMA = "INVALID_SCHEMA"
    PROCESSOR_NOT_FOUND = "PROCESSOR_NOT_FOUND"
    STAGE_FAILED = "STAGE_FAILED"

    # Validation
    INVALID_CONFIG = "INVALID_CONFIG"
    INVALID_PARAMETER = "INVALID_PARAMETER"

    # Data quality
    DATA_QUALITY_FAILED = "DATA_QUALITY_FAILED"


class NmaPipelineException(Exception):
    """
    Base exception for all NMA pipeline errors.

    Provides structured error information for logging, retry decisions and
    run summaries.
    """

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        error_code: ErrorCode,
        context: Optional[Dict[str, Any]] = None,
        retry_after: Optional[int] = None,
        original_error: Optional[Exception] = None
    ):
        """
        Initialize structured exception.

        Args:
            message: Human-readable error message
            category: Error category for classification
            error_code: Standardized error code
            context: Additional context (table, step_id, etc.)
            retry_after: Seconds to wait before retry (transient errors)
            original_error: Original exception if wrapped
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.error_code = error_code
        self.context = context or {}
        self.retry_after = retry_after
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logs and run summaries."""
        result = {
            "error": self.error_code.value,
            "message": self.message,
            "category": self.category.value,
        }

        if self.context:
            result["context"] = self.context

        if self.retry_after:
            result["retry_after"] = self.retry_after

        if self.original_error:
            result["original_error"] = str(self.original_error)

        return result

    def is_retryable(self) -> bool:
        """Check if this error should be retried."""
        return self.category == ErrorCategory.TRANSIENT


# ============================================
# Transient Errors (Should be retried)
# ============================================

class TransientError(NmaPipelineException):
    """
    Temporary error that should be retried.
    Examples: storage unavailable, network issues, timeouts.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STORAGE_UNAVAILABLE,
        context: Optional[Dict[str, Any]] = None,
        retry_after: int = 5,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.TRANSIENT,
            error_code=error_code,
            context=context,
            retry_after=retry_after,
            original_error=original_error
        )


class StorageUnavailableError(TransientError):
    """Table storage temporarily unavailable (read or write failed)."""

    def __init__(
        self,
        message: str = "Table storage temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.STORAGE_UNAVAILABLE,
            context=context,
            retry_after=5,
            original_error=original_error
        )


class BigQueryUnavailableError(TransientError):
    """BigQuery service temporarily unavailable."""

    def __init__(
        self,
        message: str = "BigQuery service temporarily unavailable",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.BIGQUERY_UNAVAILABLE,
            context=context,
            retry_after=60,
            original_error=original_error
        )


class NetworkError(TransientError):
    """Network connectivity error."""

    def __init__(
        self,
        message: str = "Network connectivity error",
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.NETWORK_ERROR,
            context=context,
            retry_after=30,
            original_error=original_error
        )


# ============================================
# Permanent Errors (Should NOT be retried)
# ============================================

class PermanentError(NmaPipelineException):
    """
    Error that will not succeed on retry.
    Examples: missing input table, schema mismatch, unknown processor.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.STAGE_FAILED,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.PERMANENT,
            error_code=error_code,
            context=context,
            original_error=original_error
        )


class TableNotFoundError(PermanentError):
    """Requested table does not exist in the store."""

    def __init__(
        self,
        table: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=f"Table not found: {table}",
            error_code=ErrorCode.TABLE_NOT_FOUND,
            context={"table": table, **(context or {})},
            original_error=original_error
        )


class InvalidSchemaError(PermanentError):
    """Table is missing required columns."""

    def __init__(
        self,
        table: str,
        missing_columns: list,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=f"Table '{table}' is missing required columns: {', '.join(missing_columns)}",
            error_code=ErrorCode.INVALID_SCHEMA,
            context={"table": table, "missing_columns": missing_columns, **(context or {})}
        )


class StageFailedError(PermanentError):
    """A pipeline stage reported failure."""

    def __init__(
        self,
        step_id: str,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=f"Stage '{step_id}' failed: {message}",
            error_code=ErrorCode.STAGE_FAILED,
            context={"step_id": step_id, **(context or {})},
            original_error=original_error
        )


# ============================================
# Validation Errors
# ============================================

class ValidationError(NmaPipelineException):
    """Invalid configuration or parameter."""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INVALID_CONFIG,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.VALIDATION,
            error_code=error_code,
            context=context,
            original_error=original_error
        )


class PipelineConfigError(ValidationError):
    """Pipeline YAML missing or invalid."""

    def __init__(
        self,
        pipeline_id: str,
        message: str,
        original_error: Optional[Exception] = None
    ):
        super().__init__(
            message=f"Invalid pipeline config '{pipeline_id}': {message}",
            error_code=ErrorCode.INVALID_CONFIG,
            context={"pipeline_id": pipeline_id},
            original_error=original_error
        )


# ============================================
# Data Quality
# ============================================

class DataQualityError(NmaPipelineException):
    """Pipeline output failed one or more data-quality checks."""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(
            message=message,
            category=ErrorCategory.DATA_QUALITY,
            error_code=ErrorCode.DATA_QUALITY_FAILED,
            context=context
        )


# ============================================
# Error Classification Helper
# ============================================

def classify_exception(exc: Exception) -> NmaPipelineException:
    """
    Classify a generic exception into a structured NmaPipelineException.

    Used for wrapping storage-library exceptions (BigQuery, filesystem)
    into the structured error hierarchy.

    Args:
        exc: Original exception

    Returns:
        Appropriate NmaPipelineException subclass
    """
    from google.api_core import exceptions as google_exceptions

    if isinstance(exc, NmaPipelineException):
        return exc

    if isinstance(exc, (
        google_exceptions.ServiceUnavailable,
        google_exceptions.InternalServerError,
        google_exceptions.TooManyRequests,
        google_exceptions.DeadlineExceeded,
    )):
        return BigQueryUnavailableError(message=str(exc), original_error=exc)

    if isinstance(exc, google_exceptions.NotFound):
        return PermanentError(
            message=str(exc),
            error_code=ErrorCode.TABLE_NOT_FOUND,
            original_error=exc
        )

    if isinstance(exc, google_exceptions.BadRequest):
        return PermanentError(
            message=str(exc),
            error_code=ErrorCode.INVALID_SCHEMA,
            original_error=exc
        )

    if isinstance(exc, (TimeoutError, ConnectionError)):
        return NetworkError(message=str(exc), original_error=exc)

    if isinstance(exc, FileNotFoundError):
        return PermanentError(
            message=str(exc),
            error_code=ErrorCode.TABLE_NOT_FOUND,
            original_error=exc
        )

    # Other OS-level I/O failures (disk full, permission flaps) are retried
    if isinstance(exc, OSError):
        return StorageUnavailableError(message=str(exc), original_error=exc)

    if isinstance(exc, (ValueError, TypeError)):
        return ValidationError(
            message=str(exc),
            error_code=ErrorCode.INVALID_PARAMETER,
            original_error=exc
        )

    return PermanentError(
        message=f"Unexpected error: {type(exc).__name__}: {exc}",
        error_code=ErrorCode.STAGE_FAILED,
        original_error=exc
    )
