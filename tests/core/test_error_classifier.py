"""
Error hierarchy and classification tests.
"""

import pytest
from google.api_core import exceptions as google_exceptions

from nma_pipeline.core.exceptions import (
    BigQueryUnavailableError,
    ErrorCategory,
    ErrorCode,
    NetworkError,
    PermanentError,
    StageFailedError,
    StorageUnavailableError,
    TableNotFoundError,
    ValidationError,
    classify_exception,
)
from nma_pipeline.core.utils.error_classifier import (
    ErrorType,
    classify_error,
    create_error_context,
    format_error_for_logging,
    is_retryable_exception,
)


class TestClassifyError:

    @pytest.mark.parametrize("exc, expected", [
        (StorageUnavailableError(), ErrorType.TRANSIENT),
        (TableNotFoundError("t"), ErrorType.PERMANENT),
        (StageFailedError("s", "boom"), ErrorType.PERMANENT),
        (ValidationError("bad"), ErrorType.VALIDATION_ERROR),
        (TimeoutError(), ErrorType.TIMEOUT),
        (ValueError("nope"), ErrorType.VALIDATION_ERROR),
        (RuntimeError("503 Service Unavailable"), ErrorType.TRANSIENT),
        (RuntimeError("table does not exist"), ErrorType.PERMANENT),
        (RuntimeError("something odd"), ErrorType.UNKNOWN),
    ])
    def test_classification(self, exc, expected):
        assert classify_error(exc) == expected

    def test_only_transient_and_timeouts_are_retried(self):
        assert is_retryable_exception(StorageUnavailableError())
        assert is_retryable_exception(TimeoutError())
        assert not is_retryable_exception(StageFailedError("s", "boom"))
        assert not is_retryable_exception(RuntimeError("something odd"))
        assert not is_retryable_exception(KeyboardInterrupt())


class TestClassifyException:

    def test_google_service_errors_are_transient(self):
        wrapped = classify_exception(google_exceptions.ServiceUnavailable("down"))

        assert isinstance(wrapped, BigQueryUnavailableError)
        assert wrapped.is_retryable()

    def test_google_not_found_is_permanent(self):
        wrapped = classify_exception(google_exceptions.NotFound("gone"))

        assert isinstance(wrapped, PermanentError)
        assert wrapped.error_code == ErrorCode.TABLE_NOT_FOUND

    def test_os_errors(self):
        assert isinstance(classify_exception(ConnectionError("reset")), NetworkError)
        assert isinstance(classify_exception(PermissionError("flap")), StorageUnavailableError)
        assert classify_exception(FileNotFoundError("x")).category == ErrorCategory.PERMANENT

    def test_structured_exceptions_pass_through(self):
        original = StageFailedError("s", "boom")

        assert classify_exception(original) is original


def test_error_context_and_formatting():
    try:
        raise StorageUnavailableError(context={"table": "nma_changes"})
    except StorageUnavailableError as e:
        context = create_error_context(e, step_name="consolidate", retry_count=2)

    assert context["error_type"] == ErrorType.TRANSIENT.value
    assert context["error_code"] == ErrorCode.STORAGE_UNAVAILABLE.value
    assert context["is_retryable"] is True
    assert context["failed_step"] == "consolidate"

    line = format_error_for_logging(context)
    assert line.startswith("Failed Step: consolidate")
    assert "Retry Count: 2" in line


def test_exception_to_dict():
    error = StageFailedError("build_hierarchy", "boom", original_error=RuntimeError("inner"))

    payload = error.to_dict()

    assert payload["error"] == ErrorCode.STAGE_FAILED.value
    assert payload["category"] == ErrorCategory.PERMANENT.value
    assert payload["context"]["step_id"] == "build_hierarchy"
    assert payload["original_error"] == "inner"
