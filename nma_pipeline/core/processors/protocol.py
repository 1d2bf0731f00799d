"""
Processor Protocol

This defines the expected interface for stage processors using Python's
Protocol. Processors do not need to inherit from anything; they only need an
async execute() method with the signature below and a module-level
get_engine() factory.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, runtime_checkable

from nma_pipeline.core.constants import ProcessorStatus


@runtime_checkable
class ProcessorProtocol(Protocol):
    """
    Protocol that all stage processors implicitly implement.
    """

    async def execute(
        self,
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Execute the processor step.

        Args:
            step_config: Configuration for this step from pipeline YAML
                - inputs: Logical -> physical input table overrides
                - outputs: Logical -> physical output table overrides
                - config: Processor-specific settings

            context: Execution context
                - table_store: TableStore shared by all steps of the run
                - pipeline_id / pipeline_logging_id / step_id
                - window_start / window_end: Processing window
                - executor: Thread pool for blocking work
                - abandoned: threading.Event set when the executor gave up on this attempt

        Returns:
            Dict containing:
                - status: "SUCCESS" or "FAILED"
                - rows_processed: Number of rows written
                - error: Error message if failed
        """
        ...


def get_engine() -> ProcessorProtocol:
    """
    Factory function that every processor module implements.

    Called by AsyncPipelineExecutor to get an instance of the processor.
    """
    ...


def is_valid_processor(obj: Any) -> bool:
    """Check if an object implements the ProcessorProtocol."""
    return isinstance(obj, ProcessorProtocol)


def validate_processor_result(result: Dict[str, Any]) -> bool:
    """
    Validate that a processor result has required fields.

    Returns True if result has valid structure.
    """
    if not isinstance(result, dict):
        return False

    return result.get("status", "") in (ProcessorStatus.SUCCESS.value, ProcessorStatus.FAILED.value)


@dataclass
class ProcessorResult:
    """
    Typed processor result, converted to a plain dict for the executor.
    """
    status: str
    rows_processed: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for the executor."""
        result = {
            "status": self.status,
            "rows_processed": self.rows_processed,
        }
        if self.error:
            result["error"] = self.error
        if self.error_code:
            result["error_code"] = self.error_code
        if self.metadata:
            result.update(self.metadata)
        return result

    @classmethod
    def success(cls, rows_processed: int = 0, **metadata) -> "ProcessorResult":
        """Create a success result."""
        return cls(
            status=ProcessorStatus.SUCCESS.value,
            rows_processed=rows_processed,
            metadata=metadata
        )

    @classmethod
    def failed(cls, error: str, error_code: Optional[str] = None, **metadata) -> "ProcessorResult":
        """Create a failed result."""
        return cls(
            status=ProcessorStatus.FAILED.value,
            error=error,
            error_code=error_code,
            metadata=metadata
        )
