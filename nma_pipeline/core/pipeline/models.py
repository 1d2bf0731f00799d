"""
Pipeline Configuration Models
Type-safe configuration for NMA pipeline definitions and run results.
"""

import re
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ============================================
# Enums
# ============================================

class OnFailure(str, Enum):
    """Failure handling strategies."""
    STOP = "stop"
    CONTINUE = "continue"


# ============================================
# Pipeline Configuration Models
# ============================================

class PipelineStepConfig(BaseModel):
    """Single pipeline step configuration."""

    step_id: str = Field(..., description="Unique step identifier")
    name: Optional[str] = Field(None, description="Human-readable step name")
    description: Optional[str] = Field(None, description="Step description")
    ps_type: str = Field(..., description="Pipeline step type with provider prefix (e.g., 'nma.build_hierarchy')")

    # Logical table name -> physical table name overrides
    inputs: Dict[str, str] = Field(default_factory=dict, description="Input table overrides")
    outputs: Dict[str, str] = Field(default_factory=dict, description="Output table overrides")
    config: Dict[str, Any] = Field(default_factory=dict, description="Processor-specific settings")

    # Step configuration
    timeout_minutes: int = Field(default=10, ge=1, le=120, description="Step timeout in minutes")
    on_failure: OnFailure = Field(default=OnFailure.STOP, description="Failure handling strategy")
    depends_on: List[str] = Field(default_factory=list, description="List of step IDs this step depends on")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Additional metadata")

    @field_validator("ps_type")
    @classmethod
    def validate_ps_type(cls, v):
        """Validate ps_type follows provider.template_name format."""
        if "." not in v:
            raise ValueError(f"ps_type must follow 'provider.template_name' format (e.g., 'nma.consolidate'). Got: {v}")
        return v

    @field_validator("depends_on")
    @classmethod
    def validate_depends_on(cls, v):
        """Validate depends_on contains unique step IDs."""
        if len(v) != len(set(v)):
            raise ValueError("depends_on must contain unique step IDs (no duplicates)")
        return v

    model_config = ConfigDict(use_enum_values=True, extra="allow")


class PipelineConfig(BaseModel):
    """Complete pipeline configuration."""

    pipeline_id: str = Field(..., description="Unique pipeline identifier", min_length=1)
    description: Optional[str] = Field(None, description="Pipeline description")
    version: Optional[str] = Field(None, description="Pipeline version")
    steps: List[PipelineStepConfig] = Field(..., min_length=1, description="Pipeline steps (at least 1 required)")
    timeout_minutes: int = Field(default=60, ge=1, le=1440, description="Pipeline timeout in minutes")
    retry_attempts: Optional[int] = Field(
        default=None, ge=1, le=10,
        description="Attempts per step on transient failure (defaults to settings.max_retries)"
    )
    parameters: Dict[str, Any] = Field(default_factory=dict, description="Runtime parameters")

    @field_validator("pipeline_id")
    @classmethod
    def validate_pipeline_id(cls, v):
        """Validate pipeline_id format."""
        if not v or not v.strip():
            raise ValueError("pipeline_id cannot be empty or whitespace")

        if not re.match(r'^[a-zA-Z0-9_-]+$', v):
            raise ValueError(
                f"pipeline_id must contain only alphanumeric characters, underscores, and hyphens. Got: {v}"
            )
        return v

    @field_validator("steps")
    @classmethod
    def validate_steps(cls, v):
        """Validate steps configuration."""
        step_ids = [step.step_id for step in v]
        if len(step_ids) != len(set(step_ids)):
            duplicates = [sid for sid in step_ids if step_ids.count(sid) > 1]
            raise ValueError(f"Duplicate step_id found: {set(duplicates)}")

        for step in v:
            for dep_id in step.depends_on:
                if dep_id not in step_ids:
                    raise ValueError(
                        f"Step '{step.step_id}' depends on unknown step '{dep_id}'. "
                        f"Available steps: {step_ids}"
                    )

        cls._detect_circular_dependencies(v)
        return v

    @staticmethod
    def _detect_circular_dependencies(steps: List[PipelineStepConfig]) -> None:
        """Peel off steps whose dependencies are all resolved; anything left is on a cycle."""
        pending = {step.step_id: set(step.depends_on) for step in steps}
        resolved: set = set()

        while pending:
            ready = [step_id for step_id, deps in pending.items() if deps <= resolved]
            if not ready:
                raise ValueError(
                    f"Circular dependency detected in pipeline steps: {sorted(pending)}"
                )
            for step_id in ready:
                resolved.add(step_id)
                del pending[step_id]

    model_config = ConfigDict(use_enum_values=True, extra="allow")


# ============================================
# Runtime Models
# ============================================

class NmaRunMetrics(BaseModel):
    """Summary figures of one pipeline run."""

    total_records: int = 0
    unique_manager_accounts: int = 0
    root_pn_managers: int = 0
    max_hierarchy_depth: int = 0
    hierarchy_rows: int = 0
    isolated_group_accounts: int = 0
    data_quality_score: float = 0.0
    processing_time_seconds: float = 0.0

    def status_label(self, min_score: float) -> str:
        """SUCCESS, or a low data quality warning below min_score."""
        if self.data_quality_score >= min_score:
            return "SUCCESS"
        return "WARNING - Low Data Quality"
