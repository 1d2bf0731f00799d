"""
Pipeline Module
YAML pipeline configs, the async DAG executor, data quality and run reports.
"""

from nma_pipeline.core.pipeline.models import (
    OnFailure,
    PipelineStepConfig,
    PipelineConfig,
    NmaRunMetrics,
)
from nma_pipeline.core.pipeline.config_loader import ConfigLoader, get_config_loader
from nma_pipeline.core.pipeline.data_quality import DataQualityValidator
from nma_pipeline.core.pipeline.executor import AsyncPipelineExecutor
from nma_pipeline.core.pipeline.report import generate_execution_report

__all__ = [
    "OnFailure",
    "PipelineStepConfig",
    "PipelineConfig",
    "NmaRunMetrics",
    "ConfigLoader",
    "get_config_loader",
    "DataQualityValidator",
    "AsyncPipelineExecutor",
    "generate_execution_report",
]
