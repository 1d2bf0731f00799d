"""
Observability Module - Metrics
"""

from nma_pipeline.core.observability.metrics import (
    metrics_registry,
    pipeline_executions_total,
    pipeline_duration_seconds,
    step_executions_total,
    step_duration_seconds,
    step_retries_total,
    table_rows,
    data_quality_score,
    increment_pipeline_execution,
    observe_pipeline_duration,
    record_step_execution,
    increment_step_retry,
    set_table_rows,
    set_data_quality_score,
    write_metrics
)

__all__ = [
    'metrics_registry',
    'pipeline_executions_total',
    'pipeline_duration_seconds',
    'step_executions_total',
    'step_duration_seconds',
    'step_retries_total',
    'table_rows',
    'data_quality_score',
    'increment_pipeline_execution',
    'observe_pipeline_duration',
    'record_step_execution',
    'increment_step_retry',
    'set_table_rows',
    'set_data_quality_score',
    'write_metrics'
]
