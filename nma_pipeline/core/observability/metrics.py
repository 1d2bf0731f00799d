"""
Prometheus Metrics - Pipeline Observability
Tracks pipeline runs, step runs, retries and output sizes.
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry, write_to_textfile

# Create a custom registry for application metrics
metrics_registry = CollectorRegistry()

# ====================
# Metrics Definitions
# ====================

# Counter: Total pipeline executions by pipeline and status
pipeline_executions_total = Counter(
    'nma_pipeline_executions_total',
    'Total number of pipeline executions',
    ['pipeline_id', 'status'],
    registry=metrics_registry
)

# Histogram: Pipeline execution duration in seconds
pipeline_duration_seconds = Histogram(
    'nma_pipeline_duration_seconds',
    'Pipeline execution duration in seconds',
    ['pipeline_id', 'status'],
    buckets=(1, 5, 10, 30, 60, 120, 300, 600, 1800, 3600),  # 1s to 1h
    registry=metrics_registry
)

# Counter: Step executions by step and status
step_executions_total = Counter(
    'nma_step_executions_total',
    'Total number of pipeline step executions',
    ['pipeline_id', 'step_id', 'status'],
    registry=metrics_registry
)

# Histogram: Step execution duration in seconds
step_duration_seconds = Histogram(
    'nma_step_duration_seconds',
    'Pipeline step duration in seconds',
    ['pipeline_id', 'step_id'],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 300, 600),
    registry=metrics_registry
)

# Counter: Retry attempts after a transient failure
step_retries_total = Counter(
    'nma_step_retries_total',
    'Number of step retries after transient failures',
    ['pipeline_id', 'step_id'],
    registry=metrics_registry
)

# Gauge: Rows in each table written by the last run
table_rows = Gauge(
    'nma_table_rows',
    'Rows written to a table by the last run',
    ['table'],
    registry=metrics_registry
)

# Gauge: Data quality score of the last run (0-100)
data_quality_score = Gauge(
    'nma_data_quality_score',
    'Data quality score of the last run',
    ['pipeline_id'],
    registry=metrics_registry
)

# ====================
# Helper Functions
# ====================

def increment_pipeline_execution(pipeline_id: str, status: str) -> None:
    """
    Increment pipeline execution counter.

    Args:
        pipeline_id: Pipeline identifier
        status: Execution status (COMPLETED, FAILED, TIMEOUT)
    """
    pipeline_executions_total.labels(pipeline_id=pipeline_id, status=status).inc()


def observe_pipeline_duration(pipeline_id: str, status: str, duration_seconds: float) -> None:
    """
    Record pipeline execution duration.

    Args:
        pipeline_id: Pipeline identifier
        status: Execution status (COMPLETED, FAILED, TIMEOUT)
        duration_seconds: Duration in seconds
    """
    pipeline_duration_seconds.labels(pipeline_id=pipeline_id, status=status).observe(duration_seconds)


def record_step_execution(
    pipeline_id: str,
    step_id: str,
    status: str,
    duration_seconds: float
) -> None:
    """Count a finished step and record its duration."""
    step_executions_total.labels(pipeline_id=pipeline_id, step_id=step_id, status=status).inc()
    step_duration_seconds.labels(pipeline_id=pipeline_id, step_id=step_id).observe(duration_seconds)


def increment_step_retry(pipeline_id: str, step_id: str) -> None:
    step_retries_total.labels(pipeline_id=pipeline_id, step_id=step_id).inc()


def set_table_rows(table: str, rows: int) -> None:
    table_rows.labels(table=table).set(rows)


def set_data_quality_score(pipeline_id: str, score: float) -> None:
    data_quality_score.labels(pipeline_id=pipeline_id).set(score)


def write_metrics(path: str) -> None:
    """
    Write the registry in Prometheus text format for a textfile collector.

    The file is written to a temp name and renamed, so a scraper never sees
    a partial file.
    """
    write_to_textfile(path, metrics_registry)
