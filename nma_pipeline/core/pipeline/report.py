"""
Execution Report
Printable summary of one NMA pipeline run.
"""

from typing import Any, Dict, Optional

from nma_pipeline.app.config import settings
from nma_pipeline.core.pipeline.data_quality import summarize
from nma_pipeline.core.pipeline.models import NmaRunMetrics


def generate_execution_report(
    metrics: NmaRunMetrics,
    min_score: Optional[float] = None,
    summary: Optional[Dict[str, Any]] = None
) -> str:
    """
    Render run metrics (and the executor summary, when given) as text.

    Status is SUCCESS when the data quality score reaches min_score
    (settings.dq_min_score by default).
    """
    min_score = settings.dq_min_score if min_score is None else min_score
    rule = "=" * 70

    lines = [
        rule,
        "NESTED MANAGER ACCOUNTS - EXECUTION REPORT",
        rule,
        f"Total Records Processed: {metrics.total_records:,}",
        f"Unique Manager Accounts: {metrics.unique_manager_accounts:,}",
        f"Root PN Managers: {metrics.root_pn_managers:,}",
        f"Max Hierarchy Depth: {metrics.max_hierarchy_depth}",
        f"Hierarchy Rows: {metrics.hierarchy_rows:,}",
        f"Isolated Group Accounts: {metrics.isolated_group_accounts:,}",
        f"Data Quality Score: {metrics.data_quality_score:.2f}%",
        f"Processing Time: {metrics.processing_time_seconds:.2f} seconds",
    ]

    if summary:
        lines.append(rule)
        for step in summary.get('steps', []):
            lines.append(
                f"{step['step_id']}: {step['status']} "
                f"(attempts={step['attempts']}, rows={step.get('rows_processed') or 0}, "
                f"{step['duration_ms']} ms)"
            )
        dq_report = summary.get('data_quality')
        if dq_report:
            lines.append(rule)
            lines.append(summarize(dq_report['results']))

    lines.extend([
        rule,
        f"Status: {metrics.status_label(min_score)}",
        rule,
    ])
    return "\n".join(lines)
