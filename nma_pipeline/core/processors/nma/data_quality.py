"""
Data Quality Stage

Reads: nma_changes, nma_hierarchy, isolated_group_accounts
Writes: nothing; returns the data quality report and run metrics

Usage in pipeline:
    ps_type: nma.data_quality
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import TableName
from nma_pipeline.core.hierarchy.schemas import (
    CLOSURE_SCHEMA,
    CONSOLIDATED_SCHEMA,
    ISOLATED_GROUP_SCHEMA,
)
from nma_pipeline.core.pipeline.data_quality import DataQualityValidator
from nma_pipeline.core.pipeline.models import NmaRunMetrics
from nma_pipeline.core.processors.base import NmaStageProcessor


class DataQualityProcessor(NmaStageProcessor):
    """Score the published tables and collect run metrics."""

    stage_name = "data_quality"
    input_tables = {
        TableName.NMA_CHANGES: list(CONSOLIDATED_SCHEMA),
        TableName.NMA_HIERARCHY: list(CLOSURE_SCHEMA),
        TableName.ISOLATED_GROUP_ACCOUNTS: list(ISOLATED_GROUP_SCHEMA),
    }
    output_tables = []

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        return {}

    def describe(self, inputs, outputs, step_config) -> Dict[str, Any]:
        config = step_config.get("config") or {}
        changes = inputs[TableName.NMA_CHANGES]
        hierarchy = inputs[TableName.NMA_HIERARCHY]

        report = DataQualityValidator(min_score=config.get("min_score")).validate(changes, hierarchy)
        if config.get("fail_on_unhealthy", self.settings.dq_fail_on_unhealthy):
            DataQualityValidator.enforce(report)

        metrics = NmaRunMetrics(
            total_records=changes.height,
            unique_manager_accounts=changes.get_column("manager_account_id").n_unique(),
            root_pn_managers=(
                changes.filter(pl.col("root_pn_mngr_flg") == 1)
                .get_column("manager_account_id")
                .n_unique()
            ),
            max_hierarchy_depth=int(hierarchy.get_column("level").max() or 0),
            hierarchy_rows=hierarchy.height,
            isolated_group_accounts=inputs[TableName.ISOLATED_GROUP_ACCOUNTS].height,
            data_quality_score=report["score"],
        )
        return {"data_quality": report, "run_metrics": metrics.model_dump()}


def get_engine():
    """Factory function for pipeline executor."""
    return DataQualityProcessor()
