"""
Consolidate Stage

Reads: nma_candidates
Writes: nma_changes

Usage in pipeline:
    ps_type: nma.consolidate
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import TableName
from nma_pipeline.core.hierarchy.consolidator import consolidate_records
from nma_pipeline.core.hierarchy.schemas import CANDIDATE_SCHEMA
from nma_pipeline.core.processors.base import NmaStageProcessor


class ConsolidateProcessor(NmaStageProcessor):
    """Resolve exact-interval conflicts and merge overlapping intervals."""

    stage_name = "consolidate"
    input_tables = {TableName.NMA_CANDIDATES: list(CANDIDATE_SCHEMA)}
    output_tables = [TableName.NMA_CHANGES]

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        config = step_config.get("config") or {}
        source_priority = config.get("source_priority")
        if source_priority:
            source_priority = {k.upper(): v for k, v in source_priority.items()}

        consolidated = consolidate_records(inputs[TableName.NMA_CANDIDATES], source_priority)
        return {TableName.NMA_CHANGES: consolidated}


def get_engine():
    """Factory function for pipeline executor."""
    return ConsolidateProcessor()
