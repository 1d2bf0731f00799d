"""
Temporal Segments Stage

Reads: entity_mappings, nma_hierarchy, partner_accounts
Writes: final_segments

Usage in pipeline:
    ps_type: nma.temporal_segments
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import TableName
from nma_pipeline.core.hierarchy.inheritance import build_temporal_segments
from nma_pipeline.core.hierarchy.pn_classifier import pn_registered_accounts
from nma_pipeline.core.hierarchy.schemas import (
    CLOSURE_SCHEMA,
    ENTITY_MAPPING_COLUMNS,
    PARTNER_ACCOUNT_COLUMNS,
)
from nma_pipeline.core.processors.base import NmaStageProcessor


class TemporalSegmentsProcessor(NmaStageProcessor):
    """Split entity mappings at hierarchy breakpoints and classify root-PN status."""

    stage_name = "temporal_segments"
    input_tables = {
        TableName.ENTITY_MAPPINGS: ENTITY_MAPPING_COLUMNS,
        TableName.NMA_HIERARCHY: list(CLOSURE_SCHEMA),
        TableName.PARTNER_ACCOUNTS: PARTNER_ACCOUNT_COLUMNS,
    }
    output_tables = [TableName.FINAL_SEGMENTS]

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        window_start, window_end = self.processing_window(context)
        segments = build_temporal_segments(
            inputs[TableName.ENTITY_MAPPINGS],
            inputs[TableName.NMA_HIERARCHY],
            pn_registered_accounts(inputs[TableName.PARTNER_ACCOUNTS]),
            window_start=window_start,
            window_end=window_end,
        )
        return {TableName.FINAL_SEGMENTS: segments}


def get_engine():
    """Factory function for pipeline executor."""
    return TemporalSegmentsProcessor()
