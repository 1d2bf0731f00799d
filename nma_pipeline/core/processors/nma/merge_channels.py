"""
Merge Channels Stage

Reads: nma_hierarchy, final_segments, entity_mappings, partner_accounts,
       isolated_group_accounts
Writes: nma_candidates

Usage in pipeline:
    ps_type: nma.merge_channels
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import Channel, TableName
from nma_pipeline.core.hierarchy.channels import merge_channels
from nma_pipeline.core.hierarchy.schemas import (
    CLOSURE_SCHEMA,
    ENTITY_MAPPING_COLUMNS,
    ISOLATED_GROUP_SCHEMA,
    PARTNER_ACCOUNT_COLUMNS,
    TEMPORAL_SEGMENT_SCHEMA,
)
from nma_pipeline.core.processors.base import NmaStageProcessor


class MergeChannelsProcessor(NmaStageProcessor):
    """Union the candidates of the three channels."""

    stage_name = "merge_channels"
    input_tables = {
        TableName.NMA_HIERARCHY: list(CLOSURE_SCHEMA),
        TableName.FINAL_SEGMENTS: list(TEMPORAL_SEGMENT_SCHEMA),
        TableName.ENTITY_MAPPINGS: ENTITY_MAPPING_COLUMNS,
        TableName.PARTNER_ACCOUNTS: PARTNER_ACCOUNT_COLUMNS,
        TableName.ISOLATED_GROUP_ACCOUNTS: list(ISOLATED_GROUP_SCHEMA),
    }
    output_tables = [TableName.NMA_CANDIDATES]

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        window_start, window_end = self.processing_window(context)
        candidates = merge_channels(
            inputs[TableName.NMA_HIERARCHY],
            inputs[TableName.FINAL_SEGMENTS],
            inputs[TableName.ENTITY_MAPPINGS],
            inputs[TableName.PARTNER_ACCOUNTS],
            inputs[TableName.ISOLATED_GROUP_ACCOUNTS],
            window_start=window_start,
            window_end=window_end,
        )
        return {TableName.NMA_CANDIDATES: candidates}

    def describe(self, inputs, outputs, step_config) -> Dict[str, Any]:
        channels = outputs[TableName.NMA_CANDIDATES].get_column("channel")
        return {
            "channel_rows": {
                channel.value: int((channels == channel.value).sum())
                for channel in Channel
            }
        }


def get_engine():
    """Factory function for pipeline executor."""
    return MergeChannelsProcessor()
