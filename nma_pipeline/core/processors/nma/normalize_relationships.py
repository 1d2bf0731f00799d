"""
Normalize Relationships Stage

Reads: global_entity_relationships, partner_accounts, group_migration_flags
Writes: resolved_relationships, isolated_group_accounts

Usage in pipeline:
    ps_type: nma.normalize_relationships
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import TableName
from nma_pipeline.core.hierarchy.normalizer import run_normalizer
from nma_pipeline.core.hierarchy.schemas import (
    MIGRATION_FLAG_COLUMNS,
    PARTNER_ACCOUNT_COLUMNS,
    RAW_RELATIONSHIP_COLUMNS,
)
from nma_pipeline.core.processors.base import NmaStageProcessor


class NormalizeRelationshipsProcessor(NmaStageProcessor):
    """Canonicalize raw relationship edges and quarantine isolated groups."""

    stage_name = "normalize_relationships"
    input_tables = {
        TableName.GLOBAL_ENTITY_RELATIONSHIPS: RAW_RELATIONSHIP_COLUMNS,
        TableName.PARTNER_ACCOUNTS: PARTNER_ACCOUNT_COLUMNS,
        TableName.GROUP_MIGRATION_FLAGS: MIGRATION_FLAG_COLUMNS,
    }
    output_tables = [TableName.RESOLVED_RELATIONSHIPS, TableName.ISOLATED_GROUP_ACCOUNTS]

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        config = step_config.get("config") or {}
        result = run_normalizer(
            inputs[TableName.GLOBAL_ENTITY_RELATIONSHIPS],
            inputs[TableName.PARTNER_ACCOUNTS],
            inputs[TableName.GROUP_MIGRATION_FLAGS],
            id_marker=config.get("manager_account_id_marker", self.settings.manager_account_id_marker),
        )
        return {
            TableName.RESOLVED_RELATIONSHIPS: result.resolved,
            TableName.ISOLATED_GROUP_ACCOUNTS: result.isolated_groups,
        }


def get_engine():
    """Factory function for pipeline executor."""
    return NormalizeRelationshipsProcessor()
