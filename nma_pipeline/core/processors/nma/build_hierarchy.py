"""
Build Hierarchy Stage

Reads: resolved_relationships, entity_types, partner_accounts
Writes: hierarchy_edges, nma_hierarchy

Usage in pipeline:
    ps_type: nma.build_hierarchy
"""

from typing import Any, Dict

import polars as pl

from nma_pipeline.core.constants import TableName
from nma_pipeline.core.hierarchy.closure import build_hierarchy_closure, enrich_hierarchy_edges
from nma_pipeline.core.hierarchy.pn_classifier import enrich_hierarchy_table, pn_registered_accounts
from nma_pipeline.core.hierarchy.schemas import (
    ENTITY_TYPE_COLUMNS,
    PARTNER_ACCOUNT_COLUMNS,
    RELATIONSHIP_EDGE_SCHEMA,
    with_date_columns,
)
from nma_pipeline.core.processors.base import NmaStageProcessor


class BuildHierarchyProcessor(NmaStageProcessor):
    """
    Enrich resolved edges with entity types, expand the closure and publish
    the hierarchy table with its root flags.
    """

    stage_name = "build_hierarchy"
    input_tables = {
        TableName.RESOLVED_RELATIONSHIPS: list(RELATIONSHIP_EDGE_SCHEMA),
        TableName.ENTITY_TYPES: ENTITY_TYPE_COLUMNS,
        TableName.PARTNER_ACCOUNTS: PARTNER_ACCOUNT_COLUMNS,
    }
    output_tables = [TableName.HIERARCHY_EDGES, TableName.NMA_HIERARCHY]

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        config = step_config.get("config") or {}
        max_levels = config.get("max_hierarchy_levels", self.settings.max_hierarchy_levels)

        resolved = with_date_columns(
            inputs[TableName.RESOLVED_RELATIONSHIPS],
            ["effective_start_date", "effective_end_date"]
        )
        edges = enrich_hierarchy_edges(
            resolved,
            inputs[TableName.ENTITY_TYPES],
            config.get("agency_type_markers", self.settings.agency_type_markers),
        )
        closure = build_hierarchy_closure(edges, max_levels=max_levels)
        pn_accounts = pn_registered_accounts(inputs[TableName.PARTNER_ACCOUNTS])
        hierarchy = enrich_hierarchy_table(closure, edges, pn_accounts, max_levels=max_levels)

        return {
            TableName.HIERARCHY_EDGES: edges,
            TableName.NMA_HIERARCHY: hierarchy,
        }

    def describe(self, inputs, outputs, step_config) -> Dict[str, Any]:
        hierarchy = outputs[TableName.NMA_HIERARCHY]
        return {"max_hierarchy_depth": int(hierarchy.get_column("level").max() or 0)}


def get_engine():
    """Factory function for pipeline executor."""
    return BuildHierarchyProcessor()
