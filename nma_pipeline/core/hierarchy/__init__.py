"""
NMA hierarchy resolution engine.

Pure polars transforms, one module per stage:
normalizer -> closure -> pn_classifier -> inheritance -> channels -> consolidator
"""

from nma_pipeline.core.hierarchy.normalizer import (
    NormalizedRelationships,
    extract_account_links,
    normalize_relationships,
    pn_group_accounts,
    find_isolated_group_accounts,
    resolve_relationships,
    run_normalizer,
)
from nma_pipeline.core.hierarchy.closure import (
    enrich_hierarchy_edges,
    build_hierarchy_closure,
    path_string,
)
from nma_pipeline.core.hierarchy.pn_classifier import (
    is_pn_registered_expr,
    pn_registered_accounts,
    ancestor_pn_flags,
    enrich_hierarchy_table,
    classify_segments,
)
from nma_pipeline.core.hierarchy.inheritance import (
    valid_entity_mappings,
    build_temporal_segments,
)
from nma_pipeline.core.hierarchy.channels import (
    hierarchy_channel,
    standalone_channel,
    group_channel,
    merge_channels,
)
from nma_pipeline.core.hierarchy.consolidator import (
    resolve_conflicts,
    consolidate_intervals,
    consolidate_records,
)

__all__ = [
    "NormalizedRelationships",
    "extract_account_links",
    "normalize_relationships",
    "pn_group_accounts",
    "find_isolated_group_accounts",
    "resolve_relationships",
    "run_normalizer",
    "enrich_hierarchy_edges",
    "build_hierarchy_closure",
    "path_string",
    "is_pn_registered_expr",
    "pn_registered_accounts",
    "ancestor_pn_flags",
    "enrich_hierarchy_table",
    "classify_segments",
    "valid_entity_mappings",
    "build_temporal_segments",
    "hierarchy_channel",
    "standalone_channel",
    "group_channel",
    "merge_channels",
    "resolve_conflicts",
    "consolidate_intervals",
    "consolidate_records",
]
