"""
NMA constants: open-end sentinel, flag literals, table names and status values.
"""

from datetime import date
from enum import Enum


# Still-active intervals end here
OPEN_END_DATE = date(2099, 12, 31)

YES = "Y"
NO = "N"

# Source tag stamped on edges derived from the global relationship feed
PN_SOURCE = "pn"

GROUP_PATH_SEPARATOR = "/"
SOURCE_SEPARATOR = ","

ROOT_COMPARISON_MATCH = "MATCH"
ROOT_COMPARISON_NO_PN_ROOT = "NO_PN_ROOT"


class Channel(str, Enum):
    """Provenance of a candidate mapping record."""
    HIERARCHY = "hierarchy"
    STANDALONE = "standalone"
    GROUP = "group"


class ProcessorStatus(str, Enum):
    """Status values returned by stage processors."""
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class PipelineRunStatus(str, Enum):
    """Overall pipeline run status."""
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"


class TableName(str, Enum):
    """Default table names read and written by the pipeline stages."""
    # Inputs
    GLOBAL_ENTITY_RELATIONSHIPS = "global_entity_relationships"
    PARTNER_ACCOUNTS = "partner_accounts"
    GROUP_MIGRATION_FLAGS = "group_migration_flags"
    ENTITY_TYPES = "entity_types"
    ENTITY_MAPPINGS = "entity_mappings"

    # Intermediates
    RESOLVED_RELATIONSHIPS = "resolved_relationships"
    ISOLATED_GROUP_ACCOUNTS = "isolated_group_accounts"
    HIERARCHY_EDGES = "hierarchy_edges"
    FINAL_SEGMENTS = "final_segments"
    NMA_CANDIDATES = "nma_candidates"

    # Outputs
    NMA_HIERARCHY = "nma_hierarchy"
    NMA_CHANGES = "nma_changes"


INTERMEDIATE_TABLES = (
    TableName.RESOLVED_RELATIONSHIPS.value,
    TableName.ISOLATED_GROUP_ACCOUNTS.value,
    TableName.HIERARCHY_EDGES.value,
    TableName.FINAL_SEGMENTS.value,
    TableName.NMA_CANDIDATES.value,
)
