"""
Channel Merger

Builds candidate records from three provenance channels and unions them
without dedup; conflicts are resolved by the consolidator.

- hierarchy:  mappings of every descendant, attributed to the chain's root
- standalone: temporal segments not governed by any hierarchy
- group:      mappings of members of isolated PN group accounts
"""

from datetime import date
from typing import Optional

import polars as pl

from nma_pipeline.core.constants import GROUP_PATH_SEPARATOR, Channel
from nma_pipeline.core.hierarchy.closure import path_string
from nma_pipeline.core.hierarchy.inheritance import valid_entity_mappings
from nma_pipeline.core.hierarchy.pn_classifier import (
    pn_registered_accounts,
    pn_registered_partners,
)
from nma_pipeline.core.hierarchy.schemas import CANDIDATE_SCHEMA, conform
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)

# Rows of the same root and mapping window share the most senior level
_LEVEL_PARTITION = [
    "root_manager_account_id",
    "entity_id",
    "marketplace_id",
    "source",
    "mapping_start",
    "mapping_end",
]


def hierarchy_channel(
    closure: pl.DataFrame,
    mappings: pl.DataFrame,
    pn_accounts: pl.Series
) -> pl.DataFrame:
    """
    Attribute each descendant's mapping to the root of every chain that
    overlaps it, over the intersection of both intervals.
    """
    chains = closure.select(
        "chld_manager_account_id",
        "root_manager_account_id",
        "level",
        "hier_start_date",
        "hier_end_date",
        path_string(pl.col("path")).alias("path"),
        "nma_change_flg",
    )

    joined = (
        chains.join(
            mappings.rename({
                "manager_account_id": "chld_manager_account_id",
                "effective_start_date": "mapping_start",
                "effective_end_date": "mapping_end",
            }),
            on="chld_manager_account_id",
            how="inner",
        )
        .filter(
            (pl.col("mapping_start") <= pl.col("hier_end_date"))
            & (pl.col("mapping_end") >= pl.col("hier_start_date"))
        )
    )

    candidates = joined.select(
        pl.col("root_manager_account_id").alias("manager_account_id"),
        "entity_id",
        "marketplace_id",
        pl.max_horizontal("hier_start_date", "mapping_start").alias("effective_start_date"),
        pl.min_horizontal("hier_end_date", "mapping_end").alias("effective_end_date"),
        "source",
        "chld_manager_account_id",
        "path",
        pl.col("level").min().over(_LEVEL_PARTITION).alias("level"),
        pl.lit(1).alias("root_mngr_flg"),
        pl.col("root_manager_account_id")
        .is_in(pn_accounts.implode())
        .cast(pl.Int64)
        .alias("root_pn_mngr_flg"),
        "nma_change_flg",
        "is_linked",
        "advertiser_id",
        pl.lit(Channel.HIERARCHY.value).alias("channel"),
    )
    return conform(candidates, CANDIDATE_SCHEMA).unique(maintain_order=True)


def standalone_channel(segments: pl.DataFrame, isolated_groups: pl.DataFrame) -> pl.DataFrame:
    """
    Segments whose manager is not a child in any overlapping closure row,
    excluding isolated group accounts. The manager is its own root.
    """
    isolated = isolated_groups.get_column("group_account_id")

    candidates = (
        segments.filter(
            ~pl.col("hierarchy_covered")
            & ~pl.col("manager_account_id").is_in(isolated.implode())
        )
        .select(
            "manager_account_id",
            "entity_id",
            "marketplace_id",
            pl.col("segment_start").alias("effective_start_date"),
            pl.col("segment_end").alias("effective_end_date"),
            "source",
            pl.col("manager_account_id").alias("chld_manager_account_id"),
            pl.col("manager_account_id").alias("path"),
            pl.lit(0).alias("level"),
            pl.lit(1).alias("root_mngr_flg"),
            "root_pn_mngr_flg",
            pl.lit(0).alias("nma_change_flg"),
            "is_linked",
            "advertiser_id",
            pl.lit(Channel.STANDALONE.value).alias("channel"),
        )
    )
    return conform(candidates, CANDIDATE_SCHEMA)


def group_channel(
    mappings: pl.DataFrame,
    partner_accounts: pl.DataFrame,
    isolated_groups: pl.DataFrame
) -> pl.DataFrame:
    """
    Link each isolated group account to the mappings of its PN-registered
    members. A member whose id equals the group id contributes the group's
    own mappings.
    """
    isolated = isolated_groups.get_column("group_account_id")

    members = (
        pn_registered_partners(partner_accounts)
        .filter(pl.col("group_account_id").is_in(isolated.implode()))
        .select("partner_account_id", "group_account_id")
        .unique()
    )

    candidates = (
        members.join(
            mappings.rename({"manager_account_id": "partner_account_id"}),
            on="partner_account_id",
            how="inner",
        )
        .select(
            pl.col("group_account_id").alias("manager_account_id"),
            "entity_id",
            "marketplace_id",
            "effective_start_date",
            "effective_end_date",
            "source",
            pl.col("partner_account_id").alias("chld_manager_account_id"),
            pl.concat_str(
                ["group_account_id", "partner_account_id"],
                separator=GROUP_PATH_SEPARATOR,
            ).alias("path"),
            pl.lit(1).alias("level"),
            pl.lit(1).alias("root_mngr_flg"),
            pl.lit(1).alias("root_pn_mngr_flg"),
            pl.lit(0).alias("nma_change_flg"),
            "is_linked",
            "advertiser_id",
            pl.lit(Channel.GROUP.value).alias("channel"),
        )
    )
    return conform(candidates, CANDIDATE_SCHEMA)


def merge_channels(
    closure: pl.DataFrame,
    segments: pl.DataFrame,
    mappings: pl.DataFrame,
    partner_accounts: pl.DataFrame,
    isolated_groups: pl.DataFrame,
    window_start: Optional[date] = None,
    window_end: Optional[date] = None
) -> pl.DataFrame:
    """
    Union the three channels into one candidate set.

    Args:
        closure: Hierarchy closure rows
        segments: Classified temporal segments
        mappings: Raw entity mappings (validated and windowed here)
        partner_accounts: Partner account reference data
        isolated_groups: Isolated group accounts from the normalizer

    Returns:
        Candidate frame tagged with its channel
    """
    valid = valid_entity_mappings(mappings, window_start, window_end)
    pn_accounts = pn_registered_accounts(partner_accounts)

    hierarchy = hierarchy_channel(closure, valid, pn_accounts)
    standalone = standalone_channel(segments, isolated_groups)
    group = group_channel(valid, partner_accounts, isolated_groups)

    logger.info(
        "Merged candidate channels",
        hierarchy_rows=hierarchy.height,
        standalone_rows=standalone.height,
        group_rows=group.height,
    )
    return pl.concat([hierarchy, standalone, group], how="vertical_relaxed")
