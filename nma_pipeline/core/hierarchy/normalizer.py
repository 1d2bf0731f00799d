"""
Relationship Normalizer

Turns the raw global entity-relationship feed into canonical directed
manager -> linked edges:

1. extract_account_links: per (entity_id_one, entity_id_two, created day)
   keep the latest created_at, tie-broken by latest updated_at, and derive
   validity from the delete flag.
2. normalize_relationships: canonicalize each pair as (min id, max id) and
   keep one edge per canonical pair and start date, the one with the
   latest end timestamp.
3. find_isolated_group_accounts: PN group accounts that are migration
   flagged and never appear on either side of a surviving edge.
4. resolve_relationships: drop every edge touching an isolated group.
"""

from dataclasses import dataclass
from typing import Optional

import polars as pl

from nma_pipeline.core.constants import OPEN_END_DATE, PN_SOURCE, YES
from nma_pipeline.core.hierarchy.pn_classifier import pn_registered_partners
from nma_pipeline.core.hierarchy.schemas import (
    ISOLATED_GROUP_SCHEMA,
    RELATIONSHIP_EDGE_SCHEMA,
    conform,
)
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)


@dataclass
class NormalizedRelationships:
    """Output of the normalizer stage."""
    resolved: pl.DataFrame
    isolated_groups: pl.DataFrame


def _as_datetime(df: pl.DataFrame, col: str) -> pl.Expr:
    if df.schema[col] == pl.Utf8:
        return pl.col(col).str.to_datetime(strict=False)
    return pl.col(col).cast(pl.Datetime("us"))


def extract_account_links(
    raw_relationships: pl.DataFrame,
    id_marker: Optional[str] = None
) -> pl.DataFrame:
    """
    Deduplicate raw relationship rows and orient them as manager -> linked.

    Args:
        raw_relationships: entity_id_one, entity_id_two, created_at, updated_at, delete_flag
        id_marker: When set, both ids must contain it (case-insensitive)

    Returns:
        RelationshipEdge-shaped frame (not yet canonicalized)
    """
    df = raw_relationships.with_columns(
        _as_datetime(raw_relationships, "created_at").alias("created_at"),
        _as_datetime(raw_relationships, "updated_at").alias("updated_at"),
    ).filter(
        pl.col("entity_id_one").is_not_null()
        & pl.col("entity_id_two").is_not_null()
        & pl.col("created_at").is_not_null()
    )

    if id_marker:
        marker = id_marker.lower()
        df = df.filter(
            pl.col("entity_id_one").str.to_lowercase().str.contains(marker, literal=True)
            & pl.col("entity_id_two").str.to_lowercase().str.contains(marker, literal=True)
        )

    deduped = (
        df.with_columns(pl.col("created_at").dt.date().alias("created_day"))
        .sort(["created_at", "updated_at"], descending=[True, True], nulls_last=True)
        .unique(
            subset=["entity_id_one", "entity_id_two", "created_day"],
            keep="first",
            maintain_order=True,
        )
    )

    is_deleted = pl.col("delete_flag").str.to_uppercase().fill_null("") == YES

    links = deduped.select(
        pl.col("entity_id_one").alias("manager_account_id"),
        pl.col("entity_id_two").alias("linked_account_id"),
        pl.lit(0).alias("marketplace_id"),
        pl.col("created_day").alias("effective_start_date"),
        pl.when(is_deleted)
        .then(pl.col("updated_at").dt.date())
        .otherwise(pl.lit(OPEN_END_DATE))
        .alias("effective_end_date"),
        pl.col("updated_at").alias("effective_end_ts"),
        pl.lit(YES).alias("is_linked"),
        pl.lit(PN_SOURCE).alias("source"),
    )

    valid = links.filter(
        (pl.col("manager_account_id") != pl.col("linked_account_id"))
        & pl.col("effective_end_date").is_not_null()
        & (pl.col("effective_start_date") <= pl.col("effective_end_date"))
    )

    dropped = links.height - valid.height
    if dropped:
        logger.debug("Dropped invalid relationship rows", dropped=dropped, reason="self_loop_or_inverted_interval")

    return conform(valid, RELATIONSHIP_EDGE_SCHEMA)


def normalize_relationships(links: pl.DataFrame) -> pl.DataFrame:
    """
    Keep one edge per canonical (min id, max id) pair and start date.

    The surviving edge is the one with the latest effective_end_ts; ties
    keep the lexicographically smallest original orientation. The original
    orientation is preserved on the surviving edge and the canonical ids are
    added as account_id_1 / account_id_2.
    """
    a = pl.col("manager_account_id")
    b = pl.col("linked_account_id")

    return (
        links.with_columns(
            pl.when(a <= b).then(a).otherwise(b).alias("account_id_1"),
            pl.when(a <= b).then(b).otherwise(a).alias("account_id_2"),
        )
        .sort(
            ["effective_end_ts", "manager_account_id", "linked_account_id"],
            descending=[True, False, False],
            nulls_last=True,
        )
        .unique(
            subset=["account_id_1", "account_id_2", "effective_start_date"],
            keep="first",
            maintain_order=True,
        )
    )


def pn_group_accounts(partner_accounts: pl.DataFrame) -> pl.DataFrame:
    """Group ids of PN-registered partner accounts."""
    return (
        pn_registered_partners(partner_accounts)
        .filter(pl.col("group_account_id").is_not_null())
        .select("group_account_id")
        .unique()
    )


def find_isolated_group_accounts(
    normalized: pl.DataFrame,
    partner_accounts: pl.DataFrame,
    migration_flags: pl.DataFrame
) -> pl.DataFrame:
    """
    PN group accounts that are migration-flagged 'Y' and absent from every
    surviving canonical edge.
    """
    migrated = (
        migration_flags
        .filter(pl.col("migration_flag").str.to_uppercase() == YES)
        .select("group_account_id")
        .unique()
    )

    in_edges = pl.concat([
        normalized.select(pl.col("account_id_1").alias("group_account_id")),
        normalized.select(pl.col("account_id_2").alias("group_account_id")),
    ]).unique()

    isolated = (
        pn_group_accounts(partner_accounts)
        .join(migrated, on="group_account_id", how="semi")
        .join(in_edges, on="group_account_id", how="anti")
        .sort("group_account_id")
    )
    return conform(isolated, ISOLATED_GROUP_SCHEMA)


def resolve_relationships(normalized: pl.DataFrame, isolated_groups: pl.DataFrame) -> pl.DataFrame:
    """Drop edges touching an isolated group account on either side."""
    isolated = isolated_groups.get_column("group_account_id")
    resolved = normalized.filter(
        ~pl.col("manager_account_id").is_in(isolated.implode())
        & ~pl.col("linked_account_id").is_in(isolated.implode())
    ).sort(["manager_account_id", "linked_account_id", "effective_start_date"])
    return conform(resolved, RELATIONSHIP_EDGE_SCHEMA)


def run_normalizer(
    raw_relationships: pl.DataFrame,
    partner_accounts: pl.DataFrame,
    migration_flags: pl.DataFrame,
    id_marker: Optional[str] = None
) -> NormalizedRelationships:
    """Run the full normalizer: extract, canonicalize, quarantine, resolve."""
    links = extract_account_links(raw_relationships, id_marker=id_marker)
    normalized = normalize_relationships(links)
    isolated = find_isolated_group_accounts(normalized, partner_accounts, migration_flags)
    resolved = resolve_relationships(normalized, isolated)

    logger.info(
        "Normalized relationships",
        raw_rows=raw_relationships.height,
        link_rows=links.height,
        canonical_rows=normalized.height,
        isolated_groups=isolated.height,
        resolved_rows=resolved.height,
    )
    return NormalizedRelationships(resolved=resolved, isolated_groups=isolated)
