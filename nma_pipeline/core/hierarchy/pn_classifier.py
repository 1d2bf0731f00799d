"""
PN-Root Classifier

Partner-Network registration checks and the two root-PN classifications:

- Hierarchy-table enrichment: per closure row, whether the root has a parent
  edge (root_mngr_flg) and whether the root is a PN-registered account with
  no PN-registered ancestor (root_pn_mngr_flg).
- Per-segment rule, used by the inheritance engine: an account is root PN
  manager during a segment iff it is PN-registered and no ancestor on any
  closure path active during that segment is PN-registered.
"""

import polars as pl

from nma_pipeline.core.constants import (
    YES,
    NO,
    ROOT_COMPARISON_MATCH,
    ROOT_COMPARISON_NO_PN_ROOT,
)
from nma_pipeline.core.hierarchy.closure import sort_closure
from nma_pipeline.core.hierarchy.schemas import HIERARCHY_TABLE_SCHEMA, conform


def is_pn_registered_expr() -> pl.Expr:
    """approved = Y, external = Y, disabled = N; compared case-insensitively."""
    return (
        (pl.col("is_registration_approved").str.to_uppercase() == YES)
        & (pl.col("is_external_partner_account").str.to_uppercase() == YES)
        & (pl.col("is_disabled").str.to_uppercase() == NO)
    ).fill_null(False)


def pn_registered_partners(partner_accounts: pl.DataFrame) -> pl.DataFrame:
    """Partner account rows that pass the PN registration check."""
    return partner_accounts.filter(is_pn_registered_expr())


def pn_registered_accounts(partner_accounts: pl.DataFrame) -> pl.Series:
    """Distinct ids of PN-registered accounts."""
    return (
        pn_registered_partners(partner_accounts)
        .get_column("partner_account_id")
        .drop_nulls()
        .unique()
        .sort()
    )


def ancestor_pn_flags(
    accounts: pl.Series,
    hierarchy_edges: pl.DataFrame,
    pn_accounts: pl.Series,
    max_levels: int = 12
) -> pl.DataFrame:
    """
    Ascend from each account through direct parent edges and flag accounts
    with any PN-registered ancestor.

    The ascent is bounded at max_levels hops and never revisits a node
    already on the chain, so cyclic edge sets terminate.

    Returns:
        DataFrame[account_id, pn_mngr_flg] with one row per input account
    """
    parents = (
        hierarchy_edges
        .filter(pl.col("effective_end_date_calculated").is_not_null())
        .select(
            pl.col("chld_manager_account_id").alias("current"),
            pl.col("prnt_manager_account_id").alias("parent"),
        )
        .unique()
    )

    leaves = pl.DataFrame({"account_id": accounts.unique()}, schema={"account_id": pl.Utf8})
    state = leaves.select(
        pl.col("account_id").alias("leaf"),
        pl.col("account_id").alias("current"),
        pl.concat_list(pl.col("account_id")).alias("visited"),
    )

    hits = []
    for _ in range(max_levels):
        step = (
            state.join(parents, on="current", how="inner")
            .filter(~pl.col("visited").list.contains(pl.col("parent")))
        )
        if step.height == 0:
            break

        hits.append(
            step.select(
                "leaf",
                pl.col("parent").is_in(pn_accounts.implode()).cast(pl.Int64).alias("is_pn"),
            )
        )
        state = (
            step.select(
                "leaf",
                pl.col("parent").alias("current"),
                pl.concat_list(["visited", "parent"]).alias("visited"),
            )
            .unique(subset=["leaf", "current"], keep="first", maintain_order=True)
        )

    if not hits:
        return leaves.with_columns(pl.lit(0, dtype=pl.Int64).alias("pn_mngr_flg"))

    flags = (
        pl.concat(hits)
        .group_by("leaf")
        .agg(pl.col("is_pn").max().alias("pn_mngr_flg"))
        .rename({"leaf": "account_id"})
    )
    return (
        leaves.join(flags, on="account_id", how="left")
        .with_columns(pl.col("pn_mngr_flg").fill_null(0))
    )


def enrich_hierarchy_table(
    closure: pl.DataFrame,
    hierarchy_edges: pl.DataFrame,
    pn_accounts: pl.Series,
    max_levels: int = 12
) -> pl.DataFrame:
    """
    Add root_mngr_flg, root_pn_mngr_flg, pn_manager_flag and root_comparison
    to the closure, producing the published hierarchy table.
    """
    # Accounts that are themselves a child somewhere cannot be a true root
    has_parent = hierarchy_edges.get_column("chld_manager_account_id").unique()

    closure_accounts = pl.concat([
        closure.get_column("root_manager_account_id"),
        closure.get_column("chld_manager_account_id"),
    ]).unique()
    pn_in_closure = closure_accounts.filter(closure_accounts.is_in(pn_accounts.implode()))

    root_flags = ancestor_pn_flags(pn_in_closure, hierarchy_edges, pn_accounts, max_levels).rename(
        {"account_id": "root_manager_account_id", "pn_mngr_flg": "root_pn_ancestor_flg"}
    )

    root_is_pn = pl.col("root_manager_account_id").is_in(pn_accounts.implode())

    enriched = (
        closure.join(root_flags, on="root_manager_account_id", how="left")
        .with_columns(
            pl.when(pl.col("root_manager_account_id").is_in(has_parent.implode()))
            .then(0)
            .otherwise(1)
            .alias("root_mngr_flg"),
            pl.when(root_is_pn & (pl.col("root_pn_ancestor_flg").fill_null(0) == 0))
            .then(1)
            .otherwise(0)
            .alias("root_pn_mngr_flg"),
            pl.when(pl.col("chld_manager_account_id").is_in(pn_accounts.implode()))
            .then(pl.lit(YES))
            .otherwise(pl.lit(NO))
            .alias("pn_manager_flag"),
            pl.when(root_is_pn)
            .then(pl.lit(ROOT_COMPARISON_MATCH))
            .otherwise(pl.lit(ROOT_COMPARISON_NO_PN_ROOT))
            .alias("root_comparison"),
        )
    )
    return conform(sort_closure(enriched), HIERARCHY_TABLE_SCHEMA)


def classify_segments(
    segments: pl.DataFrame,
    closure: pl.DataFrame,
    pn_accounts: pl.Series
) -> pl.DataFrame:
    """
    Apply the per-segment root-PN rule.

    Only closure rows whose interval overlaps the exact segment are
    considered. Adds hierarchy_covered (the manager is a child in some
    overlapping closure row) and root_pn_mngr_flg.
    """
    indexed = segments.with_row_index("segment_idx")

    active = (
        indexed.select("segment_idx", "manager_account_id", "segment_start", "segment_end")
        .join(
            closure.select(
                pl.col("chld_manager_account_id").alias("manager_account_id"),
                "hier_start_date",
                "hier_end_date",
                "path",
            ),
            on="manager_account_id",
            how="inner",
        )
        .filter(
            (pl.col("hier_start_date") <= pl.col("segment_end"))
            & (pl.col("hier_end_date") >= pl.col("segment_start"))
        )
    )

    covered = active.get_column("segment_idx").unique()
    with_pn_ancestor = (
        active.select("segment_idx", "path")
        .explode("path")
        .filter(pl.col("path").is_in(pn_accounts.implode()))
        .get_column("segment_idx")
        .unique()
    )

    return (
        indexed.with_columns(
            pl.col("segment_idx").is_in(covered.implode()).alias("hierarchy_covered"),
            pl.when(
                pl.col("manager_account_id").is_in(pn_accounts.implode())
                & ~pl.col("segment_idx").is_in(with_pn_ancestor.implode())
            )
            .then(1)
            .otherwise(0)
            .alias("root_pn_mngr_flg"),
        )
        .drop("segment_idx")
    )
