"""
Deduplication & Interval Consolidator

Step A keeps one candidate per exact (manager, entity, marketplace, start,
end) interval. Step B merges overlapping or adjacent intervals per
(manager, entity, marketplace) so the output never overlaps.
"""

from typing import Dict, Optional

import polars as pl

from nma_pipeline.app.config import settings
from nma_pipeline.core.constants import SOURCE_SEPARATOR
from nma_pipeline.core.hierarchy.schemas import (
    CONSOLIDATED_SCHEMA,
    CONSOLIDATION_KEY,
    conform,
    empty_frame,
)
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)

_INTERVAL_KEY = [*CONSOLIDATION_KEY, "effective_start_date", "effective_end_date"]


def source_rank_expr(
    source_priority: Optional[Dict[str, int]] = None,
    unknown_priority: Optional[int] = None
) -> pl.Expr:
    """Rank of the candidate's source; lower wins, unknown sources last."""
    priority = source_priority or settings.source_priority
    unknown = unknown_priority if unknown_priority is not None else settings.unknown_source_priority
    return (
        pl.col("source")
        .str.to_uppercase()
        .replace_strict(priority, default=unknown, return_dtype=pl.Int64)
    )


def resolve_conflicts(
    candidates: pl.DataFrame,
    source_priority: Optional[Dict[str, int]] = None
) -> pl.DataFrame:
    """
    Keep exactly one candidate per exact interval.

    Ranked by root_pn_mngr_flg desc, source priority, level asc; remaining
    ties fall back to child id, path and advertiser for a stable pick.
    """
    ranked = candidates.with_columns(source_rank_expr(source_priority).alias("source_rank"))
    return (
        ranked.sort(
            [
                *_INTERVAL_KEY,
                "root_pn_mngr_flg",
                "source_rank",
                "level",
                "chld_manager_account_id",
                "path",
                "advertiser_id",
                "source",
            ],
            descending=[False] * len(_INTERVAL_KEY) + [True, False, False, False, False, False, False],
            nulls_last=True,
        )
        .unique(subset=_INTERVAL_KEY, keep="first", maintain_order=True)
        .drop("source_rank")
    )


def consolidate_intervals(records: pl.DataFrame) -> pl.DataFrame:
    """
    Merge overlapping or adjacent intervals per (manager, entity, marketplace).

    A record opens a new merge group when its start is more than one day
    after the running max end of all earlier records in the key. Each group
    collapses to min start, max end, the sorted distinct source set, max
    flags and the min of level, path, child and advertiser.
    """
    if records.height == 0:
        return empty_frame(CONSOLIDATED_SCHEMA)

    ordered = records.sort([*CONSOLIDATION_KEY, "effective_start_date", "effective_end_date"])

    # Dates as day counts so cum_max works on every polars version
    end_days = pl.col("effective_end_date").to_physical()
    start_days = pl.col("effective_start_date").to_physical()

    grouped = (
        ordered.with_columns(
            end_days.cum_max().shift(1).over(CONSOLIDATION_KEY).alias("prior_max_end"),
        )
        .with_columns(
            (
                pl.col("prior_max_end").is_null()
                | (start_days > pl.col("prior_max_end") + 1)
            )
            .cast(pl.Int64)
            .alias("new_group"),
        )
        .with_columns(pl.col("new_group").cum_sum().over(CONSOLIDATION_KEY).alias("merge_group"))
    )

    merged = (
        grouped.group_by([*CONSOLIDATION_KEY, "merge_group"], maintain_order=True)
        .agg(
            pl.col("effective_start_date").min(),
            pl.col("effective_end_date").max(),
            pl.col("source")
            .drop_nulls()
            .unique()
            .sort()
            .str.join(SOURCE_SEPARATOR)
            .alias("source"),
            pl.col("chld_manager_account_id").min(),
            pl.col("path").min(),
            pl.col("level").min(),
            pl.col("root_mngr_flg").max(),
            pl.col("root_pn_mngr_flg").max(),
            pl.col("is_linked").max(),
            pl.col("advertiser_id").min(),
        )
        .drop("merge_group")
    )
    return conform(merged, CONSOLIDATED_SCHEMA)


def consolidate_records(
    candidates: pl.DataFrame,
    source_priority: Optional[Dict[str, int]] = None
) -> pl.DataFrame:
    """Resolve exact-interval conflicts, then merge intervals."""
    resolved = resolve_conflicts(candidates, source_priority)
    consolidated = consolidate_intervals(resolved).sort([*CONSOLIDATION_KEY, "effective_start_date"])

    logger.info(
        "Consolidated records",
        candidates=candidates.height,
        after_conflicts=resolved.height,
        consolidated=consolidated.height,
    )
    return consolidated
