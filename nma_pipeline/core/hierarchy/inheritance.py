"""
Temporal Inheritance Engine

Splits every entity mapping at the instants its manager's hierarchy
membership changes, so that root-PN status can be decided per segment.
A child account whose governing hierarchy lapses becomes its own root from
the day after the lapse.
"""

from datetime import date
from typing import Optional

import polars as pl

from nma_pipeline.app.config import settings
from nma_pipeline.core.constants import OPEN_END_DATE
from nma_pipeline.core.hierarchy.pn_classifier import classify_segments
from nma_pipeline.core.hierarchy.schemas import (
    ENTITY_MAPPING_SCHEMA,
    SEGMENT_KEY_COLUMNS,
    TEMPORAL_SEGMENT_SCHEMA,
    conform,
    empty_frame,
    with_date_columns,
)
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)


def valid_entity_mappings(
    mappings: pl.DataFrame,
    window_start: Optional[date] = None,
    window_end: Optional[date] = None
) -> pl.DataFrame:
    """
    Entity mappings usable downstream.

    Drops rows with a null entity or advertiser, a null or inverted interval,
    and rows outside the processing window.
    """
    window_start = window_start or settings.processing_start_date
    window_end = window_end or settings.processing_end_date

    typed = conform(
        with_date_columns(mappings, ["effective_start_date", "effective_end_date"]),
        ENTITY_MAPPING_SCHEMA,
    )
    valid = typed.filter(
        pl.col("manager_account_id").is_not_null()
        & pl.col("entity_id").is_not_null()
        & pl.col("advertiser_id").is_not_null()
        & pl.col("effective_start_date").is_not_null()
        & pl.col("effective_end_date").is_not_null()
        & (pl.col("effective_start_date") <= pl.col("effective_end_date"))
        & (pl.col("effective_start_date") >= pl.lit(window_start))
        & (pl.col("effective_end_date") <= pl.lit(window_end))
    )

    dropped = typed.height - valid.height
    if dropped:
        logger.debug(
            "Dropped entity mappings",
            dropped=dropped,
            window_start=str(window_start),
            window_end=str(window_end),
        )
    return valid


def _breakpoints(mappings: pl.DataFrame, closure: pl.DataFrame) -> pl.DataFrame:
    """
    Breakpoints per mapping: the mapping start, every overlapping closure
    start inside the mapping, and the day after every closure end that falls
    inside the mapping.
    """
    starts = mappings.select(*SEGMENT_KEY_COLUMNS, pl.col("original_start").alias("breakpoint"))

    memberships = closure.select(
        pl.col("chld_manager_account_id").alias("manager_account_id"),
        "hier_start_date",
        "hier_end_date",
    ).unique()

    joined = mappings.join(memberships, on="manager_account_id", how="inner")
    within = pl.col("breakpoint").is_between(pl.col("original_start"), pl.col("original_end"))

    hierarchy_starts = (
        joined.with_columns(pl.col("hier_start_date").alias("breakpoint"))
        .filter(within)
        .select(*SEGMENT_KEY_COLUMNS, "breakpoint")
    )
    lapses = (
        joined.filter(pl.col("hier_end_date") < pl.lit(OPEN_END_DATE))
        .with_columns(pl.col("hier_end_date").dt.offset_by("1d").alias("breakpoint"))
        .filter(within)
        .select(*SEGMENT_KEY_COLUMNS, "breakpoint")
    )

    return (
        pl.concat([starts, hierarchy_starts, lapses], how="vertical_relaxed")
        .unique()
        .sort([*SEGMENT_KEY_COLUMNS, "breakpoint"], nulls_last=True)
    )


def build_temporal_segments(
    mappings: pl.DataFrame,
    closure: pl.DataFrame,
    pn_accounts: pl.Series,
    window_start: Optional[date] = None,
    window_end: Optional[date] = None
) -> pl.DataFrame:
    """
    Split entity mappings into temporal segments and classify each one.

    Args:
        mappings: Raw entity mappings
        closure: Hierarchy closure rows
        pn_accounts: Ids of PN-registered accounts
        window_start: Processing window start (settings default)
        window_end: Processing window end (settings default)

    Returns:
        TemporalSegment frame with hierarchy_covered and root_pn_mngr_flg
    """
    valid = valid_entity_mappings(mappings, window_start, window_end)
    if valid.height == 0:
        return empty_frame(TEMPORAL_SEGMENT_SCHEMA)

    keyed = valid.rename({
        "effective_start_date": "original_start",
        "effective_end_date": "original_end",
    }).unique(subset=SEGMENT_KEY_COLUMNS, maintain_order=True)

    breakpoints = _breakpoints(keyed, closure)

    segments = (
        breakpoints.with_columns(
            pl.col("breakpoint").alias("segment_start"),
            pl.col("breakpoint")
            .shift(-1)
            .over(SEGMENT_KEY_COLUMNS)
            .dt.offset_by("-1d")
            .alias("next_end"),
        )
        .with_columns(pl.coalesce("next_end", "original_end").alias("segment_end"))
        .filter(pl.col("segment_start") <= pl.col("segment_end"))
        .drop("breakpoint", "next_end")
    )

    classified = classify_segments(segments, closure, pn_accounts)

    logger.info(
        "Built temporal segments",
        mappings=keyed.height,
        breakpoints=breakpoints.height,
        segments=classified.height,
    )
    return conform(classified, TEMPORAL_SEGMENT_SCHEMA).sort(
        [*SEGMENT_KEY_COLUMNS, "segment_start"], nulls_last=True
    )
