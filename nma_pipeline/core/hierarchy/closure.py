"""
Hierarchy Closure Builder

Expands direct child -> parent edges into every (descendant, ancestor chain)
reachable within the depth bound. The expansion is an iterative fixed point:
each round joins only the previous round's new rows (the frontier) with the
edge set, intersecting validity intervals and rejecting any extension whose
child already sits on the chain's path.
"""

from functools import reduce
from typing import Iterable, Optional

import polars as pl

from nma_pipeline.app.config import settings
from nma_pipeline.core.constants import GROUP_PATH_SEPARATOR, OPEN_END_DATE
from nma_pipeline.core.exceptions import ValidationError
from nma_pipeline.core.hierarchy.schemas import (
    CLOSURE_SCHEMA,
    HIERARCHY_EDGE_SCHEMA,
    conform,
    empty_frame,
)
from nma_pipeline.core.utils.logging import create_structured_logger

logger = create_structured_logger(__name__)

CLOSURE_ORDER = [
    "root_manager_account_id",
    "level",
    "chld_manager_account_id",
    "prnt_manager_account_id",
    "hier_start_date",
    "hier_end_date",
]

_EDGE_ATTRIBUTES = [
    "chld_mngr_acnt_type",
    "prnt_mngr_acnt_type",
    "nma_change_flg",
    "is_linked",
    "marketplace_id",
]


def _type_matches(col: str, markers: Iterable[str]) -> pl.Expr:
    lowered = pl.col(col).str.to_lowercase()
    matches = [lowered.str.contains(marker.lower(), literal=True) for marker in markers]
    if not matches:
        return pl.lit(False)
    return reduce(lambda a, b: a | b, matches).fill_null(False)


def enrich_hierarchy_edges(
    resolved: pl.DataFrame,
    entity_types: pl.DataFrame,
    type_markers: Optional[Iterable[str]] = None
) -> pl.DataFrame:
    """
    Turn resolved manager -> linked edges into child -> parent hierarchy edges.

    Child and parent types come from the entity type reference. A child whose
    type matches an agency marker gets nma_change_flg = 0 and, when its
    recorded end precedes the open end, a null calculated end (such edges do
    not take part in closure expansion).
    """
    markers = list(type_markers if type_markers is not None else settings.agency_type_markers)

    types = (
        entity_types
        .filter(pl.col("entity_id").is_not_null())
        .sort(["entity_id", "entity_type"], nulls_last=True)
        .unique(subset=["entity_id"], keep="first", maintain_order=True)
        .select("entity_id", "entity_type")
    )

    edges = (
        resolved.select(
            pl.col("linked_account_id").alias("chld_manager_account_id"),
            pl.col("manager_account_id").alias("prnt_manager_account_id"),
            "effective_start_date",
            "effective_end_date",
            "is_linked",
            "marketplace_id",
        )
        .filter(pl.col("chld_manager_account_id") != pl.col("prnt_manager_account_id"))
        .join(
            types.rename({"entity_id": "chld_manager_account_id", "entity_type": "chld_mngr_acnt_type"}),
            on="chld_manager_account_id",
            how="left",
        )
        .join(
            types.rename({"entity_id": "prnt_manager_account_id", "entity_type": "prnt_mngr_acnt_type"}),
            on="prnt_manager_account_id",
            how="left",
        )
    )

    is_agency = _type_matches("chld_mngr_acnt_type", markers)

    enriched = (
        edges.with_columns(
            pl.when(is_agency & (pl.col("effective_end_date") < pl.lit(OPEN_END_DATE)))
            .then(pl.lit(None, dtype=pl.Date))
            .otherwise(pl.col("effective_end_date"))
            .alias("effective_end_date_calculated"),
            pl.when(is_agency).then(0).otherwise(1).alias("nma_change_flg"),
        )
        .unique()
        .sort(["chld_manager_account_id", "prnt_manager_account_id", "effective_start_date"])
    )
    return conform(enriched, HIERARCHY_EDGE_SCHEMA)


def build_hierarchy_closure(
    hierarchy_edges: pl.DataFrame,
    max_levels: Optional[int] = None
) -> pl.DataFrame:
    """
    Compute the temporally bounded transitive closure of the hierarchy.

    Args:
        hierarchy_edges: HierarchyEdge frame from enrich_hierarchy_edges
        max_levels: Depth bound (defaults to settings.max_hierarchy_levels)

    Returns:
        ClosureRow frame; path lists ancestors root first and never
        contains the row's child.

    Raises:
        ValidationError: If max_levels is outside 1..12
    """
    if max_levels is None:
        max_levels = settings.max_hierarchy_levels
    if not 1 <= max_levels <= 12:
        raise ValidationError(
            message=f"max_levels must be between 1 and 12, got {max_levels}",
            context={"max_levels": max_levels}
        )

    active = (
        hierarchy_edges
        .filter(pl.col("effective_end_date_calculated").is_not_null())
        .select(
            "chld_manager_account_id",
            "prnt_manager_account_id",
            "effective_start_date",
            "effective_end_date",
            *_EDGE_ATTRIBUTES,
        )
        .unique()
    )

    if active.height == 0:
        return empty_frame(CLOSURE_SCHEMA)

    frontier = conform(
        active.with_columns(
            pl.lit(1).alias("level"),
            pl.col("prnt_manager_account_id").alias("root_manager_account_id"),
            pl.col("effective_start_date").alias("hier_start_date"),
            pl.col("effective_end_date").alias("hier_end_date"),
            pl.concat_list(pl.col("prnt_manager_account_id")).alias("path"),
        ),
        CLOSURE_SCHEMA,
    )
    rounds = [frontier]

    level = 1
    while frontier.height > 0 and level < max_levels:
        extended = (
            frontier.select(
                pl.col("chld_manager_account_id").alias("prnt_manager_account_id"),
                "level",
                "root_manager_account_id",
                pl.col("hier_start_date").alias("parent_start"),
                pl.col("hier_end_date").alias("parent_end"),
                "path",
            )
            .join(active, on="prnt_manager_account_id", how="inner")
            .with_columns(
                pl.max_horizontal("effective_start_date", "parent_start").alias("hier_start_date"),
                pl.min_horizontal("effective_end_date", "parent_end").alias("hier_end_date"),
            )
            .filter(
                (pl.col("hier_start_date") <= pl.col("hier_end_date"))
                & ~pl.col("path").list.contains(pl.col("chld_manager_account_id"))
            )
            .with_columns(
                (pl.col("level") + 1).alias("level"),
                pl.concat_list(["path", "prnt_manager_account_id"]).alias("path"),
            )
        )
        frontier = _dedupe(conform(extended, CLOSURE_SCHEMA))
        level += 1
        if frontier.height:
            rounds.append(frontier)

    closure = sort_closure(_dedupe(pl.concat(rounds, how="vertical_relaxed")))

    logger.info(
        "Built hierarchy closure",
        edges=active.height,
        closure_rows=closure.height,
        max_level=closure.get_column("level").max(),
        rounds=len(rounds),
    )
    return closure


def _dedupe(closure: pl.DataFrame) -> pl.DataFrame:
    """Exact tuple dedup; list columns are keyed by their joined form."""
    keyed = closure.with_columns(path_string(pl.col("path")).alias("path_key"))
    subset = [col for col in keyed.columns if col != "path"]
    return keyed.unique(subset=subset, keep="first", maintain_order=True).drop("path_key")


def path_string(path: pl.Expr) -> pl.Expr:
    """Render a path list as a '/'-joined string."""
    return path.list.join(GROUP_PATH_SEPARATOR)


def sort_closure(closure: pl.DataFrame) -> pl.DataFrame:
    """
    Sort closure-shaped rows into a total order.

    Two chains can share root, level and child (a diamond, or one edge valid
    over two intervals), so the parent, the interval, the path and every
    remaining scalar column all take part in the key.
    """
    path = pl.col("path")
    if isinstance(closure.schema["path"], pl.List):
        path = path_string(path)
    tie_breakers = [
        col for col, dtype in closure.schema.items()
        if col not in CLOSURE_ORDER and col != "path" and not isinstance(dtype, pl.List)
    ]
    return closure.sort([*CLOSURE_ORDER, path, *tie_breakers], nulls_last=True)
