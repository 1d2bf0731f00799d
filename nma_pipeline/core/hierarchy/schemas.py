"""
Table schemas for the hierarchy engine.

Each stage conforms its output to one of these schemas so that union,
persistence and re-reads always see the same column order and dtypes.
"""

from typing import Dict, Iterable

import polars as pl

from nma_pipeline.core.exceptions import InvalidSchemaError


# ============================================
# Input tables
# ============================================

RAW_RELATIONSHIP_COLUMNS = ["entity_id_one", "entity_id_two", "created_at", "updated_at", "delete_flag"]
PARTNER_ACCOUNT_COLUMNS = [
    "partner_account_id",
    "group_account_id",
    "is_registration_approved",
    "is_external_partner_account",
    "is_disabled",
]
MIGRATION_FLAG_COLUMNS = ["group_account_id", "migration_flag"]
ENTITY_TYPE_COLUMNS = ["entity_id", "entity_type"]
ENTITY_MAPPING_COLUMNS = [
    "manager_account_id",
    "entity_id",
    "marketplace_id",
    "effective_start_date",
    "effective_end_date",
    "source",
    "advertiser_id",
    "is_linked",
]

ENTITY_MAPPING_SCHEMA: Dict[str, pl.DataType] = {
    "manager_account_id": pl.Utf8,
    "entity_id": pl.Utf8,
    "marketplace_id": pl.Int64,
    "effective_start_date": pl.Date,
    "effective_end_date": pl.Date,
    "source": pl.Utf8,
    "advertiser_id": pl.Utf8,
    "is_linked": pl.Utf8,
}

# ============================================
# Stage outputs
# ============================================

RELATIONSHIP_EDGE_SCHEMA: Dict[str, pl.DataType] = {
    "manager_account_id": pl.Utf8,
    "linked_account_id": pl.Utf8,
    "marketplace_id": pl.Int64,
    "effective_start_date": pl.Date,
    "effective_end_date": pl.Date,
    "effective_end_ts": pl.Datetime("us"),
    "is_linked": pl.Utf8,
    "source": pl.Utf8,
}

ISOLATED_GROUP_SCHEMA: Dict[str, pl.DataType] = {
    "group_account_id": pl.Utf8,
}

HIERARCHY_EDGE_SCHEMA: Dict[str, pl.DataType] = {
    "chld_manager_account_id": pl.Utf8,
    "prnt_manager_account_id": pl.Utf8,
    "effective_start_date": pl.Date,
    "effective_end_date": pl.Date,
    "effective_end_date_calculated": pl.Date,
    "is_linked": pl.Utf8,
    "marketplace_id": pl.Int64,
    "chld_mngr_acnt_type": pl.Utf8,
    "prnt_mngr_acnt_type": pl.Utf8,
    "nma_change_flg": pl.Int64,
}

CLOSURE_SCHEMA: Dict[str, pl.DataType] = {
    "chld_manager_account_id": pl.Utf8,
    "prnt_manager_account_id": pl.Utf8,
    "level": pl.Int64,
    "root_manager_account_id": pl.Utf8,
    "hier_start_date": pl.Date,
    "hier_end_date": pl.Date,
    "path": pl.List(pl.Utf8),
    "nma_change_flg": pl.Int64,
    "chld_mngr_acnt_type": pl.Utf8,
    "prnt_mngr_acnt_type": pl.Utf8,
    "is_linked": pl.Utf8,
    "marketplace_id": pl.Int64,
}

HIERARCHY_TABLE_SCHEMA: Dict[str, pl.DataType] = {
    **CLOSURE_SCHEMA,
    "root_mngr_flg": pl.Int64,
    "root_pn_mngr_flg": pl.Int64,
    "pn_manager_flag": pl.Utf8,
    "root_comparison": pl.Utf8,
}

SEGMENT_KEY_COLUMNS = [
    "manager_account_id",
    "entity_id",
    "marketplace_id",
    "source",
    "advertiser_id",
    "is_linked",
    "original_start",
    "original_end",
]

TEMPORAL_SEGMENT_SCHEMA: Dict[str, pl.DataType] = {
    "manager_account_id": pl.Utf8,
    "entity_id": pl.Utf8,
    "marketplace_id": pl.Int64,
    "source": pl.Utf8,
    "advertiser_id": pl.Utf8,
    "is_linked": pl.Utf8,
    "original_start": pl.Date,
    "original_end": pl.Date,
    "segment_start": pl.Date,
    "segment_end": pl.Date,
    "hierarchy_covered": pl.Boolean,
    "root_pn_mngr_flg": pl.Int64,
}

CANDIDATE_SCHEMA: Dict[str, pl.DataType] = {
    "manager_account_id": pl.Utf8,
    "entity_id": pl.Utf8,
    "marketplace_id": pl.Int64,
    "effective_start_date": pl.Date,
    "effective_end_date": pl.Date,
    "source": pl.Utf8,
    "chld_manager_account_id": pl.Utf8,
    "path": pl.Utf8,
    "level": pl.Int64,
    "root_mngr_flg": pl.Int64,
    "root_pn_mngr_flg": pl.Int64,
    "nma_change_flg": pl.Int64,
    "is_linked": pl.Utf8,
    "advertiser_id": pl.Utf8,
    "channel": pl.Utf8,
}

CONSOLIDATED_SCHEMA: Dict[str, pl.DataType] = {
    "manager_account_id": pl.Utf8,
    "entity_id": pl.Utf8,
    "marketplace_id": pl.Int64,
    "effective_start_date": pl.Date,
    "effective_end_date": pl.Date,
    "source": pl.Utf8,
    "chld_manager_account_id": pl.Utf8,
    "path": pl.Utf8,
    "level": pl.Int64,
    "root_mngr_flg": pl.Int64,
    "root_pn_mngr_flg": pl.Int64,
    "is_linked": pl.Utf8,
    "advertiser_id": pl.Utf8,
}

CONSOLIDATION_KEY = ["manager_account_id", "entity_id", "marketplace_id"]


def require_columns(df: pl.DataFrame, table: str, columns: Iterable[str]) -> None:
    """
    Raise InvalidSchemaError if df lacks any of the given columns.
    """
    missing = [col for col in columns if col not in df.columns]
    if missing:
        raise InvalidSchemaError(table, missing)


def conform(df: pl.DataFrame, schema: Dict[str, pl.DataType]) -> pl.DataFrame:
    """Select schema columns in order, casting each to its declared dtype."""
    return df.select([pl.col(name).cast(dtype) for name, dtype in schema.items()])


def empty_frame(schema: Dict[str, pl.DataType]) -> pl.DataFrame:
    return pl.DataFrame(schema=schema)


def with_date_columns(df: pl.DataFrame, columns: Iterable[str]) -> pl.DataFrame:
    """Cast datetime/string date columns to pl.Date, leaving Date columns untouched."""
    casts = []
    for col in columns:
        dtype = df.schema[col]
        if dtype == pl.Date:
            continue
        if dtype == pl.Utf8:
            casts.append(pl.col(col).str.to_date(strict=False))
        else:
            casts.append(pl.col(col).cast(pl.Date))
    return df.with_columns(casts) if casts else df
