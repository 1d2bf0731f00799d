"""
Root conftest.py - Sets environment variables before any module imports.

This file is loaded by pytest before any test modules, ensuring environment
variables are set before the settings module is imported.
"""

import os
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

REPO_ROOT = Path(__file__).resolve().parent.parent

# ============================================
# Environment Configuration
# ============================================
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("LOG_LEVEL", "INFO")
os.environ.setdefault("PIPELINES_CONFIG_PATH", str(REPO_ROOT / "configs" / "pipelines"))
os.environ.setdefault("RETRY_BACKOFF_MIN_SECONDS", "0")
os.environ.setdefault("RETRY_BACKOFF_MAX_SECONDS", "0")
os.environ.setdefault("MAX_RETRIES", "3")

import polars as pl  # noqa: E402
import pytest  # noqa: E402

from nma_pipeline.core.constants import OPEN_END_DATE, TableName  # noqa: E402
from nma_pipeline.core.engine import InMemoryTableStore  # noqa: E402
from nma_pipeline.core.hierarchy.schemas import (  # noqa: E402
    CANDIDATE_SCHEMA,
    ENTITY_MAPPING_SCHEMA,
    HIERARCHY_EDGE_SCHEMA,
)

RAW_RELATIONSHIP_SCHEMA = {
    "entity_id_one": pl.Utf8,
    "entity_id_two": pl.Utf8,
    "created_at": pl.Datetime("us"),
    "updated_at": pl.Datetime("us"),
    "delete_flag": pl.Utf8,
}

PARTNER_ACCOUNT_SCHEMA = {
    "partner_account_id": pl.Utf8,
    "group_account_id": pl.Utf8,
    "is_registration_approved": pl.Utf8,
    "is_external_partner_account": pl.Utf8,
    "is_disabled": pl.Utf8,
}


def d(value: str) -> date:
    """ISO string to date."""
    return date.fromisoformat(value)


class FrameBuilder:
    """Small polars frame builders for the input and intermediate tables."""

    @staticmethod
    def relationships(rows: Iterable[tuple]) -> pl.DataFrame:
        """
        rows: (entity_id_one, entity_id_two, created_at, updated_at, delete_flag)
        with ISO datetime strings.
        """
        parsed = [
            (one, two, datetime.fromisoformat(created), datetime.fromisoformat(updated) if updated else None, flag)
            for one, two, created, updated, flag in rows
        ]
        return pl.DataFrame(parsed, schema=RAW_RELATIONSHIP_SCHEMA, orient="row")

    @staticmethod
    def partners(rows: Iterable[tuple]) -> pl.DataFrame:
        """rows: (partner_account_id, group_account_id, approved, external, disabled)"""
        return pl.DataFrame(list(rows), schema=PARTNER_ACCOUNT_SCHEMA, orient="row")

    @staticmethod
    def pn_partners(*account_ids: str) -> pl.DataFrame:
        return FrameBuilder.partners((account_id, None, "Y", "Y", "N") for account_id in account_ids)

    @staticmethod
    def migration_flags(rows: Iterable[tuple]) -> pl.DataFrame:
        return pl.DataFrame(
            list(rows),
            schema={"group_account_id": pl.Utf8, "migration_flag": pl.Utf8},
            orient="row",
        )

    @staticmethod
    def entity_types(rows: Iterable[tuple]) -> pl.DataFrame:
        return pl.DataFrame(
            list(rows),
            schema={"entity_id": pl.Utf8, "entity_type": pl.Utf8},
            orient="row",
        )

    @staticmethod
    def mappings(rows: Iterable[tuple]) -> pl.DataFrame:
        """rows: (manager, entity, start, end, source, advertiser); marketplace 1, linked Y."""
        return pl.DataFrame(
            [
                (manager, entity, 1, d(start), d(end), source, advertiser, "Y")
                for manager, entity, start, end, source, advertiser in rows
            ],
            schema=ENTITY_MAPPING_SCHEMA,
            orient="row",
        )

    @staticmethod
    def hierarchy_edges(rows: Iterable[tuple]) -> pl.DataFrame:
        """rows: (child, parent, start, end); plain advertiser types, no agency edges."""
        return pl.DataFrame(
            [
                (child, parent, d(start), d(end), d(end), "Y", 0, "advertiser", "advertiser", 1)
                for child, parent, start, end in rows
            ],
            schema=HIERARCHY_EDGE_SCHEMA,
            orient="row",
        )

    @staticmethod
    def candidate(
        manager: str,
        entity: str,
        start: str,
        end: str,
        source: str = "PN",
        root_pn: int = 1,
        level: int = 0,
        child: Optional[str] = None,
        channel: str = "standalone",
        marketplace: int = 1,
    ) -> Dict[str, Any]:
        child = child or manager
        return {
            "manager_account_id": manager,
            "entity_id": entity,
            "marketplace_id": marketplace,
            "effective_start_date": d(start),
            "effective_end_date": d(end),
            "source": source,
            "chld_manager_account_id": child,
            "path": manager if child == manager else f"{manager}/{child}",
            "level": level,
            "root_mngr_flg": 1,
            "root_pn_mngr_flg": root_pn,
            "nma_change_flg": 0,
            "is_linked": "Y",
            "advertiser_id": f"ADV-{entity}",
            "channel": channel,
        }

    @staticmethod
    def candidates(rows: Iterable[Dict[str, Any]]) -> pl.DataFrame:
        return pl.DataFrame(list(rows), schema=CANDIDATE_SCHEMA)


@pytest.fixture
def build() -> type:
    """Frame builder helpers."""
    return FrameBuilder


@pytest.fixture
def open_end() -> date:
    return OPEN_END_DATE


@pytest.fixture
def pipeline_inputs() -> Dict[str, pl.DataFrame]:
    """
    Input tables for a small end-to-end run:
    - ROOT governs CHILD during the first half of 2024, both PN registered
    - MGR_A (not PN) governs MGR_B from February 2024 onwards
    - GRP1 is a migrated PN group with member P1 and no relationship edges
    """
    b = FrameBuilder
    return {
        TableName.GLOBAL_ENTITY_RELATIONSHIPS.value: b.relationships([
            ("ROOT", "CHILD", "2024-01-01T08:00:00", "2024-06-30T17:00:00", "Y"),
            ("MGR_A", "MGR_B", "2024-02-01T09:00:00", "2024-02-01T09:00:00", "N"),
        ]),
        TableName.PARTNER_ACCOUNTS.value: b.partners([
            ("ROOT", None, "Y", "Y", "N"),
            ("CHILD", None, "Y", "Y", "N"),
            ("MGR_A", None, "N", "Y", "N"),
            ("P1", "GRP1", "Y", "Y", "N"),
        ]),
        TableName.GROUP_MIGRATION_FLAGS.value: b.migration_flags([("GRP1", "Y")]),
        TableName.ENTITY_TYPES.value: b.entity_types([
            ("ROOT", "Advertiser"),
            ("CHILD", "Advertiser"),
            ("MGR_A", "Advertiser"),
            ("MGR_B", "Advertiser"),
        ]),
        TableName.ENTITY_MAPPINGS.value: b.mappings([
            ("CHILD", "E1", "2024-01-01", "2099-12-31", "PN", "ADV1"),
            ("MGR_B", "E2", "2024-03-01", "2024-12-31", "API", "ADV2"),
            ("P1", "E3", "2024-01-01", "2024-12-31", "PN", "ADV3"),
        ]),
    }


@pytest.fixture
def table_store(pipeline_inputs) -> InMemoryTableStore:
    """In-memory store seeded with the end-to-end input tables."""
    return InMemoryTableStore(pipeline_inputs)
