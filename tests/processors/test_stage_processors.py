"""
Stage processor tests: table I/O, result dicts and error propagation.
"""

import threading

import polars as pl
import pytest

from nma_pipeline.core.constants import ProcessorStatus, TableName
from nma_pipeline.core.engine import InMemoryTableStore
from nma_pipeline.core.exceptions import ErrorCode, StorageUnavailableError
from nma_pipeline.core.hierarchy.closure import build_hierarchy_closure
from nma_pipeline.core.processors.nma import (
    build_hierarchy,
    consolidate,
    data_quality,
    normalize_relationships,
)
from nma_pipeline.core.processors.protocol import (
    ProcessorResult,
    is_valid_processor,
    validate_processor_result,
)


def _context(store, **extra):
    return {"table_store": store, "pipeline_id": "test", "step_id": "step", **extra}


def test_every_stage_module_exposes_an_engine():
    from nma_pipeline.core.processors.nma import merge_channels, temporal_segments

    for module in (normalize_relationships, build_hierarchy, temporal_segments,
                   merge_channels, consolidate, data_quality):
        assert is_valid_processor(module.get_engine())


class TestNormalizeRelationshipsStage:

    @pytest.mark.asyncio
    async def test_writes_resolved_and_isolated_tables(self, table_store):
        engine = normalize_relationships.get_engine()

        result = await engine.execute({}, _context(table_store))

        assert validate_processor_result(result)
        assert result["status"] == ProcessorStatus.SUCCESS.value
        assert result["tables_written"] == {
            TableName.RESOLVED_RELATIONSHIPS.value: 2,
            TableName.ISOLATED_GROUP_ACCOUNTS.value: 1,
        }
        assert result["rows_processed"] == 3

    @pytest.mark.asyncio
    async def test_output_override(self, table_store):
        engine = normalize_relationships.get_engine()
        step_config = {"outputs": {TableName.RESOLVED_RELATIONSHIPS.value: "resolved_v2"}}

        result = await engine.execute(step_config, _context(table_store))

        assert "resolved_v2" in result["tables_written"]
        assert table_store.exists("resolved_v2")
        assert not table_store.exists(TableName.RESOLVED_RELATIONSHIPS.value)

    @pytest.mark.asyncio
    async def test_id_marker_from_step_config(self, table_store):
        engine = normalize_relationships.get_engine()

        await engine.execute({"config": {"manager_account_id_marker": "MGR_"}}, _context(table_store))

        resolved = table_store.read(TableName.RESOLVED_RELATIONSHIPS.value)
        assert resolved.get_column("manager_account_id").to_list() == ["MGR_A"]

    @pytest.mark.asyncio
    async def test_missing_columns_fail_the_stage(self, pipeline_inputs):
        pipeline_inputs[TableName.GROUP_MIGRATION_FLAGS.value] = pl.DataFrame({"group_account_id": ["G"]})
        store = InMemoryTableStore(pipeline_inputs)

        result = await normalize_relationships.get_engine().execute({}, _context(store))

        assert result["status"] == ProcessorStatus.FAILED.value
        assert result["error_code"] == ErrorCode.INVALID_SCHEMA.value
        assert "migration_flag" in result["error"]

    @pytest.mark.asyncio
    async def test_abandoned_attempt_skips_writes(self, table_store):
        abandoned = threading.Event()
        abandoned.set()

        result = await normalize_relationships.get_engine().execute(
            {}, _context(table_store, abandoned=abandoned)
        )

        assert result["tables_written"] == {}
        assert not table_store.exists(TableName.RESOLVED_RELATIONSHIPS.value)
        assert not table_store.exists(TableName.ISOLATED_GROUP_ACCOUNTS.value)

    @pytest.mark.asyncio
    async def test_transient_errors_propagate(self, pipeline_inputs):
        class ReadFails(InMemoryTableStore):
            def read(self, name):
                raise StorageUnavailableError(context={"table": name})

        with pytest.raises(StorageUnavailableError):
            await normalize_relationships.get_engine().execute({}, _context(ReadFails(pipeline_inputs)))


class TestBuildHierarchyStage:

    @pytest.mark.asyncio
    async def test_publishes_hierarchy_table(self, table_store):
        await normalize_relationships.get_engine().execute({}, _context(table_store))

        result = await build_hierarchy.get_engine().execute({}, _context(table_store))

        assert result["status"] == ProcessorStatus.SUCCESS.value
        assert result["max_hierarchy_depth"] == 1
        hierarchy = table_store.read(TableName.NMA_HIERARCHY.value)
        assert {"root_mngr_flg", "root_pn_mngr_flg", "pn_manager_flag", "root_comparison"} <= set(hierarchy.columns)
        root_row = hierarchy.filter(pl.col("root_manager_account_id") == "ROOT").row(0, named=True)
        assert root_row["root_pn_mngr_flg"] == 1
        assert root_row["pn_manager_flag"] == "Y"

    @pytest.mark.asyncio
    async def test_invalid_depth_config_fails(self, table_store):
        await normalize_relationships.get_engine().execute({}, _context(table_store))

        result = await build_hierarchy.get_engine().execute(
            {"config": {"max_hierarchy_levels": 20}}, _context(table_store)
        )

        assert result["status"] == ProcessorStatus.FAILED.value
        assert result["error_code"] == ErrorCode.INVALID_CONFIG.value


class TestConsolidateStage:

    @pytest.mark.asyncio
    async def test_source_priority_override(self, build):
        candidates = build.candidates([
            build.candidate("M", "E1", "2024-01-01", "2024-12-31", source="API"),
            build.candidate("M", "E1", "2024-01-01", "2024-12-31", source="PN"),
        ])
        store = InMemoryTableStore({TableName.NMA_CANDIDATES.value: candidates})

        await consolidate.get_engine().execute(
            {"config": {"source_priority": {"api": 1, "pn": 2}}}, _context(store)
        )

        assert store.read(TableName.NMA_CHANGES.value).get_column("source").to_list() == ["API"]


class TestDataQualityStage:

    @pytest.mark.asyncio
    async def test_reports_without_writing(self, build):
        changes = build.candidates([
            build.candidate("M", "E1", "2024-01-01", "2024-06-30"),
        ]).drop("channel", "nma_change_flg")
        store = InMemoryTableStore({
            TableName.NMA_CHANGES.value: changes,
            TableName.NMA_HIERARCHY.value: pl.DataFrame({
                "chld_manager_account_id": ["B"],
                "prnt_manager_account_id": ["A"],
                "level": [1],
                "root_manager_account_id": ["A"],
                "hier_start_date": changes.get_column("effective_start_date"),
                "hier_end_date": changes.get_column("effective_end_date"),
                "path": [["A"]],
                "nma_change_flg": [1],
                "chld_mngr_acnt_type": [None],
                "prnt_mngr_acnt_type": [None],
                "is_linked": ["Y"],
                "marketplace_id": [0],
            }),
            TableName.ISOLATED_GROUP_ACCOUNTS.value: pl.DataFrame({"group_account_id": ["G1", "G2"]}),
        })
        tables_before = store.list_tables()

        result = await data_quality.get_engine().execute({}, _context(store))

        assert result["rows_processed"] == 0
        assert result["data_quality"]["healthy"] is True
        assert result["run_metrics"]["root_pn_managers"] == 1
        assert result["run_metrics"]["isolated_group_accounts"] == 2
        assert store.list_tables() == tables_before

    @pytest.mark.asyncio
    async def test_unhealthy_report_fails_when_blocking(self, build):
        changes = build.candidates([
            build.candidate("M", "E1", "2024-01-01", "2024-06-30"),
            build.candidate("M", "E1", "2024-03-01", "2024-09-30", source="API"),
        ]).drop("channel", "nma_change_flg")
        store = InMemoryTableStore({
            TableName.NMA_CHANGES.value: changes,
            TableName.NMA_HIERARCHY.value: build_hierarchy_closure(build.hierarchy_edges([])),
            TableName.ISOLATED_GROUP_ACCOUNTS.value: pl.DataFrame(schema={"group_account_id": pl.Utf8}),
        })
        engine = data_quality.get_engine()

        reported = await engine.execute({}, _context(store))
        blocked = await engine.execute({"config": {"fail_on_unhealthy": True}}, _context(store))

        assert reported["status"] == ProcessorStatus.SUCCESS.value
        assert reported["data_quality"]["healthy"] is False
        assert blocked["status"] == ProcessorStatus.FAILED.value
        assert blocked["error_code"] == ErrorCode.DATA_QUALITY_FAILED.value
        assert blocked["error_type"] == "DataQualityError"
        assert "expect_no_overlapping_segments" in blocked["error"]


def test_processor_result_dict():
    failed = ProcessorResult.failed("boom", error_code="STAGE_FAILED", error_type="RuntimeError").to_dict()

    assert failed == {
        "status": ProcessorStatus.FAILED.value,
        "rows_processed": 0,
        "error": "boom",
        "error_code": "STAGE_FAILED",
        "error_type": "RuntimeError",
    }
    assert not validate_processor_result({"status": "MAYBE"})
