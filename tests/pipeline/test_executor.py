"""
AsyncPipelineExecutor tests: DAG levels, end-to-end runs, retries and failures.
"""

import sys
import types
from datetime import date

import polars as pl
import pytest
from polars.testing import assert_frame_equal

from nma_pipeline.core.constants import INTERMEDIATE_TABLES, PipelineRunStatus, TableName
from nma_pipeline.core.engine import InMemoryTableStore
from nma_pipeline.core.exceptions import ErrorCode, StorageUnavailableError
from nma_pipeline.core.observability import write_metrics
from nma_pipeline.core.pipeline.executor import AsyncPipelineExecutor


class FlakyTableStore(InMemoryTableStore):
    """Fails the first write of each listed table with a transient error."""

    def __init__(self, tables, flaky_tables):
        super().__init__(tables)
        self.pending_failures = set(flaky_tables)
        self.write_attempts = {}

    def write(self, name, df):
        self.write_attempts[name] = self.write_attempts.get(name, 0) + 1
        if name in self.pending_failures:
            self.pending_failures.discard(name)
            raise StorageUnavailableError(context={"table": name})
        return super().write(name, df)


def _steps_by_id(summary):
    return {step["step_id"]: step for step in summary["steps"]}


class TestDag:

    def test_steps_are_sequential_by_default(self):
        executor = AsyncPipelineExecutor(pipeline_id="test", table_store=InMemoryTableStore())
        executor._build_dag([
            {"step_id": "step_1"},
            {"step_id": "step_2"},
            {"step_id": "step_3"},
        ])

        assert executor.step_dag["step_2"].dependencies == {"step_1"}
        assert executor._get_execution_levels() == [["step_1"], ["step_2"], ["step_3"]]

    def test_explicit_dependencies_share_a_level(self):
        executor = AsyncPipelineExecutor(pipeline_id="test", table_store=InMemoryTableStore())
        executor._build_dag([
            {"step_id": "root"},
            {"step_id": "left", "depends_on": ["root"]},
            {"step_id": "right", "depends_on": ["root"]},
            {"step_id": "join", "depends_on": ["left", "right"]},
        ])

        assert executor._get_execution_levels() == [["root"], ["left", "right"], ["join"]]
        assert executor.step_dag["root"].dependents == {"left", "right"}

    def test_unknown_dependency(self):
        executor = AsyncPipelineExecutor(pipeline_id="test", table_store=InMemoryTableStore())

        with pytest.raises(ValueError):
            executor._build_dag([{"step_id": "a", "depends_on": ["ghost"]}])


class TestPipelineRun:

    @pytest.mark.asyncio
    async def test_end_to_end(self, table_store):
        executor = AsyncPipelineExecutor(table_store=table_store)

        summary = await executor.execute()

        assert summary["status"] == PipelineRunStatus.COMPLETED.value
        assert [step["status"] for step in summary["steps"]] == ["COMPLETED"] * 6

        changes = table_store.read(TableName.NMA_CHANGES.value)
        assert changes.select(
            "manager_account_id", "entity_id", "effective_start_date", "effective_end_date", "root_pn_mngr_flg"
        ).rows() == [
            ("CHILD", "E1", date(2024, 7, 1), date(2099, 12, 31), 1),
            ("GRP1", "E3", date(2024, 1, 1), date(2024, 12, 31), 1),
            ("MGR_A", "E2", date(2024, 3, 1), date(2024, 12, 31), 0),
            ("P1", "E3", date(2024, 1, 1), date(2024, 12, 31), 1),
            ("ROOT", "E1", date(2024, 1, 1), date(2024, 6, 30), 1),
        ]

        hierarchy = table_store.read(TableName.NMA_HIERARCHY.value)
        assert hierarchy.height == 2
        assert hierarchy.get_column("level").max() == 1

        dq_report = summary["data_quality"]
        assert dq_report["healthy"] is True
        assert dq_report["score"] == 100.0

        metrics = summary["run_metrics"]
        assert metrics["total_records"] == 5
        assert metrics["unique_manager_accounts"] == 5
        assert metrics["root_pn_managers"] == 4
        assert metrics["isolated_group_accounts"] == 1
        assert metrics["processing_time_seconds"] > 0

    @pytest.mark.asyncio
    async def test_intermediate_tables_are_dropped(self, table_store):
        summary = await AsyncPipelineExecutor(table_store=table_store).execute()

        assert sorted(summary["cleaned_tables"]) == sorted(INTERMEDIATE_TABLES)
        for table in INTERMEDIATE_TABLES:
            assert not table_store.exists(table)
        assert table_store.exists(TableName.NMA_CHANGES.value)

    @pytest.mark.asyncio
    async def test_save_intermediate_keeps_tables(self, table_store):
        summary = await AsyncPipelineExecutor(table_store=table_store, save_intermediate=True).execute()

        assert summary["cleaned_tables"] == []
        for table in INTERMEDIATE_TABLES:
            assert table_store.exists(table)

    @pytest.mark.asyncio
    async def test_rerun_is_idempotent(self, table_store):
        await AsyncPipelineExecutor(table_store=table_store).execute()
        first_changes = table_store.read(TableName.NMA_CHANGES.value)
        first_hierarchy = table_store.read(TableName.NMA_HIERARCHY.value)

        await AsyncPipelineExecutor(table_store=table_store).execute()

        assert_frame_equal(table_store.read(TableName.NMA_CHANGES.value), first_changes)
        assert_frame_equal(table_store.read(TableName.NMA_HIERARCHY.value), first_hierarchy)

    @pytest.mark.asyncio
    async def test_processing_window_filters_mappings(self, table_store):
        executor = AsyncPipelineExecutor(
            table_store=table_store,
            window_start=date(2024, 1, 1),
            window_end=date(2024, 12, 31)
        )

        summary = await executor.execute()

        assert summary["status"] == PipelineRunStatus.COMPLETED.value
        changes = table_store.read(TableName.NMA_CHANGES.value)
        # The CHILD mapping runs to the open end and falls outside the window
        assert "E1" not in changes.get_column("entity_id").to_list()


class TestRetries:

    @pytest.mark.asyncio
    async def test_transient_write_failure_is_retried(self, pipeline_inputs):
        store = FlakyTableStore(pipeline_inputs, [TableName.RESOLVED_RELATIONSHIPS.value])

        summary = await AsyncPipelineExecutor(table_store=store).execute()

        assert summary["status"] == PipelineRunStatus.COMPLETED.value
        steps = _steps_by_id(summary)
        assert steps["normalize_relationships"]["attempts"] == 2
        assert steps["build_hierarchy"]["attempts"] == 1
        assert store.write_attempts[TableName.RESOLVED_RELATIONSHIPS.value] == 2

    @pytest.mark.asyncio
    async def test_retries_are_bounded(self, pipeline_inputs):
        class AlwaysDown(InMemoryTableStore):
            def write(self, name, df):
                raise StorageUnavailableError(context={"table": name})

        summary = await AsyncPipelineExecutor(table_store=AlwaysDown(pipeline_inputs), max_retries=2).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        steps = _steps_by_id(summary)
        assert steps["normalize_relationships"]["attempts"] == 2
        assert "build_hierarchy" not in steps
        assert summary["error"]["error"] == ErrorCode.STORAGE_UNAVAILABLE.value

    @pytest.mark.asyncio
    async def test_permanent_failure_is_not_retried(self, pipeline_inputs):
        del pipeline_inputs[TableName.ENTITY_TYPES.value]
        store = InMemoryTableStore(pipeline_inputs)

        summary = await AsyncPipelineExecutor(table_store=store).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        steps = _steps_by_id(summary)
        assert steps["build_hierarchy"]["status"] == "FAILED"
        assert steps["build_hierarchy"]["attempts"] == 1
        assert summary["error"]["error"] == ErrorCode.STAGE_FAILED.value
        assert summary["error"]["context"]["error_code"] == ErrorCode.TABLE_NOT_FOUND.value
        assert summary["data_quality"] is None
        # Nothing is cleaned up after a failed run
        assert store.exists(TableName.RESOLVED_RELATIONSHIPS.value)


class TestConfigFailures:

    @pytest.mark.asyncio
    async def test_unknown_pipeline(self, table_store):
        summary = await AsyncPipelineExecutor(pipeline_id="no_such_pipeline", table_store=table_store).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        assert summary["error"]["error"] == ErrorCode.INVALID_CONFIG.value
        assert summary["steps"] == []

    @pytest.mark.asyncio
    async def test_unknown_processor(self, table_store, tmp_path):
        from nma_pipeline.core.pipeline.config_loader import ConfigLoader

        (tmp_path / "bad_processor.yml").write_text(
            "pipeline_id: bad_processor\n"
            "steps:\n"
            "  - step_id: mystery\n"
            "    ps_type: nma.does_not_exist\n"
        )

        summary = await AsyncPipelineExecutor(
            pipeline_id="bad_processor",
            table_store=table_store,
            config_loader=ConfigLoader(str(tmp_path))
        ).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        assert summary["error"]["error"] == ErrorCode.PROCESSOR_NOT_FOUND.value
        assert _steps_by_id(summary)["mystery"]["attempts"] == 1


@pytest.mark.asyncio
async def test_empty_mappings_produce_empty_output(pipeline_inputs):
    pipeline_inputs[TableName.ENTITY_MAPPINGS.value] = pipeline_inputs[TableName.ENTITY_MAPPINGS.value].clear()
    store = InMemoryTableStore(pipeline_inputs)

    summary = await AsyncPipelineExecutor(table_store=store).execute()

    assert summary["status"] == PipelineRunStatus.COMPLETED.value
    changes = store.read(TableName.NMA_CHANGES.value)
    assert changes.height == 0
    assert isinstance(changes, pl.DataFrame)
    assert summary["run_metrics"]["total_records"] == 0


def _diamond_inputs(build, reverse=False):
    """A governs B and C, which both govern D; A is PN registered."""
    relationships = [
        ("A", "B", "2024-01-01T08:00:00", None, "N"),
        ("A", "C", "2024-01-01T08:00:00", None, "N"),
        ("B", "D", "2024-01-01T08:00:00", "2024-06-30T08:00:00", "Y"),
        ("C", "D", "2024-03-01T08:00:00", None, "N"),
    ]
    if reverse:
        relationships.reverse()
    return {
        TableName.GLOBAL_ENTITY_RELATIONSHIPS.value: build.relationships(relationships),
        TableName.PARTNER_ACCOUNTS.value: build.pn_partners("A"),
        TableName.GROUP_MIGRATION_FLAGS.value: build.migration_flags([]),
        TableName.ENTITY_TYPES.value: build.entity_types([(account, "Advertiser") for account in "ABCD"]),
        TableName.ENTITY_MAPPINGS.value: build.mappings([
            ("D", "E9", "2024-01-01", "2024-12-31", "PN", "ADV9"),
        ]),
    }


class TestMultiParentReruns:

    @pytest.mark.asyncio
    @pytest.mark.filterwarnings("error:.*is_in:DeprecationWarning")
    async def test_reruns_publish_identical_tables(self, build):
        store = InMemoryTableStore(_diamond_inputs(build))
        reversed_store = InMemoryTableStore(_diamond_inputs(build, reverse=True))

        first = await AsyncPipelineExecutor(table_store=store).execute()
        first_hierarchy = store.read(TableName.NMA_HIERARCHY.value)
        first_changes = store.read(TableName.NMA_CHANGES.value)
        second = await AsyncPipelineExecutor(table_store=store).execute()
        await AsyncPipelineExecutor(table_store=reversed_store).execute()

        assert first["status"] == second["status"] == PipelineRunStatus.COMPLETED.value
        for other in (store, reversed_store):
            assert_frame_equal(other.read(TableName.NMA_HIERARCHY.value), first_hierarchy)
            assert_frame_equal(other.read(TableName.NMA_CHANGES.value), first_changes)

        via_a = first_hierarchy.filter(
            (pl.col("root_manager_account_id") == "A") & (pl.col("chld_manager_account_id") == "D")
        )
        assert via_a.get_column("prnt_manager_account_id").to_list() == ["B", "C"]


class TestProcessorContract:

    @staticmethod
    def _loader(tmp_path, ps_type):
        from nma_pipeline.core.pipeline.config_loader import ConfigLoader

        (tmp_path / "contract.yml").write_text(
            "pipeline_id: contract\n"
            "steps:\n"
            "  - step_id: only_step\n"
            f"    ps_type: {ps_type}\n"
        )
        return ConfigLoader(str(tmp_path))

    @staticmethod
    def _install(monkeypatch, module_name, engine):
        module = types.ModuleType(module_name)
        module.get_engine = lambda: engine
        monkeypatch.setitem(sys.modules, f"nma_pipeline.core.processors.{module_name}", module)

    @pytest.mark.asyncio
    async def test_engine_without_execute(self, table_store, tmp_path, monkeypatch):
        self._install(monkeypatch, "nma.no_execute", object())

        summary = await AsyncPipelineExecutor(
            pipeline_id="contract",
            table_store=table_store,
            config_loader=self._loader(tmp_path, "nma.no_execute")
        ).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        assert summary["error"]["error"] == ErrorCode.PROCESSOR_NOT_FOUND.value

    @pytest.mark.asyncio
    async def test_malformed_result(self, table_store, tmp_path, monkeypatch):
        class NoStatus:
            async def execute(self, step_config, context):
                return {"rows_processed": 3}

        self._install(monkeypatch, "nma.no_status", NoStatus())

        summary = await AsyncPipelineExecutor(
            pipeline_id="contract",
            table_store=table_store,
            config_loader=self._loader(tmp_path, "nma.no_status")
        ).execute()

        assert summary["status"] == PipelineRunStatus.FAILED.value
        assert summary["error"]["error"] == ErrorCode.STAGE_FAILED.value
        assert summary["error"]["context"]["result_keys"] == ["rows_processed"]
        assert _steps_by_id(summary)["only_step"]["attempts"] == 1


@pytest.mark.asyncio
async def test_metrics_textfile(table_store, tmp_path):
    await AsyncPipelineExecutor(pipeline_id="nested_manager_accounts", table_store=table_store).execute()
    path = tmp_path / "nma.prom"

    write_metrics(str(path))

    exported = path.read_text()
    assert 'nma_pipeline_executions_total{pipeline_id="nested_manager_accounts",status="COMPLETED"}' in exported
    assert "nma_data_quality_score" in exported
