"""
NmaStageProcessor - Base class for table-in / table-out NMA stages.

A stage reads its input tables from the run's TableStore, runs a pure polars
transform on a worker thread and fully replaces each of its output tables.
Re-running a stage on unchanged inputs rewrites identical outputs.

Usage:
    class MyStage(NmaStageProcessor):
        stage_name = "my_stage"
        input_tables = {TableName.ENTITY_MAPPINGS: ENTITY_MAPPING_COLUMNS}
        output_tables = [TableName.FINAL_SEGMENTS]

        def transform(self, inputs, step_config, context):
            return {TableName.FINAL_SEGMENTS: ...}
"""

import asyncio
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Tuple

import polars as pl

from nma_pipeline.app.config import get_settings
from nma_pipeline.core.constants import TableName
from nma_pipeline.core.engine import TableStore, get_table_store
from nma_pipeline.core.exceptions import NmaPipelineException, TransientError
from nma_pipeline.core.hierarchy.schemas import require_columns
from nma_pipeline.core.processors.protocol import ProcessorResult
from nma_pipeline.core.utils.logging import create_structured_logger


class NmaStageProcessor:
    """
    Base processor for NMA stages.

    Subclasses declare their logical input tables (with required columns)
    and output tables, and implement transform().
    """

    stage_name: str = "stage"
    input_tables: Dict[TableName, Iterable[str]] = {}
    output_tables: List[TableName] = []

    def __init__(self):
        self.settings = get_settings()
        self.logger = create_structured_logger(type(self).__module__)

    def transform(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[TableName, pl.DataFrame]:
        raise NotImplementedError

    def describe(
        self,
        inputs: Dict[TableName, pl.DataFrame],
        outputs: Dict[TableName, pl.DataFrame],
        step_config: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Extra fields for the step result. Nothing by default."""
        return {}

    def processing_window(self, context: Dict[str, Any]) -> Tuple[date, date]:
        """Window from the run context, falling back to settings."""
        start = context.get("window_start") or self.settings.processing_start_date
        end = context.get("window_end") or self.settings.processing_end_date
        if isinstance(start, str):
            start = date.fromisoformat(start)
        if isinstance(end, str):
            end = date.fromisoformat(end)
        return start, end

    @staticmethod
    def resolve_table(overrides: Optional[Dict[str, str]], table: TableName) -> str:
        """Physical table name for a logical table, honoring step overrides."""
        return (overrides or {}).get(table.value, table.value)

    async def execute(
        self,
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Run the stage.

        Transient storage errors propagate so the executor can retry the
        stage; every other error is reported as a FAILED result.
        """
        store: TableStore = context.get("table_store") or get_table_store()
        logger = self.logger.bind(
            pipeline_id=context.get("pipeline_id"),
            pipeline_logging_id=context.get("pipeline_logging_id"),
            step_id=context.get("step_id", self.stage_name),
        )

        loop = asyncio.get_running_loop()
        try:
            written, metadata = await loop.run_in_executor(
                context.get("executor"),
                self._run_sync,
                store,
                step_config,
                context
            )
        except TransientError as e:
            logger.warning(
                f"Stage {self.stage_name} hit a transient error",
                error_code=e.error_code.value,
                error_message=e.message
            )
            raise
        except NmaPipelineException as e:
            logger.error(
                f"Stage {self.stage_name} failed",
                error_code=e.error_code.value,
                error_message=e.message
            )
            return ProcessorResult.failed(
                error=e.message,
                error_code=e.error_code.value,
                error_type=type(e).__name__
            ).to_dict()
        except Exception as e:
            logger.safe_error(f"Stage {self.stage_name} failed", e)
            return ProcessorResult.failed(error=str(e), error_type=type(e).__name__).to_dict()

        rows = sum(written.values())
        logger.info(f"Stage {self.stage_name} completed", rows_processed=rows, tables=written)
        return ProcessorResult.success(rows_processed=rows, tables_written=written, **metadata).to_dict()

    def _run_sync(
        self,
        store: TableStore,
        step_config: Dict[str, Any],
        context: Dict[str, Any]
    ) -> Tuple[Dict[str, int], Dict[str, Any]]:
        input_overrides = step_config.get("inputs")
        output_overrides = step_config.get("outputs")

        inputs = {}
        for table, columns in self.input_tables.items():
            name = self.resolve_table(input_overrides, table)
            df = store.read(name)
            require_columns(df, name, columns)
            inputs[table] = df

        outputs = self.transform(inputs, step_config, context)

        abandoned = context.get("abandoned")
        written = {}
        for table in self.output_tables:
            name = self.resolve_table(output_overrides, table)
            if abandoned is not None and abandoned.is_set():
                self.logger.warning(
                    f"Stage {self.stage_name} timed out; skipping remaining writes",
                    step_id=context.get("step_id"),
                    skipped_table=name
                )
                break
            written[name] = store.write(name, outputs[table])
        return written, self.describe(inputs, outputs, step_config)
