"""
Async Pipeline Executor
Runs the NMA stages as a DAG with per-step timeouts and transient-error retries.
"""

import asyncio
import atexit
import importlib
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Set

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from nma_pipeline.app.config import settings
from nma_pipeline.core.constants import (
    INTERMEDIATE_TABLES,
    PipelineRunStatus,
    ProcessorStatus,
)
from nma_pipeline.core.engine import TableStore, get_table_store
from nma_pipeline.core.exceptions import (
    ErrorCode,
    NmaPipelineException,
    PermanentError,
    StageFailedError,
)
from nma_pipeline.core.observability.metrics import (
    increment_pipeline_execution,
    increment_step_retry,
    observe_pipeline_duration,
    record_step_execution,
    set_data_quality_score,
    set_table_rows,
)
from nma_pipeline.core.pipeline.config_loader import ConfigLoader, get_config_loader
from nma_pipeline.core.pipeline.models import NmaRunMetrics
from nma_pipeline.core.processors.protocol import is_valid_processor, validate_processor_result
from nma_pipeline.core.utils.error_classifier import (
    create_error_context,
    format_error_for_logging,
    is_retryable_exception,
)
from nma_pipeline.core.utils.logging import create_structured_logger

# ============================================
# Shared Thread Pool for Blocking Stage Work
# ============================================
STAGE_EXECUTOR = ThreadPoolExecutor(
    max_workers=settings.pipeline_max_parallel_steps,
    thread_name_prefix="nma_stage"
)


def _shutdown_stage_executor():
    """Shutdown thread pool on application exit."""
    STAGE_EXECUTOR.shutdown(wait=True)


atexit.register(_shutdown_stage_executor)


# ============================================
# Global Pipeline Concurrency Semaphore
# ============================================
_GLOBAL_PIPELINE_SEMAPHORE: Optional[asyncio.Semaphore] = None


def get_global_pipeline_semaphore() -> asyncio.Semaphore:
    """
    Get or create the global pipeline concurrency semaphore.

    Uses lazy initialization so the semaphore is created inside the running
    event loop.
    """
    global _GLOBAL_PIPELINE_SEMAPHORE
    if _GLOBAL_PIPELINE_SEMAPHORE is None:
        _GLOBAL_PIPELINE_SEMAPHORE = asyncio.Semaphore(
            settings.pipeline_global_concurrent_limit
        )
    return _GLOBAL_PIPELINE_SEMAPHORE


class StepNode:
    """Represents a step in the pipeline DAG."""

    def __init__(self, step_config: Dict[str, Any], step_index: int):
        self.step_config = step_config
        self.step_index = step_index
        self.step_id = step_config['step_id']
        self.dependencies: Set[str] = set(step_config.get('depends_on', []))
        self.dependents: Set[str] = set()

    def __repr__(self) -> str:
        return f"StepNode({self.step_id}, deps={self.dependencies})"


class AsyncPipelineExecutor:
    """
    Async pipeline executor with DAG-based step ordering.

    Features:
    - Steps within a DAG level run concurrently
    - Blocking polars and storage work runs on a shared thread pool
    - Step and pipeline timeouts
    - Transient failures retried with exponential backoff
    - Intermediate tables dropped after a successful run
    """

    def __init__(
        self,
        pipeline_id: Optional[str] = None,
        table_store: Optional[TableStore] = None,
        pipeline_logging_id: Optional[str] = None,
        config_loader: Optional[ConfigLoader] = None,
        max_retries: Optional[int] = None,
        save_intermediate: Optional[bool] = None,
        window_start: Optional[date] = None,
        window_end: Optional[date] = None
    ):
        """
        Initialize async pipeline executor.

        Args:
            pipeline_id: Pipeline identifier (matches YAML filename)
            table_store: Store shared by all steps (settings backend if omitted)
            pipeline_logging_id: Pre-generated run ID; a new UUID otherwise
            config_loader: Loader for the pipeline YAML
            max_retries: Attempts per step on transient errors
            save_intermediate: Keep intermediate tables after success
            window_start: Processing window start for entity mappings
            window_end: Processing window end for entity mappings
        """
        self.pipeline_id = pipeline_id or settings.default_pipeline_id
        self.pipeline_logging_id = pipeline_logging_id or str(uuid.uuid4())
        self.table_store = table_store or get_table_store()
        self.config_loader = config_loader or get_config_loader()
        self.max_retries_override = max_retries
        self.save_intermediate = settings.save_intermediate if save_intermediate is None else save_intermediate
        self.window_start = window_start or settings.processing_start_date
        self.window_end = window_end or settings.processing_end_date

        self.logger = create_structured_logger(
            __name__,
            pipeline_id=self.pipeline_id,
            pipeline_logging_id=self.pipeline_logging_id
        )

        self.config: Optional[Dict[str, Any]] = None
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.status: str = PipelineRunStatus.PENDING.value
        self.error: Optional[Dict[str, Any]] = None
        self.step_results: List[Dict[str, Any]] = []
        self.cleaned_tables: List[str] = []

        # DAG for step dependencies
        self.step_dag: Dict[str, StepNode] = {}

        # Step results keyed by step_id
        self._step_execution_results: Dict[str, Dict[str, Any]] = {}

    @property
    def max_retries(self) -> int:
        if self.max_retries_override is not None:
            return self.max_retries_override
        if self.config and self.config.get('retry_attempts'):
            return self.config['retry_attempts']
        return settings.max_retries

    async def load_config(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Load and validate the pipeline YAML, then build the DAG.

        Raises:
            PipelineConfigError: If the config is missing or invalid
        """
        loop = asyncio.get_running_loop()
        validated_config = await loop.run_in_executor(
            STAGE_EXECUTOR,
            self.config_loader.load_pipeline_config,
            self.pipeline_id
        )

        config = validated_config.model_dump()
        if parameters:
            config['parameters'] = {**config.get('parameters', {}), **parameters}

        self.config = config
        self.logger.info(
            "Loaded and validated pipeline config",
            num_steps=len(config.get('steps', [])),
            max_retries=self.max_retries
        )

        self._build_dag(config.get('steps', []))
        return config

    def _build_dag(self, steps: List[Dict[str, Any]]) -> None:
        """
        Build DAG from step configurations.

        Sequential by default: a step without explicit `depends_on` depends on
        the previous step in the list.
        """
        self.step_dag = {}
        step_ids_in_order = []
        for idx, step in enumerate(steps):
            node = StepNode(step, idx)
            self.step_dag[node.step_id] = node
            step_ids_in_order.append(node.step_id)

        for idx, step_id in enumerate(step_ids_in_order):
            node = self.step_dag[step_id]
            if not node.dependencies and idx > 0:
                prev_step_id = step_ids_in_order[idx - 1]
                node.dependencies.add(prev_step_id)
                self.logger.debug(
                    f"Step '{step_id}' has no explicit depends_on, "
                    f"adding implicit dependency on '{prev_step_id}'"
                )

        for step_id, node in self.step_dag.items():
            for dep_id in node.dependencies:
                if dep_id not in self.step_dag:
                    raise ValueError(f"Step {step_id} depends on unknown step {dep_id}")
                self.step_dag[dep_id].dependents.add(step_id)

        self.logger.info(
            f"Built DAG with {len(self.step_dag)} steps",
            steps=list(self.step_dag.keys())
        )

    def _get_execution_levels(self) -> List[List[str]]:
        """
        Get execution levels for parallel processing.

        Returns:
            List of levels, each holding step IDs that can run concurrently
        """
        levels = []
        remaining = set(self.step_dag.keys())
        completed = set()

        while remaining:
            current_level = sorted(
                step_id for step_id in remaining
                if self.step_dag[step_id].dependencies.issubset(completed)
            )

            if not current_level:
                raise ValueError("Circular dependency detected in pipeline DAG")

            levels.append(current_level)
            completed.update(current_level)
            remaining -= set(current_level)

        self.logger.info(f"Execution plan: {len(levels)} levels", levels=levels)
        return levels

    async def execute(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Execute the complete pipeline.

        Uses the global semaphore to cap concurrently running pipelines.

        Args:
            parameters: Runtime parameters merged into the pipeline config

        Returns:
            Execution summary
        """
        async with get_global_pipeline_semaphore():
            return await self._execute_with_semaphore(parameters)

    async def _execute_with_semaphore(self, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.start_time = datetime.now(timezone.utc)
        self.status = PipelineRunStatus.RUNNING.value

        try:
            await self.load_config(parameters)

            timeout_minutes = self.config.get('timeout_minutes', 60)
            await asyncio.wait_for(
                self._execute_pipeline_internal(),
                timeout=timeout_minutes * 60
            )

        except asyncio.TimeoutError:
            self.status = PipelineRunStatus.TIMEOUT.value
            timeout_minutes = self.config.get('timeout_minutes', 60) if self.config else 60
            self.error = {
                "error": "TIMEOUT",
                "message": f"Pipeline execution exceeded {timeout_minutes} minutes",
            }
            self.logger.error(self.error["message"], timeout_minutes=timeout_minutes)

        except NmaPipelineException as e:
            self.status = PipelineRunStatus.FAILED.value
            self.error = e.to_dict()
            self.logger.error(f"Pipeline failed: {e.message}", error_code=e.error_code.value)

        except Exception as e:
            self.status = PipelineRunStatus.FAILED.value
            self.error = create_error_context(e)
            self.logger.safe_error("Pipeline failed", e)

        finally:
            self.end_time = datetime.now(timezone.utc)
            duration_seconds = (self.end_time - self.start_time).total_seconds()
            increment_pipeline_execution(pipeline_id=self.pipeline_id, status=self.status)
            observe_pipeline_duration(
                pipeline_id=self.pipeline_id,
                status=self.status,
                duration_seconds=duration_seconds
            )

        return self._get_execution_summary()

    async def _execute_pipeline_internal(self) -> None:
        """
        Internal pipeline execution logic (wrapped by timeout in execute()).
        """
        execution_levels = self._get_execution_levels()

        for level_idx, level_step_ids in enumerate(execution_levels):
            self.logger.info(
                f"Executing level {level_idx + 1}/{len(execution_levels)}",
                step_count=len(level_step_ids),
                steps=level_step_ids
            )

            step_tasks = [
                self._execute_step_async(
                    self.step_dag[step_id].step_config,
                    self.step_dag[step_id].step_index
                )
                for step_id in level_step_ids
            ]
            results = await asyncio.gather(*step_tasks, return_exceptions=True)

            failed = [
                (step_id, result)
                for step_id, result in zip(level_step_ids, results)
                if isinstance(result, BaseException)
                and self.step_dag[step_id].step_config.get('on_failure') != 'continue'
            ]
            if failed:
                step_id, first_error = failed[0]
                if isinstance(first_error, NmaPipelineException):
                    raise first_error
                raise StageFailedError(
                    step_id=step_id,
                    message=str(first_error),
                    context={"failed_steps": [sid for sid, _ in failed]},
                    original_error=first_error if isinstance(first_error, Exception) else None
                )

        if not self.save_intermediate:
            await self._cleanup_intermediates()

        self.status = PipelineRunStatus.COMPLETED.value
        self.logger.info("Pipeline completed successfully")

    def _log_retry(self, step_id: str):
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            increment_step_retry(pipeline_id=self.pipeline_id, step_id=step_id)
            self.logger.warning(
                f"Retrying step {step_id} after transient error",
                attempt=retry_state.attempt_number,
                max_attempts=self.max_retries,
                error_type=type(error).__name__ if error else None,
                error_message=str(error) if error else None
            )
        return before_sleep

    async def _execute_step_async(self, step_config: Dict[str, Any], step_index: int) -> Dict[str, Any]:
        """
        Execute a single step with timeout and transient-error retries.

        Args:
            step_config: Step configuration from YAML
            step_index: Step position in pipeline (0-indexed)
        """
        step_id = step_config['step_id']
        step_type = step_config.get('ps_type', 'unknown')
        step_timeout_minutes = step_config.get('timeout_minutes', 10)

        self.logger.info(
            f"Starting step: {step_id}",
            step_type=step_type,
            timeout_minutes=step_timeout_minutes
        )

        step_start = datetime.now(timezone.utc)
        step_status = "RUNNING"
        attempts = 0
        result: Dict[str, Any] = {}
        error_message = None

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(
                multiplier=1,
                min=settings.retry_backoff_min_seconds,
                max=settings.retry_backoff_max_seconds
            ),
            retry=retry_if_exception(is_retryable_exception),
            before_sleep=self._log_retry(step_id),
            reraise=True
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    # wait_for cannot stop the worker thread; the flag keeps an
                    # abandoned attempt from writing after its retry has started
                    abandoned = threading.Event()
                    try:
                        result = await asyncio.wait_for(
                            self._execute_step_internal(step_config, step_id, step_type, abandoned),
                            timeout=step_timeout_minutes * 60
                        )
                    except asyncio.TimeoutError:
                        abandoned.set()
                        raise

            if result.get('status', ProcessorStatus.SUCCESS.value) == ProcessorStatus.FAILED.value:
                raise StageFailedError(
                    step_id=step_id,
                    message=result.get('error', 'Unknown error from processor'),
                    context={
                        "error_code": result.get('error_code'),
                        "error_type": result.get('error_type', 'ProcessorError')
                    }
                )

            step_status = "COMPLETED"
            self.logger.info(f"Completed step: {step_id}", attempts=attempts)
            return result

        except asyncio.TimeoutError:
            step_status = "FAILED"
            error_message = f"TIMEOUT: Step execution exceeded {step_timeout_minutes} minutes"
            self.logger.error(f"Step {step_id} timed out", timeout_minutes=step_timeout_minutes)
            raise

        except Exception as e:
            step_status = "FAILED"
            error_message = e.message if isinstance(e, NmaPipelineException) else str(e)
            self.logger.error(
                format_error_for_logging(create_error_context(e, step_name=step_id, retry_count=max(attempts - 1, 0))),
                attempts=attempts
            )
            raise

        finally:
            step_end = datetime.now(timezone.utc)
            duration_seconds = (step_end - step_start).total_seconds()
            record_step_execution(
                pipeline_id=self.pipeline_id,
                step_id=step_id,
                status=step_status,
                duration_seconds=duration_seconds
            )
            for table, rows in (result.get('tables_written') or {}).items():
                set_table_rows(table, rows)

            self.step_results.append({
                'step_id': step_id,
                'step_type': step_type,
                'step_index': step_index,
                'status': step_status,
                'attempts': attempts,
                'start_time': step_start,
                'end_time': step_end,
                'duration_ms': int(duration_seconds * 1000),
                'rows_processed': result.get('rows_processed'),
                'error': error_message
            })

    async def _execute_step_internal(
        self,
        step_config: Dict[str, Any],
        step_id: str,
        step_type: str,
        abandoned: Optional[threading.Event] = None
    ) -> Dict[str, Any]:
        """
        Load the processor for step_type and run it.

        Returns:
            Step execution result dictionary
        """
        module_name = f"nma_pipeline.core.processors.{step_type}"
        try:
            engine_module = importlib.import_module(module_name)
            engine = engine_module.get_engine()
        except (ModuleNotFoundError, AttributeError) as e:
            raise PermanentError(
                message=f"Engine not found for step type: {step_type}. Module: {module_name}",
                error_code=ErrorCode.PROCESSOR_NOT_FOUND,
                context={"step_id": step_id, "ps_type": step_type},
                original_error=e
            ) from e

        if not is_valid_processor(engine):
            raise PermanentError(
                message=f"{module_name}.get_engine() returned an object without execute()",
                error_code=ErrorCode.PROCESSOR_NOT_FOUND,
                context={"step_id": step_id, "ps_type": step_type}
            )

        context: Dict[str, Any] = {}
        if self.config and "parameters" in self.config:
            context.update(self.config["parameters"])

        context["pipeline_id"] = self.pipeline_id
        context["pipeline_logging_id"] = self.pipeline_logging_id
        context["step_id"] = step_id
        context["table_store"] = self.table_store
        context["executor"] = STAGE_EXECUTOR
        context["window_start"] = self.window_start
        context["window_end"] = self.window_end
        context["abandoned"] = abandoned

        result = await engine.execute(step_config, context)
        if not validate_processor_result(result):
            raise StageFailedError(
                step_id=step_id,
                message=f"Processor {step_type} returned a malformed result",
                context={"result_keys": sorted(result) if isinstance(result, dict) else None}
            )
        self._step_execution_results[step_id] = result
        return result

    async def _cleanup_intermediates(self) -> None:
        """Drop intermediate stage tables."""
        loop = asyncio.get_running_loop()
        for table in INTERMEDIATE_TABLES:
            dropped = await loop.run_in_executor(STAGE_EXECUTOR, self.table_store.drop, table)
            if dropped:
                self.cleaned_tables.append(table)
        self.logger.info("Dropped intermediate tables", tables=self.cleaned_tables)

    def _data_quality_report(self) -> Optional[Dict[str, Any]]:
        for result in self._step_execution_results.values():
            if 'data_quality' in result:
                return result['data_quality']
        return None

    def run_metrics(self) -> Optional[NmaRunMetrics]:
        """Run metrics reported by the data quality step, with the run's processing time."""
        for result in self._step_execution_results.values():
            if 'run_metrics' in result:
                metrics = NmaRunMetrics(**result['run_metrics'])
                if self.start_time and self.end_time:
                    metrics.processing_time_seconds = (self.end_time - self.start_time).total_seconds()
                return metrics
        return None

    def _get_execution_summary(self) -> Dict[str, Any]:
        """
        Get execution summary.
        """
        duration_ms = (
            int((self.end_time - self.start_time).total_seconds() * 1000)
            if self.end_time and self.start_time else None
        )

        dq_report = self._data_quality_report()
        if dq_report is not None:
            set_data_quality_score(self.pipeline_id, dq_report['score'])

        metrics = self.run_metrics()

        return {
            'pipeline_logging_id': self.pipeline_logging_id,
            'pipeline_id': self.pipeline_id,
            'status': self.status,
            'start_time': self.start_time,
            'end_time': self.end_time,
            'duration_ms': duration_ms,
            'steps': self.step_results,
            'error': self.error,
            'data_quality': dq_report,
            'run_metrics': metrics.model_dump() if metrics else None,
            'cleaned_tables': self.cleaned_tables,
        }
