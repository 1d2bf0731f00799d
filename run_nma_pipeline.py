#!/usr/bin/env python3
"""
Run the Nested Manager Accounts pipeline.

Usage:
    python run_nma_pipeline.py --start-date 2024-01-01 --end-date 2024-12-31
    python run_nma_pipeline.py --backend memory --save-intermediate --debug
    python run_nma_pipeline.py --backend parquet --metrics-file /var/lib/node_exporter/nma.prom

Exit code is 0 when every stage succeeded and the data quality report is
healthy, 1 otherwise.
"""

import argparse
import asyncio
import os
import sys
from datetime import date
from typing import List, Optional

from nma_pipeline.app.config import settings

# polars reads its thread count once, on first import
os.environ.setdefault("POLARS_MAX_THREADS", str(settings.polars_max_threads))

from nma_pipeline.core.constants import PipelineRunStatus  # noqa: E402
from nma_pipeline.core.engine import get_table_store  # noqa: E402
from nma_pipeline.core.observability import write_metrics  # noqa: E402
from nma_pipeline.core.pipeline import (  # noqa: E402
    AsyncPipelineExecutor,
    generate_execution_report,
)
from nma_pipeline.core.utils.logging import setup_logging  # noqa: E402


def _iso_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from e


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Nested Manager Accounts pipeline")
    parser.add_argument("--start-date", type=_iso_date, default=settings.processing_start_date,
                        help="Processing window start (YYYY-MM-DD)")
    parser.add_argument("--end-date", type=_iso_date, default=settings.processing_end_date,
                        help="Processing window end (YYYY-MM-DD)")
    parser.add_argument("--pipeline-id", default=settings.default_pipeline_id,
                        help="Pipeline YAML to run")
    parser.add_argument("--backend", choices=["memory", "parquet", "bigquery"], default=None,
                        help="Table store backend (defaults to STORAGE_BACKEND)")
    parser.add_argument("--max-retries", type=int, default=None,
                        help="Attempts per stage on transient errors")
    parser.add_argument("--save-intermediate", action="store_true",
                        help="Keep intermediate stage tables")
    parser.add_argument("--metrics-file", default=None,
                        help="Write Prometheus metrics for a textfile collector")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)
    if args.start_date > args.end_date:
        parser.error(f"--start-date {args.start_date} is after --end-date {args.end_date}")
    if args.max_retries is not None and not 1 <= args.max_retries <= 10:
        parser.error("--max-retries must be between 1 and 10")
    return args


async def run(args: argparse.Namespace) -> int:
    executor = AsyncPipelineExecutor(
        pipeline_id=args.pipeline_id,
        table_store=get_table_store(args.backend),
        max_retries=args.max_retries,
        save_intermediate=args.save_intermediate or None,
        window_start=args.start_date,
        window_end=args.end_date
    )

    print(f"\nRunning pipeline {args.pipeline_id}")
    print(f"Processing Window: {args.start_date} to {args.end_date}")

    summary = await executor.execute()
    if args.metrics_file:
        write_metrics(args.metrics_file)

    metrics = executor.run_metrics()
    if metrics is not None:
        print(generate_execution_report(metrics, summary=summary))

    if summary['status'] != PipelineRunStatus.COMPLETED.value:
        error = summary.get('error') or {}
        print(f"Status: {summary['status']}")
        print(f"Error: {error.get('message') or error.get('error_message')}")
        return 1

    dq_report = summary.get('data_quality')
    if dq_report is None or not dq_report['healthy']:
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging("DEBUG" if args.debug else None)
    return asyncio.run(run(args))


if __name__ == "__main__":
    sys.exit(main())
