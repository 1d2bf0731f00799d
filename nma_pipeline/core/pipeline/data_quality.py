"""
Data Quality Validation
Validate the published NMA tables with polars expectations.
"""

from typing import Any, Dict, List, Optional

import polars as pl

from nma_pipeline.app.config import settings
from nma_pipeline.core.constants import GROUP_PATH_SEPARATOR
from nma_pipeline.core.exceptions import DataQualityError
from nma_pipeline.core.hierarchy.schemas import CONSOLIDATION_KEY
from nma_pipeline.core.utils.logging import get_logger

logger = get_logger(__name__)


class DataQualityValidator:
    """
    Validate the consolidated mappings and the hierarchy table.

    Three expectations make up the score; each passes when it finds zero
    issues. Score = passed / total * 100.
    """

    def __init__(self, min_score: Optional[float] = None):
        self.min_score = settings.dq_min_score if min_score is None else min_score

    def validate(self, nma_changes: pl.DataFrame, nma_hierarchy: pl.DataFrame) -> Dict[str, Any]:
        """
        Run all expectations.

        Args:
            nma_changes: Consolidated mapping records
            nma_hierarchy: Published hierarchy table

        Returns:
            Report dict: results, score, healthy, passed_checks, total_checks,
            back_edges (informational)
        """
        results = [
            self._result("expect_no_overlapping_segments", count_overlapping_segments(nma_changes)),
            self._result("expect_no_hierarchy_cycles", count_path_cycles(nma_hierarchy)),
            self._result("expect_valid_intervals", count_invalid_intervals(nma_changes)),
        ]

        for result in results:
            if result['success']:
                logger.info(f"DQ check passed: {result['expectation_type']}")
            else:
                logger.warning(
                    f"DQ check failed: {result['expectation_type']}",
                    extra={"issues": result['details']['issue_count']}
                )

        passed = sum(1 for r in results if r['success'])
        score = round(passed / len(results) * 100, 2)

        return {
            'results': results,
            'passed_checks': passed,
            'total_checks': len(results),
            'score': score,
            'healthy': passed == len(results),
            'meets_min_score': score >= self.min_score,
            'back_edges': count_back_edges(nma_hierarchy),
        }

    @staticmethod
    def enforce(report: Dict[str, Any]) -> None:
        """
        Raise DataQualityError when any expectation failed.

        Raises:
            DataQualityError: With the failed expectations and score in context
        """
        if report['healthy']:
            return
        failed = [r['expectation_type'] for r in report['results'] if not r['success']]
        raise DataQualityError(
            message=f"Data quality checks failed: {', '.join(failed)}",
            context={"failed_checks": failed, "score": report['score']}
        )

    @staticmethod
    def _result(expectation_type: str, issue_count: int) -> Dict[str, Any]:
        return {
            'expectation_type': expectation_type,
            'success': issue_count == 0,
            'details': {'issue_count': issue_count},
        }


def count_overlapping_segments(records: pl.DataFrame) -> int:
    """Rows whose interval starts on or before the end of an earlier row of the same key."""
    if records.height == 0:
        return 0

    flagged = (
        records.sort([*CONSOLIDATION_KEY, "effective_start_date", "effective_end_date"])
        .with_columns(
            pl.col("effective_end_date")
            .to_physical()
            .cum_max()
            .shift(1)
            .over(CONSOLIDATION_KEY)
            .alias("prior_max_end")
        )
        .filter(pl.col("effective_start_date").to_physical() <= pl.col("prior_max_end"))
    )
    return flagged.height


def count_path_cycles(hierarchy: pl.DataFrame) -> int:
    """Rows whose child appears on its own ancestor path."""
    if hierarchy.height == 0:
        return 0

    path = pl.col("path")
    if hierarchy.schema["path"] == pl.Utf8:
        path = path.str.split(GROUP_PATH_SEPARATOR)

    return hierarchy.filter(path.list.contains(pl.col("chld_manager_account_id"))).height


def count_invalid_intervals(records: pl.DataFrame) -> int:
    """Rows with a null or inverted interval."""
    return records.filter(
        pl.col("effective_start_date").is_null()
        | pl.col("effective_end_date").is_null()
        | (pl.col("effective_start_date") > pl.col("effective_end_date"))
    ).height


def count_back_edges(hierarchy: pl.DataFrame) -> int:
    """
    Rows whose child is the parent of another row that points back at the
    first row's root. Overlapping reciprocal chains show up here even when
    every path is cycle free.
    """
    if hierarchy.height == 0:
        return 0

    left = hierarchy.select(
        pl.col("chld_manager_account_id").alias("node"),
        pl.col("root_manager_account_id").alias("back_to"),
    )
    right = hierarchy.select(
        pl.col("prnt_manager_account_id").alias("node"),
        pl.col("chld_manager_account_id").alias("back_to"),
    )
    return left.join(right, on=["node", "back_to"], how="inner").height


def summarize(results: List[Dict[str, Any]]) -> str:
    """One line per expectation, for reports."""
    return "\n".join(
        f"{r['expectation_type']}: {'PASS' if r['success'] else 'FAIL'} ({r['details']['issue_count']} issues)"
        for r in results
    )
