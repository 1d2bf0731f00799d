"""
Core Constants Module

Sentinels, flag values and status strings shared by the hierarchy engine
and the stage processors.
"""

from nma_pipeline.core.constants.nma import (
    OPEN_END_DATE,
    YES,
    NO,
    PN_SOURCE,
    GROUP_PATH_SEPARATOR,
    SOURCE_SEPARATOR,
    ROOT_COMPARISON_MATCH,
    ROOT_COMPARISON_NO_PN_ROOT,
    Channel,
    ProcessorStatus,
    PipelineRunStatus,
    TableName,
    INTERMEDIATE_TABLES,
)

__all__ = [
    "OPEN_END_DATE",
    "YES",
    "NO",
    "PN_SOURCE",
    "GROUP_PATH_SEPARATOR",
    "SOURCE_SEPARATOR",
    "ROOT_COMPARISON_MATCH",
    "ROOT_COMPARISON_NO_PN_ROOT",
    "Channel",
    "ProcessorStatus",
    "PipelineRunStatus",
    "TableName",
    "INTERMEDIATE_TABLES",
]
