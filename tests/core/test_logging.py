"""
Log formatter tests.
"""

import json
import logging

import pytest
from pythonjsonlogger.json import JsonFormatter

from nma_pipeline.core.utils.logging import (
    PipelineJsonFormatter,
    RunContextTextFormatter,
    setup_logging,
)


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def _record(**extra):
    return logging.makeLogRecord({
        "name": "nma_pipeline.core.hierarchy.closure",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "msg": "Closure built",
        **extra,
    })


def test_json_format_uses_json_module_formatter(restore_root_logger):
    setup_logging("INFO", "json")

    formatter = restore_root_logger.handlers[0].formatter
    assert isinstance(formatter, PipelineJsonFormatter)
    assert isinstance(formatter, JsonFormatter)


def test_json_record_carries_run_context():
    formatter = PipelineJsonFormatter("%(severity)s %(name)s %(message)s")

    payload = json.loads(formatter.format(_record(pipeline_id="nested_manager_accounts", step_id="build")))

    assert payload["message"] == "Closure built"
    assert payload["severity"] == "INFO"
    assert payload["component"] == "hierarchy.closure"
    assert payload["pipeline_id"] == "nested_manager_accounts"
    assert payload["step_id"] == "build"


def test_text_format_appends_context(restore_root_logger):
    setup_logging("DEBUG", "text")

    formatter = restore_root_logger.handlers[0].formatter
    assert isinstance(formatter, RunContextTextFormatter)
    line = formatter.format(_record(step_id="build"))
    assert line.endswith("Closure built [step_id=build]")
