"""
Tests for riskwatch.logging_config and the shipped example settings.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import structlog

from riskwatch.config import load_settings_from_yaml
from riskwatch.logging_config import configure_logging
from riskwatch.models import Priority

EXAMPLE_SETTINGS = Path(__file__).parent.parent / "examples" / "engine_settings.yaml"


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


class TestConfigureLogging:
    def test_unknown_level_rejected(self):
        with pytest.raises(ValueError, match="verbose"):
            configure_logging(level="verbose")

    def test_json_lines_carry_bound_context(self, capsys):
        configure_logging(level="INFO", json_output=True)
        with structlog.contextvars.bound_contextvars(correlation_id="corr-42"):
            structlog.get_logger("riskwatch.test").info("risk_assessed", patient_id="p1")

        line = capsys.readouterr().err.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "risk_assessed"
        assert record["correlation_id"] == "corr-42"
        assert record["patient_id"] == "p1"
        assert record["level"] == "info"

    def test_level_filters_lower_records(self, capsys):
        configure_logging(level="WARNING", json_output=True)
        structlog.get_logger("riskwatch.test").info("quiet")
        assert capsys.readouterr().err == ""


class TestExampleSettings:
    def test_example_settings_load(self):
        settings = load_settings_from_yaml(EXAMPLE_SETTINGS)
        assert settings.notify_on_improvement is True
        assert settings.due_windows.review_window_for(Priority.CRITICAL) == 24
        assert settings.listener.staleness_window_seconds == 600
