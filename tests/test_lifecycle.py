"""Tests for error classification and readable summaries."""

from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from pydantic import ValidationError

from shepherd.config import ConfigError
from shepherd.lifecycle import (
    ErrorClassification,
    classify_error,
    format_project_summary,
    render_decision_log,
)
from shepherd.schemas import (
    Action,
    Decision,
    Observation,
    PolicyMethod,
    ProjectState,
    SessionStatus,
)


class TestClassifyError:
    def test_timeout_is_transient(self):
        assert classify_error(asyncio.TimeoutError()) == ErrorClassification.TRANSIENT

    def test_connection_error_is_transient(self):
        assert classify_error(ConnectionResetError()) == ErrorClassification.TRANSIENT

    def test_file_not_found_is_persistent(self):
        assert classify_error(FileNotFoundError("x")) == ErrorClassification.PERSISTENT

    def test_httpx_style_name_is_transient(self):
        class ConnectError(Exception):
            pass

        assert classify_error(ConnectError()) == ErrorClassification.TRANSIENT

    def test_validation(self):
        with pytest.raises(ValidationError) as exc_info:
            Observation.model_validate({"todos_total": "many"})
        assert classify_error(exc_info.value) == ErrorClassification.VALIDATION
        assert classify_error(ValueError("bad")) == ErrorClassification.VALIDATION

    def test_config_is_fatal(self):
        assert classify_error(ConfigError("bad")) == ErrorClassification.FATAL

    def test_unknown_is_persistent(self):
        assert classify_error(RuntimeError("wat")) == ErrorClassification.PERSISTENT


class TestSummaries:
    def test_project_summary(self):
        state = ProjectState(name="demo", last_status=SessionStatus.HAS_WORK)
        state.phase.name = "build"
        state.phase.index = 1
        state.record_error("boom")
        text = format_project_summary(state, total_phases=3)
        assert "[demo]" in text
        assert "HasWork" in text
        assert "build (2/3)" in text
        assert "Consecutive errors: 1" in text

    def test_quarantined_summary(self):
        state = ProjectState(name="demo")
        state.quarantine("5 consecutive failures")
        assert "QUARANTINED: 5 consecutive failures" in format_project_summary(state)

    def test_decision_log(self):
        decisions = [
            Decision(
                timestamp=datetime(2026, 3, 1, 9, 30), action=Action.CONTINUE,
                rationale="a | b", confidence=0.87, status=SessionStatus.HAS_WORK,
            ),
            Decision(
                timestamp=datetime(2026, 3, 1, 9, 32), action=Action.WAIT,
                rationale="busy", confidence=0.98, method=PolicyMethod.ADVISORY,
            ),
        ]
        text = render_decision_log("demo", decisions)
        lines = text.splitlines()
        assert lines[0] == "# Decisions — demo"
        assert "| 2026-03-01 09:30:00 | HasWork | continue | rule-based | 0.87 | a \\| b |" in lines
        assert "advisory" in lines[-1]
