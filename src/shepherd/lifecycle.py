"""Project lifecycle helpers — error classification and readable summaries.

Project lifecycle:
  active → session_lost   (bound session disappeared; notify, keep polling)
  session_lost → active   (a session is bound again)
  active → quarantined    (consecutive failures reached the threshold)
  quarantined → active    (manual clear)
  active → complete       (last phase transitioned)

The decision log is the record; render_decision_log is a derived view.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from enum import StrEnum

from pydantic import ValidationError

from shepherd.config import ConfigError
from shepherd.schemas import Decision, ProjectState


class ErrorClassification(StrEnum):
    TRANSIENT = "transient"     # actuator / advisory / source control I/O -> retried, logged
    VALIDATION = "validation"   # malformed response or state -> recovered locally
    PERSISTENT = "persistent"   # anything else inside a project cycle -> counts toward quarantine
    FATAL = "fatal"             # setup failures only


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify an error from a per-project cycle or from setup.

    Rules:
        - ConfigError -> FATAL
        - asyncio.TimeoutError, ConnectionError, network OSError -> TRANSIENT
        - httpx transport errors (by class name) -> TRANSIENT
        - pydantic ValidationError, ValueError -> VALIDATION
        - everything else -> PERSISTENT
    """
    if isinstance(error, ConfigError):
        return ErrorClassification.FATAL

    if isinstance(error, (asyncio.TimeoutError, ConnectionError)):
        return ErrorClassification.TRANSIENT

    if isinstance(error, OSError) and not isinstance(error, (FileNotFoundError, PermissionError)):
        return ErrorClassification.TRANSIENT

    error_class_name = type(error).__name__
    if error_class_name in ("ConnectError", "ReadTimeout", "WriteTimeout", "PoolTimeout", "ConnectTimeout"):
        return ErrorClassification.TRANSIENT

    if isinstance(error, (ValidationError, ValueError)):
        return ErrorClassification.VALIDATION

    return ErrorClassification.PERSISTENT


def format_project_summary(state: ProjectState, total_phases: int = 0) -> str:
    """Format a project state as a human-readable summary."""
    phase_label = state.phase.name or f"#{state.phase.index + 1}"
    if total_phases:
        phase_label += f" ({state.phase.index + 1}/{total_phases})"
    lines = [
        f"[{state.name}] {state.lifecycle:13s} {state.last_status.value}",
        f"  Phase: {phase_label}",
        f"  Work: {state.todos.completed}/{state.todos.total} done, {state.todos.remaining} remaining",
        f"  Session: {state.session_id or '(unbound)'}",
        f"  Cycles: {state.stats.cycles}  decisions: {state.stats.decisions}  "
        f"advisory: ${state.stats.advisory_cost_usd:.4f}",
    ]
    if state.problems:
        lines.append(f"  Problems: {len(state.problems)}")
    if state.quarantined:
        lines.append(f"  QUARANTINED: {state.quarantine_reason}")
    elif state.consecutive_errors:
        lines.append(f"  Consecutive errors: {state.consecutive_errors} (last: {state.last_error})")
    return "\n".join(lines)


def render_decision_log(name: str, decisions: Sequence[Decision]) -> str:
    """Markdown view of a project's decision history."""
    lines = [
        f"# Decisions — {name}",
        "",
        "| Time | Status | Action | Method | Confidence | Rationale |",
        "|------|--------|--------|--------|-----------:|-----------|",
    ]
    for d in decisions:
        status = d.status.value if d.status else ""
        rationale = d.rationale.replace("|", "\\|")
        lines.append(
            f"| {d.timestamp:%Y-%m-%d %H:%M:%S} | {status} | {d.action.value} "
            f"| {d.method.value} | {d.confidence:.2f} | {rationale} |"
        )
    return "\n".join(lines) + "\n"
