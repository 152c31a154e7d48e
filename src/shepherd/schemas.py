"""All Pydantic models — the structured records that flow through a cycle.

Observations come in from the session driver, Decisions come out of a
policy, ProjectState is what survives restarts. Everything that is
persisted or logged is one of these models; ad hoc dicts stop at the
collaborator boundary.
"""

from __future__ import annotations

import hashlib
from datetime import datetime
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# ── Enums ────────────────────────────────────────────────────────────


class Severity(StrEnum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


class SessionStatus(StrEnum):
    """Lifecycle state derived from one Observation. Never stored as truth."""
    IN_PROGRESS = "InProgress"
    ERROR = "Error"
    HAS_WORK = "HasWork"
    PHASE_COMPLETE = "PhaseComplete"
    IDLE = "Idle"
    WAITING_FOR_INPUT = "WaitingForInput"
    UNKNOWN = "Unknown"


class Action(StrEnum):
    CONTINUE = "continue"
    WAIT = "wait"
    NOTIFY = "notify"
    USE_REMEDY = "use-remedy"
    PHASE_TRANSITION = "phase-transition"


class PolicyMethod(StrEnum):
    RULE_BASED = "rule-based"
    ADVISORY = "advisory"


# ── Observation ──────────────────────────────────────────────────────


class WorkItem(BaseModel):
    """A tracked task inside a session (a TODO)."""
    text: str
    completed: bool = False


class Problem(BaseModel):
    """A problem detected in the session transcript."""
    severity: Severity = Severity.MEDIUM
    category: str = ""
    message: str = ""


class Observation(BaseModel):
    """Normalized snapshot of one session, captured fresh every cycle."""
    processing: bool = False
    todos_total: int = 0
    todos_completed: int = 0
    work_items: list[WorkItem] = []
    problems: list[Problem] = []
    can_accept_input: bool = False
    input_target: str = ""
    idle_seconds: float = 0.0
    transcript_tail: str = ""
    captured_at: str = ""

    @model_validator(mode="after")
    def _clamp_counters(self) -> Observation:
        # Sensors are noisy: repair rather than reject.
        self.todos_total = max(0, self.todos_total)
        self.todos_completed = max(0, min(self.todos_completed, self.todos_total))
        self.idle_seconds = max(0.0, self.idle_seconds)
        return self

    @property
    def todos_remaining(self) -> int:
        return max(0, self.todos_total - self.todos_completed)

    def work_signature(self) -> str:
        """Stable fingerprint of the tracked work list."""
        items = "|".join(f"{int(i.completed)}:{i.text}" for i in self.work_items)
        return hashlib.sha1(f"{self.todos_total}/{self.todos_completed}/{items}".encode()).hexdigest()[:16]

    @property
    def high_severity_problems(self) -> list[Problem]:
        return [p for p in self.problems if p.severity == Severity.HIGH]


# ── Decision ─────────────────────────────────────────────────────────


class AdvisoryUsage(BaseModel):
    """Cost metadata attached to advisory decisions."""
    model: str = ""
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0


class Decision(BaseModel):
    """One immutable policy outcome. History is append-only."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=datetime.now)
    action: Action
    command: str = ""
    remedy: str = ""
    rationale: str
    confidence: float = 0.5
    method: PolicyMethod = PolicyMethod.RULE_BASED
    status: SessionStatus | None = None
    usage: AdvisoryUsage | None = None

    @field_validator("confidence")
    @classmethod
    def _clamp_confidence(cls, v: float) -> float:
        return min(1.0, max(0.0, v))


# ── Project State ────────────────────────────────────────────────────


class WorkCounters(BaseModel):
    total: int = 0
    completed: int = 0
    remaining: int = 0

    @classmethod
    def from_observation(cls, obs: Observation) -> WorkCounters:
        return cls(
            total=obs.todos_total,
            completed=obs.todos_completed,
            remaining=obs.todos_remaining,
        )


class PhaseState(BaseModel):
    """Cursor into the project's ordered phase list."""
    index: int = 0
    name: str = ""
    started_at: str = ""
    approved: bool = False
    closed_signature: str = ""  # work list that completed the previous phase


class SessionStats(BaseModel):
    """Cumulative counters for one project across all cycles."""
    cycles: int = 0
    decisions: int = 0
    continues: int = 0
    notifications: int = 0
    remedies: int = 0
    phase_transitions: int = 0
    errors: int = 0
    advisory_calls: int = 0
    advisory_cost_usd: float = 0.0


class ErrorRecord(BaseModel):
    timestamp: str
    kind: str = ""
    message: str = ""


MAX_ERROR_HISTORY = 20


class ProjectState(BaseModel):
    """Durable per-project record, mutated by the orchestrator every cycle."""
    name: str
    lifecycle: Literal["active", "session_lost", "quarantined", "complete"] = "active"
    last_status: SessionStatus = SessionStatus.UNKNOWN
    phase: PhaseState = Field(default_factory=PhaseState)
    todos: WorkCounters = Field(default_factory=WorkCounters)
    problems: list[Problem] = []
    session_id: str = ""
    last_active: str = ""
    consecutive_errors: int = 0
    quarantined: bool = False
    quarantine_reason: str = ""
    last_error: str = ""
    error_history: list[ErrorRecord] = []
    stats: SessionStats = Field(default_factory=SessionStats)
    created_at: str = ""
    updated_at: str = ""

    def record_error(self, message: str, kind: str = "") -> int:
        """Count a per-project failure. Returns the consecutive count."""
        self.consecutive_errors += 1
        self.stats.errors += 1
        self.last_error = message
        self.error_history.append(ErrorRecord(
            timestamp=datetime.now().isoformat(), kind=kind, message=message,
        ))
        del self.error_history[:-MAX_ERROR_HISTORY]
        return self.consecutive_errors

    def record_success(self) -> None:
        self.consecutive_errors = 0

    def quarantine(self, reason: str) -> None:
        self.quarantined = True
        self.quarantine_reason = reason
        self.lifecycle = "quarantined"

    def clear_quarantine(self) -> None:
        self.quarantined = False
        self.quarantine_reason = ""
        self.consecutive_errors = 0
        self.lifecycle = "active"

    def complete(self) -> None:
        self.lifecycle = "complete"

    def reset_work(self) -> None:
        self.todos = WorkCounters()
        self.problems = []

    @property
    def dispatchable(self) -> bool:
        return not self.quarantined and self.lifecycle != "complete"


# ── Dispatch / Phase Results ─────────────────────────────────────────


class DispatchOutcome(BaseModel):
    action: Action
    success: bool
    attempts: int = 0
    detail: str = ""


class PhaseTransitionResult(BaseModel):
    transitioned: bool
    forced: bool = False
    from_phase: str = ""
    to_phase: str = ""
    commit_id: str = ""
    pushed: bool = False
    project_complete: bool = False
    message: str = ""


# ── Sessions / Recovery ──────────────────────────────────────────────


class SessionCandidate(BaseModel):
    """A live session the driver can see, not yet bound to a project."""
    session_id: str
    title: str = ""
    cwd: str = ""
    last_active: str = ""


class SessionBinding(BaseModel):
    project: str
    session_id: str
    last_active: str = ""


class RecoverySnapshot(BaseModel):
    """Written at shutdown, consulted at startup to reattach sessions."""
    written_at: str = ""
    bindings: list[SessionBinding] = []

    def session_for(self, project: str) -> str:
        for b in self.bindings:
            if b.project == project:
                return b.session_id
        return ""
