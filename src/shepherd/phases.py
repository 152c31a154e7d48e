"""Phase manager — completion checks and phase transitions.

Phases are the project's ordered `phases` list; ProjectState.phase.index
is the cursor. A transition fires when:
  - no outstanding work remains (or none was ever tracked)
  - no unresolved High-severity problem is present
  - the phase's manual approval flag is set, if it requires one

On transition: commit (and push if configured), notify, advance the
cursor or mark the project complete at the last phase, reset work
counters, clear problems, persist. A forced transition skips the check
and is audited separately.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from shepherd.config import ProjectConfig
from shepherd.human.git import GitManager, SourceControl, SourceControlError
from shepherd.human.slack import Notifier
from shepherd.project import StateStore
from shepherd.schemas import Observation, PhaseTransitionResult, ProjectState, Severity

logger = logging.getLogger(__name__)

# closed_signature for a transition made without a fresh observation
CLOSED_UNOBSERVED = "unobserved"


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    hours, rem = divmod(seconds, 3600)
    minutes = rem // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def phase_duration_seconds(state: ProjectState, now: datetime | None = None) -> float:
    if not state.phase.started_at:
        return 0.0
    try:
        started = datetime.fromisoformat(state.phase.started_at)
    except ValueError:
        return 0.0
    return ((now or datetime.now()) - started).total_seconds()


def build_commit_message(
    state: ProjectState,
    config: ProjectConfig,
    completed_tasks: int,
    now: datetime | None = None,
) -> str:
    total_phases = max(1, len(config.phases))
    name = state.phase.name or f"phase {state.phase.index + 1}"
    duration = format_duration(phase_duration_seconds(state, now))
    return (
        f"Complete phase '{name}' ({state.phase.index + 1}/{total_phases})\n\n"
        f"Tasks completed: {completed_tasks}\n"
        f"Phase duration: {duration}\n"
    )


class PhaseManager:
    """Evaluates completion criteria and performs transitions."""

    def __init__(
        self,
        store: StateStore,
        notifier: Notifier,
        source_control_for: Callable[[ProjectConfig], SourceControl] | None = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self._source_control_for = source_control_for or (
            lambda cfg: GitManager(cfg.repo_path or None)
        )

    def requires_approval(self, state: ProjectState, config: ProjectConfig) -> bool:
        idx = state.phase.index
        if 0 <= idx < len(config.phases):
            return config.phases[idx].require_approval
        return False

    def is_phase_complete(
        self,
        state: ProjectState,
        config: ProjectConfig,
        observation: Observation | None = None,
    ) -> bool:
        """All completion criteria hold for the current phase."""
        if observation is not None:
            remaining = observation.todos_remaining
            problems = observation.problems
        else:
            remaining = state.todos.remaining
            problems = state.problems

        if remaining > 0:
            return False
        if any(p.severity == Severity.HIGH for p in problems):
            return False
        if self.requires_approval(state, config) and not state.phase.approved:
            return False
        return True

    def approve(self, state: ProjectState) -> None:
        state.phase.approved = True
        self.store.save_state(state)
        self.store.append_audit(state.name, "phase_approved", state.phase.name)

    async def transition(
        self,
        state: ProjectState,
        config: ProjectConfig,
        observation: Observation | None = None,
        force: bool = False,
    ) -> PhaseTransitionResult:
        """Commit, notify and advance. No-op unless complete or forced."""
        from_phase = state.phase.name
        if state.lifecycle == "complete":
            return PhaseTransitionResult(
                transitioned=False, from_phase=from_phase, message="project already complete",
            )
        if not force and not self.is_phase_complete(state, config, observation):
            return PhaseTransitionResult(
                transitioned=False, from_phase=from_phase, message="completion criteria not met",
            )

        now = datetime.now()
        completed = observation.todos_completed if observation is not None else state.todos.completed
        message = build_commit_message(state, config, completed, now)

        commit_id = ""
        pushed = False
        scm = self._source_control_for(config)
        try:
            commit_id = await scm.commit(message)
            if commit_id and config.auto_push:
                await scm.push(config.branch)
                pushed = True
        except SourceControlError as e:
            logger.error("Source control failed for %s: %s", config.name, e)
            self.store.append_audit(config.name, "commit_failed", str(e))

        last_index = len(config.phases) - 1
        project_complete = state.phase.index >= last_index
        if project_complete:
            to_phase = ""
            state.complete()
        else:
            state.phase.index += 1
            to_phase = config.phases[state.phase.index].name
            state.phase.name = to_phase
            state.phase.started_at = now.isoformat()
            state.phase.approved = False
            state.phase.closed_signature = (
                observation.work_signature() if observation is not None else CLOSED_UNOBSERVED
            )

        state.reset_work()
        state.stats.phase_transitions += 1
        self.store.save_state(state)

        audit_action = "phase_forced" if force else "phase_transition"
        self.store.append_audit(
            config.name, audit_action,
            f"{from_phase} -> {to_phase or 'complete'}",
            commit=commit_id,
        )
        if force:
            logger.warning("Forced phase transition for %s: %s", config.name, from_phase)
        else:
            logger.info(
                "Phase transition for %s: %s -> %s", config.name, from_phase, to_phase or "complete",
            )

        summary = (
            f"Phase '{from_phase}' complete ({completed} tasks)"
            + (f", now on '{to_phase}'" if to_phase else "; all phases done")
            + (f", commit {commit_id[:10]}" if commit_id else "")
        )
        await self.notifier.notify("Phase complete", summary, "success", config.name)

        return PhaseTransitionResult(
            transitioned=True,
            forced=force,
            from_phase=from_phase,
            to_phase=to_phase,
            commit_id=commit_id,
            pushed=pushed,
            project_complete=project_complete,
            message=summary,
        )
