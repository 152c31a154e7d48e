"""Project orchestrator — one supervision cycle across all registered projects.

Per project, per cycle:
  resolve session → capture Observation → classify → decide
  (advisory when allowed, else rules) → dispatch or phase transition
  → persist ProjectState → append Decision

Projects run as independent tasks joined before housekeeping. A
failure inside one project's pipeline is caught at this boundary,
counted, and never touches its siblings. Reaching the quarantine
threshold parks the project until someone clears it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from shepherd.advisory import AdvisoryPolicy
from shepherd.budget import BudgetLedger
from shepherd.classifier import classify
from shepherd.config import GlobalConfig, ProjectConfig, resolve_advisory_enabled
from shepherd.dispatcher import ActionDispatcher
from shepherd.human.slack import SlackNotifier
from shepherd.lifecycle import classify_error
from shepherd.phases import CLOSED_UNOBSERVED, PhaseManager
from shepherd.policy import RuleBasedPolicy
from shepherd.project import StateStore
from shepherd.recovery import match_session, restore_bindings, write_snapshot
from shepherd.retry import RetryCancelled
from shepherd.schemas import (
    Action,
    Decision,
    Observation,
    PolicyMethod,
    ProjectState,
    RecoverySnapshot,
    SessionStatus,
    WorkCounters,
)
from shepherd.sessions import FileSessionDriver, SessionDriver

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 50


@dataclass
class OrchestratorRuntime:
    """Process-level counters owned by the control loop."""
    started_at: float = field(default_factory=time.monotonic)
    started_iso: str = field(default_factory=lambda: datetime.now().isoformat())
    running: bool = True
    cycles: int = 0
    projects_processed: int = 0
    project_failures: int = 0
    decisions: int = 0
    last_cycle_at: str = ""

    def elapsed_hours(self) -> float:
        return (time.monotonic() - self.started_at) / 3600.0


@dataclass
class CycleReport:
    """What one cycle did, per project."""
    processed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    quarantined: list[str] = field(default_factory=list)
    decisions: dict[str, Decision] = field(default_factory=dict)


class Orchestrator:
    """Drives classification, policy and dispatch for every registered project."""

    def __init__(
        self,
        store: StateStore,
        global_config: GlobalConfig,
        driver: SessionDriver,
        dispatcher: ActionDispatcher,
        phase_manager: PhaseManager,
        policy: AdvisoryPolicy,
        projects: dict[str, ProjectConfig] | None = None,
    ) -> None:
        self.store = store
        self.global_config = global_config
        self.driver = driver
        self.dispatcher = dispatcher
        self.phase_manager = phase_manager
        self.policy = policy
        self._static_projects = projects

    # ── Setup / Teardown ────────────────────────────────────────────

    def load_projects(self) -> dict[str, ProjectConfig]:
        """Registered projects; re-read each cycle so registrations apply live."""
        if self._static_projects is not None:
            return self._static_projects
        return self.store.load_projects()

    def startup(self) -> dict[str, str]:
        """Prepare the state directory and reattach snapshot bindings."""
        self.store.init()
        return restore_bindings(self.store, self.load_projects())

    def write_recovery_snapshot(self) -> RecoverySnapshot:
        projects = self.load_projects()
        states = [self.store.load_state(name, cfg) for name, cfg in projects.items()]
        return write_snapshot(self.store, states)

    async def close(self) -> None:
        await self.policy.close()

    # ── Cycle ───────────────────────────────────────────────────────

    async def run_cycle(self, runtime: OrchestratorRuntime | None = None) -> CycleReport:
        """Process every eligible project once."""
        runtime = runtime or OrchestratorRuntime()
        report = CycleReport()
        projects = self.load_projects()

        eligible: list[tuple[ProjectConfig, ProjectState]] = []
        for name, config in projects.items():
            state = self.store.load_state(name, config)
            if not state.dispatchable:
                report.skipped.append(name)
                continue
            eligible.append((config, state))

        if self.global_config.parallel_projects:
            results = await asyncio.gather(
                *(self._run_project(cfg, st) for cfg, st in eligible)
            )
        else:
            results = [await self._run_project(cfg, st) for cfg, st in eligible]

        for (config, state), (decision, error, cancelled) in zip(eligible, results):
            if cancelled:
                report.skipped.append(config.name)
                continue
            if error is not None:
                report.failed[config.name] = error
                if state.quarantined:
                    report.quarantined.append(config.name)
                continue
            report.processed.append(config.name)
            if decision is not None:
                report.decisions[config.name] = decision

        runtime.cycles += 1
        runtime.projects_processed += len(report.processed)
        runtime.project_failures += len(report.failed)
        runtime.decisions += len(report.decisions)
        runtime.last_cycle_at = datetime.now().isoformat()
        logger.info(
            "Cycle %d: %d processed, %d failed, %d skipped",
            runtime.cycles, len(report.processed), len(report.failed), len(report.skipped),
        )
        return report

    async def _run_project(
        self, config: ProjectConfig, state: ProjectState,
    ) -> tuple[Decision | None, str | None, bool]:
        """Error-isolation boundary. Returns (decision, error message, cancelled)."""
        try:
            decision = await self.process_project(config, state)
        except RetryCancelled as e:
            logger.info("%s: dispatch cancelled by shutdown (%s)", config.name, e)
            self.store.save_state(state)
            return None, None, True
        except Exception as e:
            await self._record_failure(config, state, e)
            return None, f"{type(e).__name__}: {e}", False
        return decision, None, False

    async def _record_failure(
        self, config: ProjectConfig, state: ProjectState, error: Exception,
    ) -> None:
        kind = classify_error(error)
        message = f"{type(error).__name__}: {error}"
        count = state.record_error(message, kind.value)
        logger.error(
            "%s: cycle failed (%s, %d consecutive): %s",
            config.name, kind.value, count, message,
        )
        self.store.append_audit(config.name, "cycle_error", message, kind=kind.value)

        threshold = self.global_config.quarantine_threshold
        if count >= threshold and not state.quarantined:
            reason = f"{count} consecutive failures; last: {message}"
            state.quarantine(reason)
            self.store.save_state(state)
            self.store.append_audit(config.name, "quarantined", reason)
            logger.error("%s quarantined: %s", config.name, reason)
            await self.dispatcher.notify(
                "Project quarantined",
                f"{reason}. Run `shepherd clear-quarantine {config.name}` after fixing.",
                severity="critical",
                project_name=config.name,
                force=True,
            )
            return
        self.store.save_state(state)

    # ── Per-project pipeline ────────────────────────────────────────

    async def process_project(self, config: ProjectConfig, state: ProjectState) -> Decision | None:
        """Run one project's pipeline. Exceptions propagate to _run_project."""
        state.stats.cycles += 1

        session_id = await self.resolve_session(config, state)
        if not session_id:
            # Nothing observed: neither a success nor a failure
            self.store.save_state(state)
            return None

        observation = await self.driver.capture_state(session_id)
        status = classify(observation)
        self._absorb_observation(state, observation, status)

        history = self.store.load_decisions(config.name, limit=HISTORY_LIMIT)
        decision = await self._decide(config, state, status, observation, history)
        try:
            detail = await self._act(config, state, session_id, observation, decision)
        except RetryCancelled:
            self.store.append_audit(
                config.name, "dispatch_aborted",
                f"{decision.action.value} not delivered before shutdown",
            )
            raise
        except Exception:
            self._log_decision(config, state, decision)
            raise
        self._log_decision(config, state, decision)

        state.record_success()
        self.store.save_state(state)
        self.store.append_audit(
            config.name, "decision",
            f"{status.value} -> {decision.action.value}: {detail}",
            method=decision.method.value,
        )
        return decision

    async def _decide(
        self,
        config: ProjectConfig,
        state: ProjectState,
        status: SessionStatus,
        observation: Observation,
        history: list[Decision],
    ) -> Decision:
        signature = observation.work_signature()
        if status == SessionStatus.PHASE_COMPLETE and state.phase.closed_signature == CLOSED_UNOBSERVED:
            # Closed by hand without an observation: the first finished list seen is the old one
            state.phase.closed_signature = signature
        if (
            status == SessionStatus.PHASE_COMPLETE
            and state.phase.closed_signature
            and state.phase.closed_signature == signature
        ):
            return Decision(
                action=Action.WAIT,
                rationale="Work list unchanged since the last phase closed; awaiting new work",
                confidence=0.9,
                method=PolicyMethod.RULE_BASED,
                status=status,
            )

        enabled = resolve_advisory_enabled(config, self.global_config)
        return await self.policy.decide(status, config, history, observation, enabled=enabled)

    async def _act(
        self,
        config: ProjectConfig,
        state: ProjectState,
        session_id: str,
        observation: Observation,
        decision: Decision,
    ) -> str:
        if decision.action == Action.PHASE_TRANSITION:
            result = await self.phase_manager.transition(state, config, observation)
            if not result.transitioned:
                await self.dispatcher.notify(
                    "Phase transition blocked", result.message,
                    severity="warning", project_name=config.name,
                )
            return result.message

        outcome = await self.dispatcher.dispatch(decision, config.name, session_id, observation)
        return outcome.detail

    def _absorb_observation(
        self, state: ProjectState, obs: Observation, status: SessionStatus,
    ) -> None:
        state.last_status = status
        state.todos = WorkCounters.from_observation(obs)
        state.problems = list(obs.problems)
        if obs.processing or obs.idle_seconds < 60:
            state.last_active = datetime.now().isoformat()

    def _log_decision(self, config: ProjectConfig, state: ProjectState, decision: Decision) -> None:
        """Record a decision that reached the dispatcher or phase manager."""
        self.store.append_decision(config.name, decision)
        stats = state.stats
        stats.decisions += 1
        if decision.action == Action.CONTINUE:
            stats.continues += 1
        elif decision.action == Action.NOTIFY:
            stats.notifications += 1
        elif decision.action == Action.USE_REMEDY:
            stats.remedies += 1
        if decision.method == PolicyMethod.ADVISORY:
            stats.advisory_calls += 1
            if decision.usage is not None:
                stats.advisory_cost_usd = round(stats.advisory_cost_usd + decision.usage.cost_usd, 6)

    # ── Session binding ─────────────────────────────────────────────

    async def resolve_session(self, config: ProjectConfig, state: ProjectState) -> str:
        """Return the live session id for the project, or "" if none.

        Losing a previously bound session marks the project session_lost
        and notifies once; it does not count toward quarantine.
        """
        candidates = await self.driver.list_sessions()
        known = state.session_id or config.session_id
        match = None
        if known:
            match = next((c for c in candidates if c.session_id == known), None)
        if match is None:
            match = match_session(config, candidates, known)

        if match is not None:
            if state.lifecycle == "session_lost":
                state.lifecycle = "active"
                self.store.append_audit(config.name, "session_reattached", match.session_id)
                logger.info("%s: reattached to session %s", config.name, match.session_id)
            elif match.session_id != state.session_id:
                self.store.append_audit(config.name, "session_bound", match.session_id)
                logger.info("%s: bound to session %s", config.name, match.session_id)
            state.session_id = match.session_id
            return match.session_id

        if state.session_id and state.lifecycle != "session_lost":
            state.lifecycle = "session_lost"
            self.store.append_audit(config.name, "session_lost", state.session_id)
            logger.warning("%s: session %s is gone", config.name, state.session_id)
            await self.dispatcher.notify(
                "Session lost",
                f"Session {state.session_id} is no longer visible",
                severity="error",
                project_name=config.name,
                force=True,
            )
        elif not state.session_id:
            logger.debug("%s: no session found", config.name)
        return ""

    # ── Operator actions ────────────────────────────────────────────

    def clear_quarantine(self, name: str) -> ProjectState:
        projects = self.load_projects()
        if name not in projects:
            raise KeyError(name)
        state = self.store.load_state(name, projects[name])
        state.clear_quarantine()
        self.store.save_state(state)
        self.store.append_audit(name, "quarantine_cleared")
        logger.info("Quarantine cleared for %s", name)
        return state


def build_orchestrator(
    global_config: GlobalConfig,
    driver: SessionDriver | None = None,
    is_cancelled=None,
) -> Orchestrator:
    """Wire the default collaborators from configuration."""
    store = StateStore(global_config.state_path)
    ledger = BudgetLedger(
        store.budget_path,
        daily_cap=global_config.daily_cost_cap,
        weekly_cap=global_config.weekly_cost_cap,
    )
    driver = driver or FileSessionDriver(global_config.sessions_path)
    dispatcher = ActionDispatcher(
        driver,
        SlackNotifier(global_config.slack_webhook),
        max_attempts=global_config.dispatch_max_attempts,
        backoff_base=global_config.dispatch_backoff_base,
        verify_delay=global_config.verify_delay,
        max_notifications_per_hour=global_config.max_notifications_per_hour,
        is_cancelled=is_cancelled,
    )
    rules = RuleBasedPolicy(
        loop_window_minutes=global_config.loop_window_minutes,
        loop_threshold=global_config.loop_threshold,
    )
    policy = AdvisoryPolicy(
        rules,
        ledger,
        model=global_config.advisory_model,
        credential=global_config.advisory_credential,
        timeout=global_config.advisory_timeout,
        backend_name=global_config.advisory_backend,
    )
    return Orchestrator(
        store=store,
        global_config=global_config,
        driver=driver,
        dispatcher=dispatcher,
        phase_manager=PhaseManager(store, dispatcher),
        policy=policy,
    )
