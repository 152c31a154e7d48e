"""Rule-based decision policy — deterministic, free, always available.

Maps (status, project config, decision history) to a Decision. Never
raises and never touches the network; the advisory policy falls back
here on every failure path.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from datetime import datetime

from shepherd.config import ProjectConfig
from shepherd.loop_guard import (
    DEFAULT_THRESHOLD,
    DEFAULT_WINDOW_MINUTES,
    LOOP_RATIONALE,
    detect_loop,
)
from shepherd.remedies import RemedyMatcher
from shepherd.schemas import (
    Action,
    Decision,
    Observation,
    PolicyMethod,
    Problem,
    SessionStatus,
)

logger = logging.getLogger(__name__)


def matches_approval_pattern(problem: Problem, patterns: Sequence[str]) -> str:
    """Return the first human-approval pattern the problem hits, or ""."""
    text = f"{problem.category} {problem.message}"
    for pattern in patterns:
        if not pattern:
            continue
        try:
            if re.search(pattern, text, re.IGNORECASE):
                return pattern
        except re.error:
            if pattern.lower() in text.lower():
                return pattern
    return ""


class RuleBasedPolicy:
    """Deterministic status → action mapping with loop suppression."""

    def __init__(
        self,
        loop_window_minutes: int = DEFAULT_WINDOW_MINUTES,
        loop_threshold: int = DEFAULT_THRESHOLD,
    ) -> None:
        self.loop_window_minutes = loop_window_minutes
        self.loop_threshold = loop_threshold

    def decide(
        self,
        status: SessionStatus,
        config: ProjectConfig,
        history: Sequence[Decision] = (),
        observation: Observation | None = None,
        now: datetime | None = None,
    ) -> Decision:
        """Produce a Decision. Total: any internal failure yields a wait."""
        try:
            decision = self._decide(status, config, observation or Observation(), now)
        except Exception as e:
            logger.exception("Rule-based policy failed for %s", config.name)
            decision = Decision(
                action=Action.WAIT,
                rationale=f"Policy error, waiting: {e}",
                confidence=0.3,
                status=status,
            )
        return self.apply_loop_guard(decision, history, now)

    def apply_loop_guard(
        self,
        decision: Decision,
        history: Sequence[Decision],
        now: datetime | None = None,
    ) -> Decision:
        """Replace a `continue` with `notify` when it would extend a loop."""
        if decision.action != Action.CONTINUE:
            return decision
        if not detect_loop(history, self.loop_window_minutes, self.loop_threshold, now):
            return decision
        logger.warning(
            "Suppressing continue: %d+ in the last %d minutes",
            self.loop_threshold, self.loop_window_minutes,
        )
        return Decision(
            timestamp=decision.timestamp,
            action=Action.NOTIFY,
            rationale=(
                f"{LOOP_RATIONALE}: continue chosen {self.loop_threshold}+ times "
                f"in the last {self.loop_window_minutes} minutes"
            ),
            confidence=0.9,
            method=decision.method,
            status=decision.status,
            usage=decision.usage,
        )

    # ── Branches ────────────────────────────────────────────────────

    def _decide(
        self,
        status: SessionStatus,
        config: ProjectConfig,
        obs: Observation,
        now: datetime | None,
    ) -> Decision:
        ts = now or datetime.now()

        def make(action: Action, rationale: str, confidence: float, **extra: str) -> Decision:
            return Decision(
                timestamp=ts, action=action, rationale=rationale,
                confidence=confidence, status=status,
                method=PolicyMethod.RULE_BASED, **extra,
            )

        if status == SessionStatus.IN_PROGRESS:
            return make(Action.WAIT, "Session is processing; not interrupting mid-turn", 0.98)

        if status == SessionStatus.ERROR:
            return self._decide_error(config, obs, make)

        if status == SessionStatus.HAS_WORK:
            if config.auto_continue:
                return make(
                    Action.CONTINUE,
                    f"{obs.todos_remaining} of {obs.todos_total} tasks remain and auto-continue is enabled",
                    0.87,
                    command=config.continue_command,
                )
            return make(
                Action.NOTIFY,
                f"{obs.todos_remaining} tasks remain but auto-continue is disabled",
                0.91,
            )

        if status == SessionStatus.PHASE_COMPLETE:
            if config.auto_commit:
                return make(
                    Action.PHASE_TRANSITION,
                    f"All {obs.todos_total} tasks complete and auto-commit is enabled",
                    0.83,
                )
            return make(
                Action.NOTIFY,
                f"All {obs.todos_total} tasks complete; auto-commit disabled, review required",
                0.95,
            )

        if status == SessionStatus.WAITING_FOR_INPUT:
            return make(
                Action.NOTIFY,
                "Session is waiting for input with no tracked work; state is ambiguous",
                0.70,
            )

        if status == SessionStatus.IDLE:
            idle_min = obs.idle_seconds / 60.0
            if obs.idle_seconds > config.stall_threshold_seconds:
                return make(
                    Action.NOTIFY,
                    f"Idle for {idle_min:.0f} minutes, beyond the "
                    f"{config.stall_threshold_minutes}-minute stall threshold",
                    0.90,
                )
            return make(
                Action.WAIT,
                f"Idle for {idle_min:.0f} minutes, under the stall threshold",
                0.82,
            )

        return make(
            Action.WAIT,
            "Session state could not be classified; flagged for investigation",
            0.45,
        )

    def _decide_error(self, config: ProjectConfig, obs: Observation, make) -> Decision:
        for problem in obs.problems:
            pattern = matches_approval_pattern(problem, config.human_approval_patterns)
            if pattern:
                return make(
                    Action.NOTIFY,
                    f"Problem matches human-approval trigger {pattern!r}: {problem.message}",
                    0.95,
                )

        high = obs.high_severity_problems
        if len(high) >= 2:
            return make(
                Action.NOTIFY,
                f"{len(high)} high-severity problems detected; escalating",
                0.92,
            )

        if len(obs.problems) == 1:
            problem = obs.problems[0]
            match = RemedyMatcher(config.remedies).best(problem)
            if match is not None:
                return make(
                    Action.USE_REMEDY,
                    f"Remedy {match.remedy.name!r} matched {problem.category or 'problem'} "
                    f"(score {match.score})",
                    0.82,
                    command=match.remedy.invocation,
                    remedy=match.remedy.name,
                )

        return make(
            Action.NOTIFY,
            f"{len(obs.problems)} problem(s) detected with no applicable remedy",
            0.88,
        )
