"""Advisory policy — paid reasoning-service escalation with guaranteed fallback.

Used only when advisory mode is on, a credential is configured and the
budget ledger has headroom. Every failure path (transport, timeout,
schema, validation) degrades to the rule-based policy; nothing here is
ever fatal to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from datetime import datetime

from pydantic import BaseModel, Field

from shepherd.backends import Backend, create_backend
from shepherd.budget import BudgetLedger, tokens_to_dollars
from shepherd.config import ProjectConfig
from shepherd.policy import RuleBasedPolicy
from shepherd.schemas import (
    Action,
    AdvisoryUsage,
    Decision,
    Observation,
    PolicyMethod,
    SessionStatus,
)

logger = logging.getLogger(__name__)

INVALID_ACTION_CONFIDENCE = 0.50
RESERVATION_USD = 0.01
HISTORY_IN_PROMPT = 10

SYSTEM_PROMPT = """\
You supervise an interactive coding-agent session on behalf of a developer.
Choose exactly one next action for the supervisor:
  continue          send the session a command so it keeps working
  wait              do nothing this cycle
  notify            alert the developer; a human should look
  use-remedy        run one of the listed remedies (set remedy_reference)
  phase-transition  the current phase is done; commit and advance
Prefer notify when unsure. Never invent remedies that are not listed."""


class AdvisoryError(Exception):
    """An advisory call failed; the caller falls back to rules."""


class AdvisoryResponse(BaseModel):
    """Supervisor decision for a coding-agent session."""
    action: str = Field(default="", description="One of: continue, wait, notify, use-remedy, phase-transition")
    command: str = Field(default="", description="Text to send to the session for continue/use-remedy")
    remedy_reference: str = Field(default="", description="Name of the listed remedy to use")
    rationale: str = Field(default="", description="Why this action was chosen")
    confidence: float = Field(default=0.5, description="Confidence between 0 and 1")


def build_prompt(
    status: SessionStatus,
    config: ProjectConfig,
    observation: Observation,
    history: Sequence[Decision],
) -> str:
    """Structured summary of the session for the reasoning service."""
    lines = [
        f"Project: {config.name}",
        f"Status: {status.value}",
        f"Work: {observation.todos_completed}/{observation.todos_total} done, "
        f"{observation.todos_remaining} remaining",
        f"Idle: {observation.idle_seconds / 60.0:.1f} minutes",
        f"Accepts input: {observation.can_accept_input}",
        f"Autonomy: auto_continue={config.auto_continue}, auto_commit={config.auto_commit}",
    ]

    if observation.work_items:
        lines.append("")
        lines.append("Work items:")
        for item in observation.work_items:
            mark = "x" if item.completed else " "
            lines.append(f"  [{mark}] {item.text}")

    if observation.problems:
        lines.append("")
        lines.append("Problems:")
        for p in observation.problems:
            lines.append(f"  - ({p.severity.value}, {p.category or 'uncategorized'}) {p.message}")

    if config.remedies:
        lines.append("")
        lines.append("Available remedies:")
        for r in config.remedies:
            detail = r.category or ", ".join(r.keywords) or "general"
            lines.append(f"  - {r.name}: {detail}")

    if config.human_approval_patterns:
        lines.append("")
        lines.append("Always notify when a problem matches: " + ", ".join(config.human_approval_patterns))

    recent = list(history)[-HISTORY_IN_PROMPT:]
    if recent:
        lines.append("")
        lines.append("Recent decisions (oldest first):")
        for d in recent:
            lines.append(
                f"  {d.timestamp:%H:%M:%S} {d.action.value} ({d.method.value}, "
                f"{d.confidence:.2f}): {d.rationale}"
            )

    return "\n".join(lines)


def normalize_response(
    response: AdvisoryResponse,
    status: SessionStatus,
    config: ProjectConfig,
    usage: AdvisoryUsage | None = None,
) -> Decision:
    """Validate the service's answer against the fixed action set."""
    try:
        action = Action(response.action.strip().lower())
    except ValueError:
        logger.warning("Advisory returned invalid action %r — defaulting to wait", response.action)
        return Decision(
            action=Action.WAIT,
            rationale=f"Advisory response had invalid action {response.action!r}",
            confidence=INVALID_ACTION_CONFIDENCE,
            method=PolicyMethod.ADVISORY,
            status=status,
            usage=usage,
        )

    command = response.command
    remedy = response.remedy_reference
    if action == Action.CONTINUE and not command:
        command = config.continue_command
    if action == Action.USE_REMEDY:
        known = {r.name: r for r in config.remedies}
        if remedy not in known:
            logger.warning("Advisory chose unknown remedy %r — notifying instead", remedy)
            return Decision(
                action=Action.NOTIFY,
                rationale=f"Advisory suggested unknown remedy {remedy!r}: {response.rationale}",
                confidence=INVALID_ACTION_CONFIDENCE,
                method=PolicyMethod.ADVISORY,
                status=status,
                usage=usage,
            )
        command = command or known[remedy].invocation

    return Decision(
        action=action,
        command=command,
        remedy=remedy,
        rationale=response.rationale or "No rationale given by advisory service",
        confidence=response.confidence,
        method=PolicyMethod.ADVISORY,
        status=status,
        usage=usage,
    )


class AdvisoryPolicy:
    """Budget-gated hybrid policy: advisory when allowed, rules otherwise."""

    def __init__(
        self,
        rules: RuleBasedPolicy,
        ledger: BudgetLedger,
        model: str = "claude-haiku-4-5-20251001",
        credential: str = "",
        timeout: float = 60.0,
        backend_factory: Callable[[], Backend] | None = None,
        backend_name: str = "anthropic",
    ) -> None:
        self.rules = rules
        self.ledger = ledger
        self.model = model
        self.credential = credential
        self.timeout = timeout
        self._backend_factory = backend_factory or (
            lambda: create_backend(backend_name, model, api_key=credential, timeout=timeout)
        )
        self._backend: Backend | None = None
        self.calls = 0

    async def decide(
        self,
        status: SessionStatus,
        config: ProjectConfig,
        history: Sequence[Decision] = (),
        observation: Observation | None = None,
        enabled: bool = True,
        now: datetime | None = None,
    ) -> Decision:
        """Advisory decision with loop guard applied, or the rule-based one."""
        observation = observation or Observation()

        if not enabled or not self.credential:
            return self.rules.decide(status, config, history, observation, now)

        # Budget exhaustion is a gating condition, not an error.
        if not self.ledger.try_reserve(RESERVATION_USD):
            logger.info("Advisory budget exhausted — using rule-based policy for %s", config.name)
            return self.rules.decide(status, config, history, observation, now)

        try:
            decision = await self._consult(status, config, history, observation)
        except Exception as e:
            self.ledger.release(RESERVATION_USD)
            logger.warning(
                "Advisory call failed for %s, falling back to rules: %s", config.name, e,
            )
            return self.rules.decide(status, config, history, observation, now)

        return self.rules.apply_loop_guard(decision, history, now)

    async def _consult(
        self,
        status: SessionStatus,
        config: ProjectConfig,
        history: Sequence[Decision],
        observation: Observation,
    ) -> Decision:
        if self._backend is None:
            self._backend = self._backend_factory()

        prompt = build_prompt(status, config, observation, history)
        self.calls += 1
        try:
            response, in_tok, out_tok = await asyncio.wait_for(
                self._backend.assess(AdvisoryResponse, prompt, SYSTEM_PROMPT, max_tokens=1024),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise AdvisoryError(f"advisory call timed out after {self.timeout:.0f}s") from e

        if not isinstance(response, AdvisoryResponse):
            raise AdvisoryError(f"unexpected advisory response type {type(response).__name__}")

        cost = tokens_to_dollars(self.model, in_tok, out_tok)
        self.ledger.record(config.name, cost, reserved=RESERVATION_USD)
        usage = AdvisoryUsage(
            model=self.model, input_tokens=in_tok, output_tokens=out_tok, cost_usd=cost,
        )
        logger.info(
            "Advisory decision for %s: %s ($%.6f, %d+%d tokens)",
            config.name, response.action, cost, in_tok, out_tok,
        )
        return normalize_response(response, status, config, usage)

    async def close(self) -> None:
        if self._backend is not None:
            await self._backend.close()
            self._backend = None
