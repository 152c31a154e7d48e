"""Tests for the budget-gated advisory policy."""

from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from shepherd.advisory import (
    INVALID_ACTION_CONFIDENCE,
    AdvisoryPolicy,
    AdvisoryResponse,
    build_prompt,
    normalize_response,
)
from shepherd.budget import BudgetLedger
from shepherd.config import ProjectConfig, RemedySpec
from shepherd.loop_guard import LOOP_RATIONALE
from shepherd.policy import RuleBasedPolicy
from shepherd.schemas import (
    Action,
    Decision,
    Observation,
    PolicyMethod,
    Problem,
    SessionStatus,
    WorkItem,
)

MODEL = "claude-haiku-4-5-20251001"


def _config(**kwargs) -> ProjectConfig:
    return ProjectConfig(name="demo", **kwargs)


def _backend(response: AdvisoryResponse | None = None, in_tok: int = 1000, out_tok: int = 200):
    backend = MagicMock()
    backend.assess = AsyncMock(return_value=(response or AdvisoryResponse(
        action="wait", rationale="model says wait", confidence=0.7,
    ), in_tok, out_tok))
    backend.close = AsyncMock()
    return backend


def _policy(backend, ledger: BudgetLedger | None = None, credential: str = "sk-test", **kwargs):
    return AdvisoryPolicy(
        RuleBasedPolicy(),
        ledger or BudgetLedger(daily_cap=5.0, weekly_cap=20.0),
        model=MODEL,
        credential=credential,
        backend_factory=lambda: backend,
        **kwargs,
    )


HAS_WORK_OBS = Observation(todos_total=3, todos_completed=1, can_accept_input=True)


class TestGating:
    @pytest.mark.asyncio
    async def test_budget_exhausted_uses_rules_with_zero_calls(self):
        ledger = BudgetLedger(daily_cap=1.0)
        ledger.record("other", 1.0)
        backend = _backend()
        policy = _policy(backend, ledger)

        d = await policy.decide(SessionStatus.HAS_WORK, _config(auto_continue=True), [], HAS_WORK_OBS)

        assert d.method == PolicyMethod.RULE_BASED
        assert d.action == Action.CONTINUE
        assert backend.assess.call_count == 0
        assert policy.calls == 0

    @pytest.mark.asyncio
    async def test_weekly_exhausted_uses_rules(self):
        ledger = BudgetLedger(daily_cap=100.0, weekly_cap=1.0)
        ledger.record("other", 1.0)
        backend = _backend()
        d = await _policy(backend, ledger).decide(SessionStatus.IN_PROGRESS, _config())
        assert d.method == PolicyMethod.RULE_BASED
        backend.assess.assert_not_called()

    @pytest.mark.asyncio
    async def test_disabled_uses_rules(self):
        backend = _backend()
        d = await _policy(backend).decide(SessionStatus.IN_PROGRESS, _config(), enabled=False)
        assert d.method == PolicyMethod.RULE_BASED
        backend.assess.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_credential_uses_rules(self):
        backend = _backend()
        d = await _policy(backend, credential="").decide(SessionStatus.IN_PROGRESS, _config())
        assert d.method == PolicyMethod.RULE_BASED
        backend.assess.assert_not_called()


class TestAdvisoryCall:
    @pytest.mark.asyncio
    async def test_success_records_cost(self):
        ledger = BudgetLedger()
        backend = _backend(in_tok=1_000_000, out_tok=0)
        policy = _policy(backend, ledger)

        d = await policy.decide(SessionStatus.IN_PROGRESS, _config(), [], Observation(processing=True))

        assert d.method == PolicyMethod.ADVISORY
        assert d.action == Action.WAIT
        assert d.confidence == 0.7
        assert d.usage.cost_usd == 0.80
        assert ledger.daily_spend() == 0.80
        assert ledger.project_spend("demo") == 0.80
        assert policy.calls == 1

    @pytest.mark.asyncio
    async def test_malformed_action_waits_at_half_confidence(self):
        backend = _backend(AdvisoryResponse(action="dance", rationale="?", confidence=0.99))
        d = await _policy(backend).decide(SessionStatus.HAS_WORK, _config(), [], HAS_WORK_OBS)
        assert d.action == Action.WAIT
        assert d.confidence == INVALID_ACTION_CONFIDENCE
        assert d.method == PolicyMethod.ADVISORY

    @pytest.mark.asyncio
    async def test_missing_action_waits_at_half_confidence(self):
        backend = _backend(AdvisoryResponse())
        d = await _policy(backend).decide(SessionStatus.HAS_WORK, _config(), [], HAS_WORK_OBS)
        assert d.action == Action.WAIT
        assert d.confidence == 0.50

    @pytest.mark.asyncio
    async def test_transport_failure_falls_back_and_releases(self):
        ledger = BudgetLedger(daily_cap=0.015)
        backend = _backend()
        backend.assess = AsyncMock(side_effect=ConnectionError("refused"))
        policy = _policy(backend, ledger)

        d = await policy.decide(SessionStatus.IN_PROGRESS, _config())

        assert d.method == PolicyMethod.RULE_BASED
        assert d.action == Action.WAIT
        assert ledger.daily_spend() == 0.0
        assert ledger.has_headroom()

    @pytest.mark.asyncio
    async def test_timeout_falls_back(self):
        async def slow(*args, **kwargs):
            await asyncio.sleep(5)

        backend = _backend()
        backend.assess = slow
        d = await _policy(backend, timeout=0.01).decide(SessionStatus.IN_PROGRESS, _config())
        assert d.method == PolicyMethod.RULE_BASED

    @pytest.mark.asyncio
    async def test_wrong_response_type_falls_back(self):
        backend = _backend()
        backend.assess = AsyncMock(return_value=({"action": "wait"}, 10, 10))
        d = await _policy(backend).decide(SessionStatus.IN_PROGRESS, _config())
        assert d.method == PolicyMethod.RULE_BASED

    @pytest.mark.asyncio
    async def test_loop_guard_applies_to_advisory(self):
        now = datetime.now()
        history = [
            Decision(
                timestamp=now - timedelta(minutes=i + 1), action=Action.CONTINUE,
                rationale="r", method=PolicyMethod.ADVISORY,
            )
            for i in range(3)
        ]
        backend = _backend(AdvisoryResponse(action="continue", rationale="keep going", confidence=0.9))
        d = await _policy(backend).decide(
            SessionStatus.HAS_WORK, _config(), history, HAS_WORK_OBS, now=now,
        )
        assert d.action == Action.NOTIFY
        assert LOOP_RATIONALE in d.rationale

    @pytest.mark.asyncio
    async def test_close_releases_backend(self):
        backend = _backend()
        policy = _policy(backend)
        await policy.decide(SessionStatus.IN_PROGRESS, _config())
        await policy.close()
        backend.close.assert_awaited_once()


class TestNormalizeResponse:
    def test_continue_gets_default_command(self):
        cfg = _config(continue_command="proceed")
        d = normalize_response(AdvisoryResponse(action="continue", rationale="r"), SessionStatus.HAS_WORK, cfg)
        assert d.command == "proceed"

    def test_action_case_insensitive(self):
        d = normalize_response(AdvisoryResponse(action=" Notify ", rationale="r"), SessionStatus.ERROR, _config())
        assert d.action == Action.NOTIFY

    def test_confidence_clamped(self):
        d = normalize_response(
            AdvisoryResponse(action="wait", rationale="r", confidence=4.0), SessionStatus.IDLE, _config(),
        )
        assert d.confidence == 1.0

    def test_known_remedy(self):
        cfg = _config(remedies=[RemedySpec(name="fix-tests", command="run the fixer")])
        d = normalize_response(
            AdvisoryResponse(action="use-remedy", remedy_reference="fix-tests", rationale="r"),
            SessionStatus.ERROR, cfg,
        )
        assert d.action == Action.USE_REMEDY
        assert d.command == "run the fixer"

    def test_unknown_remedy_notifies(self):
        d = normalize_response(
            AdvisoryResponse(action="use-remedy", remedy_reference="made-up", rationale="r"),
            SessionStatus.ERROR, _config(),
        )
        assert d.action == Action.NOTIFY


class TestBuildPrompt:
    def test_includes_context(self):
        cfg = _config(
            auto_continue=True,
            remedies=[RemedySpec(name="fix-tests", category="tests")],
            human_approval_patterns=["deploy"],
        )
        obs = Observation(
            todos_total=2, todos_completed=1, can_accept_input=True,
            work_items=[WorkItem(text="parser", completed=True), WorkItem(text="writer")],
            problems=[Problem(category="tests", message="2 failed")],
        )
        history = [Decision(action=Action.CONTINUE, rationale=f"step {i}") for i in range(15)]
        prompt = build_prompt(SessionStatus.ERROR, cfg, obs, history)

        assert "Project: demo" in prompt
        assert "Status: Error" in prompt
        assert "[x] parser" in prompt
        assert "[ ] writer" in prompt
        assert "2 failed" in prompt
        assert "fix-tests" in prompt
        assert "deploy" in prompt
        assert "step 14" in prompt
        assert "step 4" not in prompt
        assert "auto_continue=True" in prompt
