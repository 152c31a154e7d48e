"""Tests for pricing and the advisory spend ledger."""

from __future__ import annotations

import json
import threading
from datetime import date, timedelta

from shepherd.budget import (
    RETENTION_DAYS,
    BudgetLedger,
    get_model_pricing_table,
    pricing_for_model,
    set_model_pricing_table,
    tokens_to_dollars,
)

TODAY = date(2026, 3, 4)  # a Wednesday


class TestPricingForModel:
    def test_exact_match(self):
        inp, out = pricing_for_model("claude-opus-4-6")
        assert inp == 15.00
        assert out == 75.00

    def test_haiku(self):
        inp, out = pricing_for_model("claude-haiku-4-5-20251001")
        assert inp == 0.80

    def test_unknown_defaults_to_haiku(self):
        inp, out = pricing_for_model("unknown-model-v99")
        assert inp == 0.80

    def test_override(self):
        original = get_model_pricing_table()
        try:
            set_model_pricing_table({"custom-model": (1.0, 2.0)})
            assert pricing_for_model("custom-model") == (1.0, 2.0)
        finally:
            set_model_pricing_table(original)


class TestTokensToDollars:
    def test_per_million(self):
        assert tokens_to_dollars("claude-opus-4-6", 1_000_000, 0) == 15.00

    def test_rounded_to_six_places(self):
        cost = tokens_to_dollars("claude-haiku-4-5-20251001", 123, 457)
        assert cost == round(123 * 0.80 / 1e6 + 457 * 4.00 / 1e6, 6)
        assert len(str(cost).split(".")[1]) <= 6


class TestBudgetLedger:
    def test_record_and_spend(self):
        ledger = BudgetLedger(daily_cap=5.0)
        ledger.record("a", 0.25, today=TODAY)
        ledger.record("b", 0.50, today=TODAY)
        assert ledger.daily_spend(TODAY) == 0.75
        assert ledger.project_spend("a", TODAY) == 0.25

    def test_record_returns_daily_total(self):
        ledger = BudgetLedger()
        ledger.record("a", 1.0, today=TODAY)
        assert ledger.record("a", 0.5, today=TODAY) == 1.5

    def test_negative_cost_ignored(self):
        ledger = BudgetLedger()
        ledger.record("a", -3.0, today=TODAY)
        assert ledger.daily_spend(TODAY) == 0.0

    def test_daily_cap(self):
        ledger = BudgetLedger(daily_cap=1.0)
        ledger.record("a", 0.99, today=TODAY)
        assert ledger.has_headroom(TODAY)
        ledger.record("a", 0.01, today=TODAY)
        assert not ledger.has_headroom(TODAY)

    def test_new_day_resets_daily(self):
        ledger = BudgetLedger(daily_cap=1.0, weekly_cap=100.0)
        ledger.record("a", 1.0, today=TODAY - timedelta(days=1))
        assert ledger.has_headroom(TODAY)

    def test_weekly_sums_from_monday(self):
        ledger = BudgetLedger(daily_cap=100.0, weekly_cap=2.0)
        monday = TODAY - timedelta(days=TODAY.weekday())
        ledger.record("a", 1.0, today=monday)
        ledger.record("a", 0.5, today=monday - timedelta(days=1))  # previous week
        ledger.record("b", 1.0, today=TODAY)
        assert ledger.weekly_spend(TODAY) == 2.0
        assert not ledger.has_headroom(TODAY)

    def test_try_reserve_holds_headroom(self):
        ledger = BudgetLedger(daily_cap=0.02)
        assert ledger.try_reserve(0.01, TODAY)
        assert ledger.try_reserve(0.01, TODAY)
        assert not ledger.try_reserve(0.01, TODAY)
        ledger.release(0.01)
        assert ledger.try_reserve(0.01, TODAY)

    def test_record_settles_reservation(self):
        ledger = BudgetLedger(daily_cap=1.0)
        assert ledger.try_reserve(0.5, TODAY)
        ledger.record("a", 0.1, reserved=0.5, today=TODAY)
        assert ledger.daily_spend(TODAY) == 0.1
        assert ledger.has_headroom(TODAY)

    def test_concurrent_reservations_never_overspend(self):
        ledger = BudgetLedger(daily_cap=2.5, weekly_cap=100.0)
        granted = []

        def worker():
            for _ in range(20):
                if ledger.try_reserve(0.25, TODAY):
                    granted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(granted) == 10

    def test_persists(self, tmp_path):
        path = tmp_path / "budget.json"
        BudgetLedger(path).record("a", 0.3, today=TODAY)
        reloaded = BudgetLedger(path)
        assert reloaded.daily_spend(TODAY) == 0.3
        assert json.loads(path.read_text()) == {TODAY.isoformat(): {"a": 0.3}}

    def test_malformed_file_starts_empty(self, tmp_path):
        path = tmp_path / "budget.json"
        path.write_text("{not json")
        ledger = BudgetLedger(path)
        assert ledger.daily_spend(TODAY) == 0.0

    def test_prune(self, tmp_path):
        ledger = BudgetLedger(tmp_path / "budget.json")
        ledger.record("a", 1.0, today=TODAY - timedelta(days=RETENTION_DAYS + 1))
        ledger.record("a", 1.0, today=TODAY)
        assert ledger.prune(TODAY) == 1
        assert list(json.loads((tmp_path / "budget.json").read_text())) == [TODAY.isoformat()]

    def test_summary(self):
        ledger = BudgetLedger(daily_cap=5.0, weekly_cap=20.0)
        ledger.record("a", 1.25, today=TODAY)
        summary = ledger.summary(TODAY)
        assert summary["daily_spend"] == 1.25
        assert summary["weekly_spend"] == 1.25
        assert summary["daily_cap"] == 5.0
