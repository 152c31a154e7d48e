"""Model pricing + durable daily/weekly spend ledger for advisory calls.

The ledger is the only state shared by concurrent per-project work.
Check and record happen under one lock so two projects deciding in the
same cycle cannot both slip under the cap.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import date, timedelta
from pathlib import Path

logger = logging.getLogger(__name__)

# Built-in defaults — overridable via config.yaml model_pricing
# Format: model_id -> (input_cost_per_million, output_cost_per_million)
DEFAULT_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "claude-haiku-4-5-20251001": (0.80, 4.00),
    "claude-sonnet-4-5-20250929": (3.00, 15.00),
    "claude-opus-4-6": (15.00, 75.00),
}

# Active pricing table — starts as defaults, can be updated
_active_pricing: dict[str, tuple[float, float]] = dict(DEFAULT_MODEL_PRICING)

RETENTION_DAYS = 14


def set_model_pricing_table(overrides: dict[str, tuple[float, float]]) -> None:
    """Override the pricing table with user-configured values."""
    _active_pricing.update(overrides)


def get_model_pricing_table() -> dict[str, tuple[float, float]]:
    """Return the current active pricing table."""
    return dict(_active_pricing)


def pricing_for_model(model: str) -> tuple[float, float]:
    """Look up (input_cost, output_cost) per million tokens."""
    if model in _active_pricing:
        return _active_pricing[model]
    for key, pricing in _active_pricing.items():
        if key.startswith(model) or model.startswith(key.rsplit("-", 1)[0]):
            return pricing
    logger.warning("Unknown model %r — defaulting to Haiku rates", model)
    return _active_pricing.get(
        "claude-haiku-4-5-20251001",
        DEFAULT_MODEL_PRICING["claude-haiku-4-5-20251001"],
    )


def tokens_to_dollars(model: str, input_tokens: int, output_tokens: int) -> float:
    """Cost of one call, rounded to 6 decimals."""
    inp, out = pricing_for_model(model)
    cost = input_tokens * inp / 1_000_000 + output_tokens * out / 1_000_000
    return round(cost, 6)


class BudgetLedger:
    """Spend per day per project, persisted to budget.json.

    Layout: {"YYYY-MM-DD": {"project": dollars}}. Daily spend is the sum
    over all projects for today; weekly spend sums the current ISO week.
    """

    def __init__(
        self,
        path: str | Path | None = None,
        daily_cap: float = 5.00,
        weekly_cap: float = 20.00,
    ) -> None:
        self._path = Path(path) if path else None
        self.daily_cap = daily_cap
        self.weekly_cap = weekly_cap
        self._lock = threading.Lock()
        self._pending = 0.0
        self._entries: dict[str, dict[str, float]] = self._load()

    # ── Persistence ─────────────────────────────────────────────────

    def _load(self) -> dict[str, dict[str, float]]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Budget ledger unreadable (%s) — starting empty", e)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Budget ledger malformed — starting empty")
            return {}
        entries: dict[str, dict[str, float]] = {}
        for day, per_project in raw.items():
            if not isinstance(per_project, dict):
                continue
            entries[day] = {
                str(p): float(v) for p, v in per_project.items()
                if isinstance(v, (int, float))
            }
        return entries

    def _save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._entries, indent=2, sort_keys=True))

    def prune(self, today: date | None = None) -> int:
        """Drop days older than the retention window. Returns days removed."""
        today = today or date.today()
        cutoff = (today - timedelta(days=RETENTION_DAYS)).isoformat()
        with self._lock:
            stale = [d for d in self._entries if d < cutoff]
            for d in stale:
                del self._entries[d]
            if stale:
                self._save()
        return len(stale)

    # ── Queries ─────────────────────────────────────────────────────

    def _daily(self, today: date) -> float:
        return sum(self._entries.get(today.isoformat(), {}).values())

    def _weekly(self, today: date) -> float:
        week_start = today - timedelta(days=today.weekday())
        total = 0.0
        for offset in range(today.weekday() + 1):
            day = (week_start + timedelta(days=offset)).isoformat()
            total += sum(self._entries.get(day, {}).values())
        return total

    def daily_spend(self, today: date | None = None) -> float:
        with self._lock:
            return self._daily(today or date.today())

    def weekly_spend(self, today: date | None = None) -> float:
        with self._lock:
            return self._weekly(today or date.today())

    def project_spend(self, project: str, today: date | None = None) -> float:
        today = today or date.today()
        with self._lock:
            return self._entries.get(today.isoformat(), {}).get(project, 0.0)

    def has_headroom(self, today: date | None = None) -> bool:
        """True when today's and this week's spend (plus reservations) are under cap."""
        today = today or date.today()
        with self._lock:
            return self._has_headroom(today)

    def _has_headroom(self, today: date) -> bool:
        return (
            self._daily(today) + self._pending < self.daily_cap
            and self._weekly(today) + self._pending < self.weekly_cap
        )

    # ── Mutation ────────────────────────────────────────────────────

    def try_reserve(self, amount: float, today: date | None = None) -> bool:
        """Check headroom and hold `amount` against it in one step.

        The hold is released by record() or release(). Returns False
        without reserving when the ledger is exhausted.
        """
        today = today or date.today()
        with self._lock:
            if not self._has_headroom(today):
                return False
            self._pending += max(0.0, amount)
            return True

    def release(self, amount: float) -> None:
        with self._lock:
            self._pending = max(0.0, self._pending - amount)

    def record(
        self,
        project: str,
        cost: float,
        reserved: float = 0.0,
        today: date | None = None,
    ) -> float:
        """Add spend for a project, settling any reservation. Returns daily total."""
        today = today or date.today()
        cost = round(max(0.0, cost), 6)
        with self._lock:
            self._pending = max(0.0, self._pending - reserved)
            day = self._entries.setdefault(today.isoformat(), {})
            day[project] = round(day.get(project, 0.0) + cost, 6)
            self._save()
            daily = self._daily(today)
        if daily >= self.daily_cap:
            logger.warning(
                "Daily advisory budget reached: $%.4f >= $%.2f", daily, self.daily_cap,
            )
        return daily

    def summary(self, today: date | None = None) -> dict[str, float]:
        today = today or date.today()
        with self._lock:
            return {
                "daily_spend": round(self._daily(today), 6),
                "daily_cap": self.daily_cap,
                "weekly_spend": round(self._weekly(today), 6),
                "weekly_cap": self.weekly_cap,
            }
