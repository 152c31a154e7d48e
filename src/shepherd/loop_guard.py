"""Repeated-action detection over a project's decision history.

History is the append-only decision log; it is never reordered or
deduplicated before counting.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime, timedelta

from shepherd.schemas import Action, Decision

DEFAULT_WINDOW_MINUTES = 5
DEFAULT_THRESHOLD = 3
LOOP_RATIONALE = "potential decision loop detected"


def count_recent(
    history: Sequence[Decision],
    action: Action,
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
    now: datetime | None = None,
) -> int:
    """Count decisions choosing `action` inside the trailing window."""
    now = now or datetime.now()
    cutoff = now - timedelta(minutes=window_minutes)
    return sum(
        1 for d in history
        if d.action == action and cutoff <= d.timestamp <= now
    )


def detect_loop(
    history: Sequence[Decision],
    window_minutes: int = DEFAULT_WINDOW_MINUTES,
    threshold: int = DEFAULT_THRESHOLD,
    now: datetime | None = None,
) -> bool:
    """True when `continue` was already chosen `threshold`+ times in the window."""
    return count_recent(history, Action.CONTINUE, window_minutes, now) >= threshold
