"""Status classification — Observation → SessionStatus.

Priority order, first match wins:
  processing                          → InProgress
  any detected problem                → Error
  remaining > 0, input acceptable     → HasWork
  remaining == 0, total > 0, input ok → PhaseComplete
  idle longer than IDLE_SECONDS       → Idle
  input acceptable                    → WaitingForInput
  otherwise                           → Unknown

A session that never tracked any work is never reported complete.
"""

from __future__ import annotations

import logging

from shepherd.schemas import Observation, SessionStatus

logger = logging.getLogger(__name__)

IDLE_SECONDS = 600.0


def classify(observation: Observation) -> SessionStatus:
    """Classify a session. Total: never raises, defaults to Unknown."""
    try:
        return _classify(observation)
    except Exception as e:
        logger.warning("Classification failed, reporting Unknown: %s", e)
        return SessionStatus.UNKNOWN


def _classify(obs: Observation) -> SessionStatus:
    total = max(0, obs.todos_total)
    remaining = max(0, total - max(0, obs.todos_completed))

    if obs.processing:
        return SessionStatus.IN_PROGRESS
    if obs.problems:
        return SessionStatus.ERROR
    if remaining > 0 and obs.can_accept_input:
        return SessionStatus.HAS_WORK
    if remaining == 0 and total > 0 and obs.can_accept_input:
        return SessionStatus.PHASE_COMPLETE
    if obs.idle_seconds > IDLE_SECONDS:
        return SessionStatus.IDLE
    if obs.can_accept_input:
        return SessionStatus.WAITING_FOR_INPUT
    return SessionStatus.UNKNOWN
