"""Warm-restart recovery — snapshot live bindings, reattach on startup.

Session matching scores each visible session against a project:
  session id equals the configured or last-bound id    1.0
  working directory equals the project's repo path     0.9
  project name appears in the session title            0.6
  token overlap between name and title                 up to 0.5

The best candidate wins only with confidence >= MIN_CONFIDENCE and a
strictly higher score than the runner-up. A tie is treated as no match.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from shepherd.config import ProjectConfig
from shepherd.project import StateStore
from shepherd.schemas import (
    ProjectState,
    RecoverySnapshot,
    SessionBinding,
    SessionCandidate,
)

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5


def _tokens(text: str) -> set[str]:
    return {t for t in re.split(r"[^a-z0-9]+", text.lower()) if len(t) > 1}


def _same_path(a: str, b: str) -> bool:
    if not a or not b:
        return False
    try:
        return Path(a).expanduser().resolve() == Path(b).expanduser().resolve()
    except OSError:
        return a.rstrip("/") == b.rstrip("/")


def score_candidate(
    config: ProjectConfig,
    candidate: SessionCandidate,
    known_session_id: str = "",
) -> float:
    """Confidence in [0, 1] that `candidate` belongs to the project."""
    ids = {i for i in (config.session_id, known_session_id) if i}
    if candidate.session_id in ids:
        return 1.0
    if _same_path(candidate.cwd, config.repo_path):
        return 0.9
    title = candidate.title.lower()
    if config.name and config.name.lower() in title:
        return 0.6
    name_tokens = _tokens(config.name)
    if not name_tokens:
        return 0.0
    overlap = len(name_tokens & _tokens(candidate.title)) / len(name_tokens)
    return round(0.5 * overlap, 4)


def match_session(
    config: ProjectConfig,
    candidates: Iterable[SessionCandidate],
    known_session_id: str = "",
) -> SessionCandidate | None:
    """Best confident, unambiguous candidate for the project, or None."""
    scored = sorted(
        ((score_candidate(config, c, known_session_id), c) for c in candidates),
        key=lambda pair: -pair[0],
    )
    if not scored:
        return None
    best_score, best = scored[0]
    if best_score < MIN_CONFIDENCE:
        return None
    if len(scored) > 1 and scored[1][0] == best_score:
        logger.info(
            "Ambiguous session match for %s (%d candidates at %.2f) — not binding",
            config.name, sum(1 for s, _ in scored if s == best_score), best_score,
        )
        return None
    return best


def build_snapshot(states: Iterable[ProjectState]) -> RecoverySnapshot:
    bindings = [
        SessionBinding(project=s.name, session_id=s.session_id, last_active=s.last_active)
        for s in states
        if s.session_id
    ]
    return RecoverySnapshot(written_at=datetime.now().isoformat(), bindings=bindings)


def write_snapshot(store: StateStore, states: Iterable[ProjectState]) -> RecoverySnapshot:
    snapshot = build_snapshot(states)
    store.save_snapshot(snapshot)
    logger.info("Wrote recovery snapshot with %d bindings", len(snapshot.bindings))
    return snapshot


def restore_bindings(
    store: StateStore,
    projects: dict[str, ProjectConfig],
) -> dict[str, str]:
    """Reapply snapshot bindings to project states that lost theirs.

    Returns {project: session_id} for every binding restored.
    """
    snapshot = store.load_snapshot()
    restored: dict[str, str] = {}
    for binding in snapshot.bindings:
        config = projects.get(binding.project)
        if config is None:
            continue
        state = store.load_state(binding.project, config)
        if state.session_id:
            continue
        state.session_id = binding.session_id
        state.last_active = binding.last_active
        store.save_state(state)
        store.append_audit(binding.project, "session_restored", binding.session_id)
        restored[binding.project] = binding.session_id
    if restored:
        logger.info("Restored %d session bindings from snapshot", len(restored))
    return restored
