"""Scored remedy matching against structured problems.

Each configured remedy is scored against a Problem:
  each trigger pattern found in the message   +10
  category equal to the problem's category     +5
  each keyword present in the message          +2

A remedy matches only at a cumulative score of MATCH_THRESHOLD or more.
The best score wins; ties go to the earlier remedy in configuration order.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from shepherd.config import RemedySpec
from shepherd.schemas import Problem

logger = logging.getLogger(__name__)

PATTERN_WEIGHT = 10
CATEGORY_WEIGHT = 5
KEYWORD_WEIGHT = 2
MATCH_THRESHOLD = 10


@dataclass
class RemedyMatch:
    remedy: RemedySpec
    score: int


def _pattern_hits(pattern: str, text: str) -> bool:
    try:
        return re.search(pattern, text, re.IGNORECASE) is not None
    except re.error:
        return pattern.lower() in text.lower()


def score_remedy(remedy: RemedySpec, problem: Problem) -> int:
    """Weighted score of one remedy against one problem."""
    text = f"{problem.category} {problem.message}"
    lowered = text.lower()
    score = 0
    for pattern in remedy.patterns:
        if pattern and _pattern_hits(pattern, text):
            score += PATTERN_WEIGHT
    if remedy.category and remedy.category.lower() == problem.category.lower():
        score += CATEGORY_WEIGHT
    for keyword in remedy.keywords:
        if keyword and keyword.lower() in lowered:
            score += KEYWORD_WEIGHT
    return score


class RemedyMatcher:
    """Table of remedies evaluated against a Problem."""

    def __init__(self, remedies: list[RemedySpec]) -> None:
        self._remedies = list(remedies)

    def rank(self, problem: Problem) -> list[RemedyMatch]:
        """All remedies at or above threshold, best first (stable on ties)."""
        scored = [RemedyMatch(r, score_remedy(r, problem)) for r in self._remedies]
        matches = [m for m in scored if m.score >= MATCH_THRESHOLD]
        return sorted(matches, key=lambda m: -m.score)

    def best(self, problem: Problem) -> RemedyMatch | None:
        ranked = self.rank(problem)
        if not ranked:
            return None
        logger.debug(
            "Remedy %r matched %r with score %d",
            ranked[0].remedy.name, problem.category, ranked[0].score,
        )
        return ranked[0]
