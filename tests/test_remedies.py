"""Tests for scored remedy matching."""

from __future__ import annotations

from shepherd.config import RemedySpec
from shepherd.remedies import MATCH_THRESHOLD, RemedyMatcher, score_remedy
from shepherd.schemas import Problem


class TestScoreRemedy:
    def test_pattern_weight(self):
        remedy = RemedySpec(name="r", patterns=["timeout"])
        assert score_remedy(remedy, Problem(message="Request TIMEOUT after 30s")) == 10

    def test_category_weight(self):
        remedy = RemedySpec(name="r", category="build")
        assert score_remedy(remedy, Problem(category="Build", message="x")) == 5

    def test_keyword_weight(self):
        remedy = RemedySpec(name="r", keywords=["npm", "install", "absent"])
        assert score_remedy(remedy, Problem(message="npm install failed")) == 4

    def test_weights_add_up(self):
        remedy = RemedySpec(name="r", patterns=["failed"], category="build", keywords=["npm"])
        assert score_remedy(remedy, Problem(category="build", message="npm failed")) == 17

    def test_invalid_regex_uses_substring(self):
        remedy = RemedySpec(name="r", patterns=["(unclosed"])
        assert score_remedy(remedy, Problem(message="saw (unclosed paren")) == 10


class TestRemedyMatcher:
    def test_threshold(self):
        below = RemedySpec(name="weak", category="build", keywords=["npm", "install"])
        problem = Problem(category="build", message="npm crashed")
        assert score_remedy(below, problem) < MATCH_THRESHOLD
        assert RemedyMatcher([below]).best(problem) is None

    def test_best_score_wins(self):
        generic = RemedySpec(name="generic", patterns=["failed"])
        specific = RemedySpec(name="specific", patterns=["failed"], category="tests")
        match = RemedyMatcher([generic, specific]).best(Problem(category="tests", message="tests failed"))
        assert match.remedy.name == "specific"
        assert match.score == 15

    def test_tie_goes_to_configuration_order(self):
        first = RemedySpec(name="first", patterns=["failed"])
        second = RemedySpec(name="second", patterns=["failed"])
        match = RemedyMatcher([first, second]).best(Problem(message="it failed"))
        assert match.remedy.name == "first"

    def test_rank_filters_and_orders(self):
        remedies = [
            RemedySpec(name="none", patterns=["absent"]),
            RemedySpec(name="one", patterns=["failed"]),
            RemedySpec(name="two", patterns=["failed", "tests"]),
        ]
        ranked = RemedyMatcher(remedies).rank(Problem(message="tests failed"))
        assert [m.remedy.name for m in ranked] == ["two", "one"]

    def test_invocation_defaults_to_slash_name(self):
        assert RemedySpec(name="fix").invocation == "/fix"
        assert RemedySpec(name="fix", command="run fixer").invocation == "run fixer"
