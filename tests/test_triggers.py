"""Tests for orchestration.triggers — readiness conditions."""

from __future__ import annotations

from cfmom.orchestration.triggers import (
    COMPLETED_PROPOSERS_SIGNAL,
    CURRENT_SCORE_SIGNAL,
    TriggerCondition,
    all_of,
    any_of,
    is_ready,
    when_proposer_count,
    when_score_exceeds,
    when_signal,
    when_signal_equals,
    when_signal_exists,
)


class TestConditions:
    def test_signal_exists(self):
        cond = when_signal_exists("suspicious")
        assert cond.evaluate({"suspicious": False})
        assert not cond.evaluate({})
        assert cond.description == "signal 'suspicious' exists"

    def test_signal_equals(self):
        cond = when_signal_equals("country", "NZ")
        assert cond.evaluate({"country": "NZ"})
        assert not cond.evaluate({"country": "AU"})
        assert not cond.evaluate({})

    def test_signal_predicate(self):
        cond = when_signal("attempts", lambda n: n > 3, "more than 3")
        assert cond.evaluate({"attempts": 5})
        assert not cond.evaluate({"attempts": 1})
        assert not cond.evaluate({})
        assert "more than 3" in cond.description

    def test_any_and_all(self):
        a, b = when_signal_exists("a"), when_signal_exists("b")
        assert any_of(a, b).evaluate({"b": 1})
        assert not all_of(a, b).evaluate({"b": 1})
        assert all_of(a, b).evaluate({"a": 1, "b": 1})
        assert all_of(a, b).description == "all of (signal 'a' exists, signal 'b' exists)"

    def test_proposer_count(self):
        cond = when_proposer_count(2)
        assert not cond.evaluate({})
        assert not cond.evaluate({COMPLETED_PROPOSERS_SIGNAL: ["a"]})
        assert cond.evaluate({COMPLETED_PROPOSERS_SIGNAL: ["a", "b"]})

    def test_score_threshold(self):
        cond = when_score_exceeds(0.5)
        assert not cond.evaluate({})
        assert not cond.evaluate({CURRENT_SCORE_SIGNAL: 0.49})
        assert cond.evaluate({CURRENT_SCORE_SIGNAL: 0.5})
        assert cond.description == "score >= 0.5"

    def test_conditions_satisfy_protocol(self):
        assert isinstance(when_score_exceeds(0.1), TriggerCondition)


class TestIsReady:
    def test_no_triggers_always_ready(self):
        assert is_ready(None, {})
        assert is_ready((), {})

    def test_every_trigger_must_hold(self):
        triggers = (when_signal_exists("a"), when_proposer_count(1))
        assert not is_ready(triggers, {"a": 1})
        assert is_ready(triggers, {"a": 1, COMPLETED_PROPOSERS_SIGNAL: ["x"]})
