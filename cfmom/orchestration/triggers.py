"""Trigger conditions — when a proposer becomes ready to run.

Conditions are evaluated against the orchestration signal map: keys
published by validated signals (metadata["orchestration_signals"]) plus
the system keys the orchestrator refreshes after every wave.

A proposer with no triggers is ready in wave 1.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Protocol, Sequence, runtime_checkable

COMPLETED_PROPOSERS_SIGNAL = "_system.completed_proposers"
CURRENT_SCORE_SIGNAL = "_system.current_score"
CURRENT_BAND_SIGNAL = "_system.current_band"
WAVE_SIGNAL = "_system.wave"


@runtime_checkable
class TriggerCondition(Protocol):
    @property
    def description(self) -> str: ...

    def evaluate(self, signals: Mapping[str, Any]) -> bool: ...


@dataclass(frozen=True)
class SignalExists:
    key: str

    @property
    def description(self) -> str:
        return f"signal '{self.key}' exists"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        return self.key in signals


@dataclass(frozen=True)
class SignalEquals:
    key: str
    value: Any

    @property
    def description(self) -> str:
        return f"signal '{self.key}' == {self.value!r}"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        return self.key in signals and signals[self.key] == self.value


@dataclass(frozen=True)
class SignalPredicate:
    key: str
    predicate: Callable[[Any], bool]
    label: str = "predicate"

    @property
    def description(self) -> str:
        return f"signal '{self.key}' satisfies {self.label}"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        if self.key not in signals:
            return False
        return bool(self.predicate(signals[self.key]))


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[TriggerCondition, ...]

    @property
    def description(self) -> str:
        return "any of (" + ", ".join(c.description for c in self.conditions) + ")"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        return any(c.evaluate(signals) for c in self.conditions)


@dataclass(frozen=True)
class AllOf:
    conditions: tuple[TriggerCondition, ...]

    @property
    def description(self) -> str:
        return "all of (" + ", ".join(c.description for c in self.conditions) + ")"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        return all(c.evaluate(signals) for c in self.conditions)


@dataclass(frozen=True)
class ProposerCount:
    """At least ``minimum`` proposers have completed in earlier waves."""

    minimum: int

    @property
    def description(self) -> str:
        return f"at least {self.minimum} proposer(s) completed"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        return len(signals.get(COMPLETED_PROPOSERS_SIGNAL, ())) >= self.minimum


@dataclass(frozen=True)
class ScoreThreshold:
    """The current aggregated score is at least ``minimum``."""

    minimum: float

    @property
    def description(self) -> str:
        return f"score >= {self.minimum:g}"

    def evaluate(self, signals: Mapping[str, Any]) -> bool:
        score = signals.get(CURRENT_SCORE_SIGNAL)
        return score is not None and score >= self.minimum


# --- Builders ---


def when_signal_exists(key: str) -> SignalExists:
    return SignalExists(key)


def when_signal_equals(key: str, value: Any) -> SignalEquals:
    return SignalEquals(key, value)


def when_signal(
    key: str, predicate: Callable[[Any], bool], label: str = "predicate"
) -> SignalPredicate:
    return SignalPredicate(key, predicate, label)


def any_of(*conditions: TriggerCondition) -> AnyOf:
    return AnyOf(tuple(conditions))


def all_of(*conditions: TriggerCondition) -> AllOf:
    return AllOf(tuple(conditions))


def when_proposer_count(minimum: int) -> ProposerCount:
    return ProposerCount(minimum)


def when_score_exceeds(minimum: float) -> ScoreThreshold:
    return ScoreThreshold(minimum)


def is_ready(triggers: Sequence[TriggerCondition] | None, signals: Mapping[str, Any]) -> bool:
    """True when every trigger holds. No triggers means always ready."""
    if not triggers:
        return True
    return all(t.evaluate(signals) for t in triggers)
