"""Convenience bases for proposers.

Neither is required: anything with ``name`` and ``async propose(state)``
satisfies the Proposer protocol. These supply the optional scheduling
attributes with defaults and a signal factory that stamps the proposer's
name, schema and correlation id.
"""

from __future__ import annotations

import inspect
from typing import Any, Awaitable, Callable, Mapping, Sequence

from cfmom.contracts import EmbeddingRef, EvidenceRef, ProposerState, Signal
from cfmom.orchestration.triggers import TriggerCondition


class ProposerBase:
    name: str = ""
    priority: int = 0  # lower runs first
    enabled: bool = True
    triggers: tuple[TriggerCondition, ...] = ()
    execution_timeout: float | None = None
    optional: bool = False  # required proposers log ERROR on failure
    facts_schema_id: str = "default"

    def __init__(
        self,
        name: str | None = None,
        *,
        priority: int | None = None,
        enabled: bool | None = None,
        triggers: Sequence[TriggerCondition] | None = None,
        execution_timeout: float | None = None,
        optional: bool | None = None,
        facts_schema_id: str | None = None,
    ) -> None:
        if name is not None:
            self.name = name
        if not self.name:
            self.name = type(self).__name__
        if priority is not None:
            self.priority = priority
        if enabled is not None:
            self.enabled = enabled
        if triggers is not None:
            self.triggers = tuple(triggers)
        if execution_timeout is not None:
            self.execution_timeout = execution_timeout
        if optional is not None:
            self.optional = optional
        if facts_schema_id is not None:
            self.facts_schema_id = facts_schema_id

    async def propose(self, state: ProposerState) -> list[Signal]:
        raise NotImplementedError

    def create_signal(
        self,
        confidence: float,
        facts: Any = None,
        *,
        state: ProposerState | None = None,
        evidence: Sequence[EvidenceRef] = (),
        weight: float | None = None,
        subject_id: str | None = None,
        embeddings: Sequence[EmbeddingRef] = (),
        metadata: Mapping[str, Any] | None = None,
        early_exit: str | None = None,
    ) -> Signal:
        signal = Signal.create(
            self.name,
            facts,
            confidence=confidence,
            facts_schema_id=self.facts_schema_id,
            evidence=tuple(evidence),
            weight=weight,
            correlation_id=state.correlation_id if state is not None else None,
            subject_id=subject_id,
            embeddings=tuple(embeddings),
            metadata=metadata,
        )
        if early_exit:
            signal = signal.with_early_exit(early_exit)
        return signal

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, priority={self.priority})"


ProposeFn = Callable[[ProposerState], "Awaitable[list[Signal] | None] | list[Signal] | None"]


class FunctionProposer(ProposerBase):
    """Wraps ``fn(state)``. Sync functions are accepted too."""

    def __init__(self, fn: ProposeFn, name: str | None = None, **kwargs: Any) -> None:
        super().__init__(name or getattr(fn, "__name__", None), **kwargs)
        self._fn = fn

    async def propose(self, state: ProposerState) -> list[Signal]:
        result = self._fn(state)
        if inspect.isawaitable(result):
            result = await result
        return result


def as_proposer(obj: Any) -> Any:
    """Return ``obj`` if it already has propose(), else wrap it as a FunctionProposer."""
    if hasattr(obj, "propose"):
        return obj
    if callable(obj):
        return FunctionProposer(obj)
    raise TypeError(f"{obj!r} is not a proposer: needs a name and async propose(state)")
