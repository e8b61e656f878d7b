"""Single source of truth for all types, enums, errors, and protocols."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Mapping, Protocol, TypedDict, TypeVar, runtime_checkable

D = TypeVar("D")

# --- Errors ---


class ConfigurationError(ValueError):
    """Invalid orchestration settings. Raised before any wave starts."""


class EvidenceUnreachable(Exception):
    """An evidence store could not be reached. Retryable."""


# --- Enums ---


class DropReason(str, Enum):
    UNRESOLVABLE = "unresolvable"  # unknown store or unit absent
    HASH_MISMATCH = "hash_mismatch"  # never retried
    STORE_UNREACHABLE = "store_unreachable"  # retryable
    VERIFICATION_TIMEOUT = "verification_timeout"  # store still pending at the run deadline
    SCHEMA_INVALID = "schema_invalid"
    CAPACITY = "capacity"


class FailureKind(str, Enum):
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


class TerminationReason(str, Enum):
    EARLY_EXIT = "early_exit"
    MAX_WAVES = "max_waves"
    DEADLINE = "deadline"
    ALL_FAILED = "all_failed"
    NO_READY_PROPOSERS = "no_ready_proposers"
    CANCELLED = "cancelled"


class AggregationStrategy(str, Enum):
    NOISY_OR = "noisy_or"  # 1 - prod(1 - w*c)
    MAX = "max"  # max(w*c)


# --- Evidence ---


@dataclass(frozen=True)
class EvidenceRef:
    """Pointer into an external evidence store.

    (kind, store, id) must resolve to exactly one addressable unit.
    content_hash=None means "trust the current version"; a present hash
    must match the store's hash at verification time.

    The locator is a sub-position within the unit and does not take part
    in equality or hashing.
    """

    kind: str  # "chunk" | "frame" | "timestamp" | "request" | "row" | ...
    store: str  # namespace, e.g. "documents", "video-frames", "logs"
    id: str  # locator within store, e.g. "chunk-12", "frame-0042"
    locator: Mapping[str, Any] | None = field(default=None, compare=False)
    content_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "store": self.store,
            "id": self.id,
            "locator": dict(self.locator) if self.locator is not None else None,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class EmbeddingRef:
    """Embedding vector tagged with the model that produced it."""

    model_id: str
    vector: tuple[float, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "vector", tuple(float(v) for v in self.vector))

    def to_dict(self) -> dict[str, Any]:
        return {"model_id": self.model_id, "vector": list(self.vector)}


# --- Signals ---


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Signal:
    """A single proposer's claim.

    Immutable once emitted. Corrections are new signals in a later wave,
    never edits; with_metadata() and with_early_exit() return copies.
    """

    id: str
    source_id: str  # proposer identity
    confidence: float  # clamped to [0, 1]
    facts: Any = None  # domain payload, shape given by facts_schema_id
    facts_schema_id: str = "default"
    evidence: tuple[EvidenceRef, ...] = ()
    weight: float | None = None  # explicit trust weight; None = resolve from config
    at: str = field(default_factory=_utcnow)  # ISO 8601
    correlation_id: str | None = None
    subject_id: str | None = None
    embeddings: tuple[EmbeddingRef, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict, compare=False)
    trigger_early_exit: bool = False
    early_exit_classification: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", min(1.0, max(0.0, float(self.confidence))))
        object.__setattr__(self, "evidence", tuple(self.evidence))
        object.__setattr__(self, "embeddings", tuple(self.embeddings))
        object.__setattr__(self, "metadata", dict(self.metadata))

    @classmethod
    def create(
        cls,
        source_id: str,
        facts: Any = None,
        *,
        confidence: float = 0.5,
        facts_schema_id: str = "default",
        evidence: list[EvidenceRef] | tuple[EvidenceRef, ...] = (),
        weight: float | None = None,
        correlation_id: str | None = None,
        subject_id: str | None = None,
        embeddings: list[EmbeddingRef] | tuple[EmbeddingRef, ...] = (),
        metadata: Mapping[str, Any] | None = None,
    ) -> Signal:
        """Create a signal with a generated id and the current timestamp."""
        return cls(
            id=uuid.uuid4().hex,
            source_id=source_id,
            confidence=confidence,
            facts=facts,
            facts_schema_id=facts_schema_id,
            evidence=tuple(evidence),
            weight=weight,
            correlation_id=correlation_id,
            subject_id=subject_id,
            embeddings=tuple(embeddings),
            metadata=metadata or {},
        )

    def with_metadata(self, key: str, value: Any) -> Signal:
        return replace(self, metadata={**self.metadata, key: value})

    def with_early_exit(self, classification: str) -> Signal:
        return replace(self, trigger_early_exit=True, early_exit_classification=classification)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source_id": self.source_id,
            "confidence": self.confidence,
            "facts": self.facts,
            "facts_schema_id": self.facts_schema_id,
            "evidence": [e.to_dict() for e in self.evidence],
            "weight": self.weight,
            "at": self.at,
            "correlation_id": self.correlation_id,
            "subject_id": self.subject_id,
            "embeddings": [e.to_dict() for e in self.embeddings],
            "metadata": dict(self.metadata),
            "trigger_early_exit": self.trigger_early_exit,
            "early_exit_classification": self.early_exit_classification,
        }


class SchemaBreakdown(TypedDict):
    schema_id: str
    signal_count: int
    average_confidence: float


@dataclass(frozen=True)
class AggregatedResult:
    """Fused view over all validated signals so far. Recomputed each wave."""

    score: float
    confidence: float  # evidence strength, 0-1
    band: str
    early_exit: bool = False
    early_exit_classification: str | None = None
    contributing_proposers: frozenset[str] = frozenset()
    signal_count: int = 0
    schema_breakdown: Mapping[str, SchemaBreakdown] = field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "confidence": self.confidence,
            "band": self.band,
            "early_exit": self.early_exit,
            "early_exit_classification": self.early_exit_classification,
            "contributing_proposers": sorted(self.contributing_proposers),
            "signal_count": self.signal_count,
            "schema_breakdown": {k: dict(v) for k, v in self.schema_breakdown.items()},
        }


@dataclass(frozen=True)
class DroppedSignal:
    """Audit record of a signal excluded by the constrainer."""

    signal_id: str
    source_id: str
    reason: DropReason
    wave: int
    evidence: EvidenceRef | None = None
    detail: str = ""

    @property
    def retryable(self) -> bool:
        return self.reason == DropReason.STORE_UNREACHABLE

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "source_id": self.source_id,
            "reason": self.reason.value,
            "wave": self.wave,
            "evidence": self.evidence.to_dict() if self.evidence else None,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class ProposerFailure:
    name: str
    kind: FailureKind
    wave: int
    detail: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "wave": self.wave,
            "detail": self.detail,
        }


@dataclass(frozen=True)
class CFMoMResult(Generic[D]):
    """Terminal record of one orchestration run.

    Built exactly once at termination. Plain data: safe to share across
    threads and to serialise across process boundaries via to_dict().
    """

    correlation_id: str
    decision: D
    reason: str
    aggregation: AggregatedResult
    signals: tuple[Signal, ...]  # raw, all waves, including dropped ones
    dropped: tuple[DroppedSignal, ...]
    completed_proposers: frozenset[str]
    failed_proposers: frozenset[str]
    failures: tuple[ProposerFailure, ...]
    wave_count: int
    total_duration_ms: float
    termination: TerminationReason

    @property
    def score(self) -> float:
        return self.aggregation.score

    @property
    def band(self) -> str:
        return self.aggregation.band

    @property
    def early_exit(self) -> bool:
        return self.aggregation.early_exit

    def to_dict(self) -> dict[str, Any]:
        decision = self.decision.value if isinstance(self.decision, Enum) else self.decision
        return {
            "correlation_id": self.correlation_id,
            "decision": decision,
            "reason": self.reason,
            "aggregation": self.aggregation.to_dict(),
            "signals": [s.to_dict() for s in self.signals],
            "dropped": [d.to_dict() for d in self.dropped],
            "completed_proposers": sorted(self.completed_proposers),
            "failed_proposers": sorted(self.failed_proposers),
            "failures": [f.to_dict() for f in self.failures],
            "wave_count": self.wave_count,
            "total_duration_ms": round(self.total_duration_ms, 3),
            "termination": self.termination.value,
        }


# --- Proposer state ---


@dataclass(frozen=True)
class ProposerState:
    """Read-only view handed to every proposer in a wave."""

    context: Any
    correlation_id: str
    wave: int
    collected_signals: tuple[Signal, ...]  # validated signals from earlier waves
    aggregation: AggregatedResult
    completed_proposers: frozenset[str]
    failed_proposers: frozenset[str]
    orchestration_signals: Mapping[str, Any]
    elapsed_s: float = 0.0

    @property
    def current_score(self) -> float:
        return self.aggregation.score

    @property
    def current_band(self) -> str:
        return self.aggregation.band

    def get_signal(self, key: str, default: Any = None) -> Any:
        return self.orchestration_signals.get(key, default)

    def has_signal(self, key: str) -> bool:
        return key in self.orchestration_signals

    def signals_from(self, proposer_name: str) -> list[Signal]:
        return [s for s in self.collected_signals if s.source_id == proposer_name]

    def signals_by_schema(self, schema_id: str) -> list[Signal]:
        return [s for s in self.collected_signals if s.facts_schema_id == schema_id]


# --- Observability ---


class RunEvent(TypedDict):
    event: str  # "run.started" | "wave.completed" | "evidence.dropped" | ...
    correlation_id: str
    wave: int
    ts: str  # ISO 8601
    elapsed_s: float
    details: dict[str, Any]


class TokenUsage(TypedDict):
    agent: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    timestamp: str


# --- Protocols ---


@runtime_checkable
class Proposer(Protocol):
    """Opaque asynchronous evaluator.

    Optional attributes read by the orchestrator when present: priority,
    enabled, triggers, execution_timeout, optional, facts_schema_id.
    """

    name: str

    async def propose(self, state: ProposerState) -> list[Signal]: ...


@runtime_checkable
class EvidenceStore(Protocol):
    """Read-only, idempotent verification capability of one store.

    Implementations raise EvidenceUnreachable for retryable unavailability.
    """

    async def exists(self, kind: str, id: str) -> bool: ...

    async def content_hash(self, kind: str, id: str) -> str | bytes: ...


@runtime_checkable
class DecisionPolicy(Protocol[D]):
    """Pure band -> decision mapping, injected by the caller."""

    def map_band(self, band: str) -> D: ...
