"""Test fixtures and fakes."""

from __future__ import annotations

import asyncio

import pytest

from cfmom.config import Settings
from cfmom.contracts import AggregatedResult, ProposerState, Signal
from cfmom.evidence.memory import InMemoryEvidenceStore
from cfmom.evidence.refs import chunk
from cfmom.orchestration.policy import BandDecisionPolicy
from cfmom.proposers.base import FunctionProposer

BANDS = (("low", 0.0), ("medium", 0.4), ("high", 0.8))


@pytest.fixture
def store() -> InMemoryEvidenceStore:
    s = InMemoryEvidenceStore("docs")
    s.put("chunk", "c1", "The invoice was paid twice.")
    s.put("chunk", "c2", "Login from a new country.")
    s.put("chunk", "c3", "Password reset requested.")
    return s


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_waves=3,
        per_wave_deadline=1.0,
        overall_deadline=3.0,
        wave_interval=0.0,
        early_exit_threshold=0.8,
        high_confidence_signal=None,
        band_thresholds=BANDS,
        aggregation_strategy="noisy_or",
        default_weight=1.0,
        evidence_retry_limit=1,
        evidence_backoff=0.0,
        require_evidence=False,
        max_signals=1000,
        require_registered_schema=False,
        max_parallel_proposers=10,
        parallelism_per_wave={},
        circuit_breaker_threshold=5,
        circuit_breaker_reset=60.0,
        run_log_dir="",
    )


@pytest.fixture
def policy() -> BandDecisionPolicy[str]:
    return BandDecisionPolicy({"low": "allow", "medium": "challenge", "high": "block"}, "allow")


@pytest.fixture
def proposer_state() -> ProposerState:
    return ProposerState(
        context={"subject": "acct-42"},
        correlation_id="corr-1",
        wave=1,
        collected_signals=(),
        aggregation=AggregatedResult(score=0.0, confidence=0.0, band="low"),
        completed_proposers=frozenset(),
        failed_proposers=frozenset(),
        orchestration_signals={},
    )


@pytest.fixture
def make_proposer():
    """Factory: a FunctionProposer emitting one signal per confidence.

    Each signal cites chunk c1 in the "docs" store unless ``evidence`` is given.
    """

    def _make(
        name: str,
        *confidences: float,
        evidence=None,
        delay: float = 0.0,
        error: Exception | None = None,
        metadata=None,
        **kwargs,
    ) -> FunctionProposer:
        refs = (chunk("docs", "c1"),) if evidence is None else tuple(evidence)

        async def propose(state: ProposerState) -> list[Signal]:
            if delay:
                await asyncio.sleep(delay)
            if error is not None:
                raise error
            return [
                Signal.create(
                    name,
                    {"index": i},
                    confidence=c,
                    evidence=refs,
                    correlation_id=state.correlation_id,
                    metadata=metadata,
                )
                for i, c in enumerate(confidences)
            ]

        return FunctionProposer(propose, name=name, **kwargs)

    return _make
