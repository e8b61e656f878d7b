"""Tests for contracts.py — value types, immutability, serialisation."""

from __future__ import annotations

import dataclasses
import json

import pytest

from cfmom.contracts import (
    AggregatedResult,
    CFMoMResult,
    DropReason,
    DroppedSignal,
    EmbeddingRef,
    EvidenceRef,
    EvidenceStore,
    FailureKind,
    Proposer,
    ProposerFailure,
    ProposerState,
    Signal,
    TerminationReason,
)
from cfmom.evidence.memory import InMemoryEvidenceStore
from cfmom.orchestration.policy import CommonDecision
from cfmom.proposers.base import ProposerBase


class TestSignal:
    def test_create_generates_unique_ids(self):
        a = Signal.create("p", confidence=0.5)
        b = Signal.create("p", confidence=0.5)
        assert a.id != b.id
        assert a.source_id == "p"
        assert a.at  # ISO timestamp

    def test_confidence_clamped(self):
        assert Signal.create("p", confidence=1.7).confidence == 1.0
        assert Signal.create("p", confidence=-0.2).confidence == 0.0

    def test_immutable(self):
        s = Signal.create("p", confidence=0.5)
        with pytest.raises(dataclasses.FrozenInstanceError):
            s.confidence = 0.9  # type: ignore[misc]

    def test_with_metadata_returns_copy(self):
        s = Signal.create("p", confidence=0.5, metadata={"a": 1})
        t = s.with_metadata("b", 2)
        assert t.metadata == {"a": 1, "b": 2}
        assert s.metadata == {"a": 1}
        assert t.id == s.id

    def test_with_early_exit(self):
        s = Signal.create("p", confidence=0.5).with_early_exit("fraud")
        assert s.trigger_early_exit is True
        assert s.early_exit_classification == "fraud"

    def test_evidence_coerced_to_tuple(self):
        s = Signal.create("p", evidence=[EvidenceRef("chunk", "docs", "c1")])
        assert isinstance(s.evidence, tuple)

    def test_to_dict_is_json_serialisable(self):
        s = Signal.create(
            "p",
            {"ip": "10.0.0.1"},
            confidence=0.5,
            evidence=[EvidenceRef("chunk", "docs", "c1", {"start": 0, "end": 10})],
            embeddings=[EmbeddingRef("m", [1, 0])],
        )
        data = json.loads(json.dumps(s.to_dict()))
        assert data["evidence"][0]["locator"] == {"start": 0, "end": 10}
        assert data["embeddings"][0]["vector"] == [1.0, 0.0]


class TestEvidenceRef:
    def test_locator_excluded_from_equality(self):
        a = EvidenceRef("chunk", "docs", "c1", {"start": 0})
        b = EvidenceRef("chunk", "docs", "c1", {"start": 99})
        assert a == b
        assert hash(a) == hash(b)

    def test_content_hash_part_of_identity(self):
        assert EvidenceRef("chunk", "docs", "c1") != EvidenceRef(
            "chunk", "docs", "c1", content_hash="abc"
        )


class TestDroppedSignal:
    def test_only_unreachable_is_retryable(self):
        for reason in DropReason:
            d = DroppedSignal("s1", "p", reason, 1)
            assert d.retryable is (reason == DropReason.STORE_UNREACHABLE)


class TestCFMoMResult:
    def _result(self, decision) -> CFMoMResult:
        return CFMoMResult(
            correlation_id="c",
            decision=decision,
            reason="early exit",
            aggregation=AggregatedResult(score=0.9, confidence=0.6, band="high", early_exit=True),
            signals=(Signal.create("p", confidence=0.9),),
            dropped=(DroppedSignal("x", "q", DropReason.HASH_MISMATCH, 1),),
            completed_proposers=frozenset({"p"}),
            failed_proposers=frozenset({"q"}),
            failures=(ProposerFailure("q", FailureKind.TIMEOUT, 1, "slow"),),
            wave_count=1,
            total_duration_ms=12.3456,
            termination=TerminationReason.EARLY_EXIT,
        )

    def test_shortcut_properties(self):
        r = self._result("block")
        assert r.score == 0.9
        assert r.band == "high"
        assert r.early_exit is True

    def test_to_dict_renders_enum_decision(self):
        data = self._result(CommonDecision.BLOCK).to_dict()
        assert data["decision"] == "block"
        assert data["termination"] == "early_exit"
        assert data["dropped"][0]["reason"] == "hash_mismatch"
        assert data["failures"][0]["kind"] == "timeout"
        json.dumps(data)


class TestProposerState:
    def test_helpers(self, proposer_state):
        a = Signal.create("a", confidence=0.2, facts_schema_id="ip")
        b = Signal.create("b", confidence=0.3)
        state = dataclasses.replace(
            proposer_state,
            collected_signals=(a, b),
            orchestration_signals={"suspicious": True},
        )
        assert state.signals_from("a") == [a]
        assert state.signals_by_schema("ip") == [a]
        assert state.has_signal("suspicious")
        assert state.get_signal("missing", 3) == 3
        assert state.current_band == "low"


class TestProtocols:
    def test_memory_store_satisfies_protocol(self):
        assert isinstance(InMemoryEvidenceStore(), EvidenceStore)

    def test_proposer_base_satisfies_protocol(self):
        assert isinstance(ProposerBase("p"), Proposer)
