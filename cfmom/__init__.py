"""CFMoM: constrained fusion of evidence-backed opinions from multiple proposers."""

from cfmom.config import Settings, get_settings
from cfmom.contracts import (
    AggregatedResult,
    AggregationStrategy,
    CFMoMResult,
    ConfigurationError,
    DropReason,
    DroppedSignal,
    EmbeddingRef,
    EvidenceRef,
    EvidenceStore,
    EvidenceUnreachable,
    FailureKind,
    Proposer,
    ProposerFailure,
    ProposerState,
    Signal,
    TerminationReason,
)
from cfmom.orchestration.orchestrator import Orchestrator, run
from cfmom.orchestration.policy import BandDecisionPolicy, CommonDecision, trust_policy
from cfmom.proposers.base import FunctionProposer, ProposerBase
from cfmom.scoring.aggregator import Aggregator
from cfmom.scoring.constrainer import Constrainer

__version__ = "0.1.0"

__all__ = [
    "AggregatedResult",
    "AggregationStrategy",
    "Aggregator",
    "BandDecisionPolicy",
    "CFMoMResult",
    "CommonDecision",
    "ConfigurationError",
    "Constrainer",
    "DropReason",
    "DroppedSignal",
    "EmbeddingRef",
    "EvidenceRef",
    "EvidenceStore",
    "EvidenceUnreachable",
    "FailureKind",
    "FunctionProposer",
    "Orchestrator",
    "Proposer",
    "ProposerBase",
    "ProposerFailure",
    "ProposerState",
    "Settings",
    "Signal",
    "TerminationReason",
    "get_settings",
    "run",
    "trust_policy",
]
