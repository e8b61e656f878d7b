"""Decision policies: band -> domain decision.

The orchestrator is generic over the decision type. A policy is anything
with map_band(band); on_no_evidence() is optional and supplies the decision
used when no signal survived verification. Plain callables are wrapped.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Generic, Mapping, TypeVar

from cfmom.contracts import DecisionPolicy

D = TypeVar("D")


class CommonDecision(str, Enum):
    ALLOW = "allow"
    BLOCK = "block"
    CHALLENGE = "challenge"
    THROTTLE = "throttle"
    ESCALATE = "escalate"


class BandDecisionPolicy(Generic[D]):
    """Table-driven policy. Unmapped bands and empty evidence map to ``default``."""

    def __init__(self, mapping: Mapping[str, D], default: D) -> None:
        self.mapping = dict(mapping)
        self.default = default

    def map_band(self, band: str) -> D:
        return self.mapping.get(band, self.default)

    def on_no_evidence(self) -> D:
        return self.default

    def __repr__(self) -> str:
        return f"BandDecisionPolicy({self.mapping!r}, default={self.default!r})"


class CallablePolicy(Generic[D]):
    """Adapts ``fn(band) -> decision``. Empty evidence maps the lowest band."""

    def __init__(self, fn: Callable[[str], D], lowest_band: str) -> None:
        self._fn = fn
        self._lowest_band = lowest_band

    def map_band(self, band: str) -> D:
        return self._fn(band)

    def on_no_evidence(self) -> D:
        return self._fn(self._lowest_band)


def trust_policy() -> BandDecisionPolicy[CommonDecision]:
    """Allow/challenge/block policy for the default low..critical bands."""
    return BandDecisionPolicy(
        {
            "low": CommonDecision.ALLOW,
            "medium": CommonDecision.CHALLENGE,
            "high": CommonDecision.BLOCK,
            "critical": CommonDecision.BLOCK,
        },
        default=CommonDecision.ALLOW,
    )


def as_policy(policy: Any, lowest_band: str) -> DecisionPolicy:
    """Return ``policy`` unchanged if it has map_band, else wrap a callable."""
    if hasattr(policy, "map_band"):
        return policy
    if callable(policy):
        return CallablePolicy(policy, lowest_band)
    raise TypeError(
        f"decision_policy must have map_band() or be callable, got {type(policy).__name__}"
    )


def no_evidence_decision(policy: DecisionPolicy, lowest_band: str) -> Any:
    on_no_evidence = getattr(policy, "on_no_evidence", None)
    if on_no_evidence is not None:
        return on_no_evidence()
    return policy.map_band(lowest_band)
