"""Signal fusion — score, band, and early-exit flag from validated signals.

The combination must be order-insensitive and monotonic:
  - permutations of the same multiset give bit-identical scores, so
    factors are sorted before they are multiplied and sums use fsum;
  - adding a valid signal never lowers the score. Both strategies only
    ever multiply the residual doubt by a factor in [0, 1] (noisy_or) or
    take a max (max), and IEEE rounding is monotonic, so this holds
    exactly, not just approximately.

There is no arithmetic-mean strategy: a weak corroborating
signal would lower it.
"""

from __future__ import annotations

import math
from typing import Callable, Mapping, Sequence

from cfmom.config import Settings
from cfmom.contracts import AggregatedResult, AggregationStrategy, SchemaBreakdown, Signal
from cfmom.scoring.bands import BandThresholds, classify_band

WeightResolver = Callable[[Signal], float]


class Aggregator:
    """Fuses the cumulative set of valid signals into an AggregatedResult."""

    def __init__(
        self,
        band_thresholds: BandThresholds,
        *,
        strategy: AggregationStrategy | str = AggregationStrategy.NOISY_OR,
        early_exit_threshold: float | None = None,
        high_confidence_signal: float | None = None,
        default_weight: float = 1.0,
        schema_weights: Mapping[str, float] | None = None,
        weight_resolver: WeightResolver | None = None,
        confidence_weight_divisor: float = 5.0,
    ) -> None:
        if not band_thresholds:
            raise ValueError("at least one band threshold is required")
        self.band_thresholds = tuple(band_thresholds)
        self.strategy = AggregationStrategy(strategy)
        self.early_exit_threshold = early_exit_threshold
        self.high_confidence_signal = high_confidence_signal
        self._default_weight = default_weight
        self._schema_weights = dict(schema_weights or {})
        self._weight_resolver = weight_resolver
        self._divisor = confidence_weight_divisor

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        schema_weights: Mapping[str, float] | None = None,
        weight_resolver: WeightResolver | None = None,
    ) -> Aggregator:
        return cls(
            settings.band_thresholds,
            strategy=settings.aggregation_strategy,
            early_exit_threshold=settings.early_exit_threshold,
            high_confidence_signal=settings.high_confidence_signal,
            default_weight=settings.default_weight,
            schema_weights=schema_weights,
            weight_resolver=weight_resolver,
            confidence_weight_divisor=settings.confidence_weight_divisor,
        )

    def weight_of(self, signal: Signal) -> float:
        """Trust weight in [0, 1]: resolver > explicit > schema table > default."""
        if self._weight_resolver is not None:
            w = self._weight_resolver(signal)
        elif signal.weight is not None:
            w = signal.weight
        else:
            w = self._schema_weights.get(signal.facts_schema_id, self._default_weight)
        return min(1.0, max(0.0, float(w)))

    def score(self, signals: Sequence[Signal]) -> float:
        """Combined score of a signal multiset. 0.0 when empty."""
        contributions = [self.weight_of(s) * s.confidence for s in signals]
        if not contributions:
            return 0.0
        if self.strategy == AggregationStrategy.MAX:
            return max(contributions)
        residual = 1.0
        for factor in sorted(1.0 - c for c in contributions):
            residual *= factor
        return 1.0 - residual

    def aggregate(self, signals: Sequence[Signal]) -> AggregatedResult:
        if not signals:
            return AggregatedResult(
                score=0.0,
                confidence=0.0,
                band=classify_band(0.0, self.band_thresholds),
            )

        score = self.score(signals)
        total_weight = math.fsum(sorted(self.weight_of(s) for s in signals))
        confidence = min(1.0, total_weight / self._divisor)
        early_exit, classification = self._early_exit(signals, score)

        return AggregatedResult(
            score=score,
            confidence=round(confidence, 6),
            band=classify_band(score, self.band_thresholds),
            early_exit=early_exit,
            early_exit_classification=classification,
            contributing_proposers=frozenset(s.source_id for s in signals),
            signal_count=len(signals),
            schema_breakdown=_schema_breakdown(signals),
        )

    def _early_exit(self, signals: Sequence[Signal], score: float) -> tuple[bool, str | None]:
        # Deterministic pick: flagged signals ordered by (confidence, id).
        flagged = sorted(
            (s for s in signals if s.trigger_early_exit),
            key=lambda s: (-s.confidence, s.id),
        )
        if flagged:
            top = flagged[0]
            return True, top.early_exit_classification or f"signal:{top.source_id}"

        if self.early_exit_threshold is not None and score >= self.early_exit_threshold:
            return True, f"score>={self.early_exit_threshold:g}"

        if self.high_confidence_signal is not None:
            strongest = max(signals, key=lambda s: (s.confidence, s.id))
            if strongest.confidence >= self.high_confidence_signal:
                return True, f"high_confidence:{strongest.source_id}"

        return False, None


def _schema_breakdown(signals: Sequence[Signal]) -> dict[str, SchemaBreakdown]:
    grouped: dict[str, list[float]] = {}
    for s in signals:
        grouped.setdefault(s.facts_schema_id, []).append(s.confidence)
    return {
        schema_id: SchemaBreakdown(
            schema_id=schema_id,
            signal_count=len(confs),
            average_confidence=round(math.fsum(sorted(confs)) / len(confs), 6),
        )
        for schema_id, confs in sorted(grouped.items())
    }
