"""Tests for scoring.aggregator and scoring.bands — fusion, bands, early exit."""

from __future__ import annotations

import itertools
import random

import pytest

from cfmom.contracts import AggregationStrategy, Signal
from cfmom.scoring.aggregator import Aggregator
from cfmom.scoring.bands import band_rank, classify_band, lowest_band, summarize_bands

BANDS = (("low", 0.0), ("medium", 0.4), ("high", 0.8))


def _signals(*confidences: float, **kwargs) -> list[Signal]:
    return [Signal.create(f"p{i}", confidence=c, **kwargs) for i, c in enumerate(confidences)]


class TestBands:
    @pytest.mark.parametrize(
        "score,band",
        [
            (0.0, "low"),
            (0.3999, "low"),
            (0.4, "medium"),
            (0.7999, "medium"),
            (0.8, "high"),
            (1.0, "high"),
        ],
    )
    def test_inclusive_lower_exclusive_upper(self, score, band):
        assert classify_band(score, BANDS) == band

    def test_below_first_cut_is_lowest_band(self):
        assert classify_band(0.1, (("quiet", 0.2), ("loud", 0.6))) == "quiet"

    def test_empty_thresholds_raise(self):
        with pytest.raises(ValueError):
            classify_band(0.5, ())
        with pytest.raises(ValueError):
            lowest_band(())

    def test_rank_and_summary(self):
        assert band_rank("high", BANDS) == 2
        assert band_rank("nope", BANDS) == -1
        assert summarize_bands(["low", "high", "high"], BANDS) == {"low": 1, "medium": 0, "high": 2}


class TestNoisyOr:
    def test_empty(self):
        result = Aggregator(BANDS).aggregate([])
        assert result.score == 0.0
        assert result.band == "low"
        assert result.confidence == 0.0
        assert result.early_exit is False
        assert result.signal_count == 0

    def test_scenario_scores_into_high_band(self):
        agg = Aggregator(BANDS, early_exit_threshold=0.8)
        result = agg.aggregate(_signals(0.9, 0.1, 0.1))
        assert result.score == pytest.approx(1 - 0.1 * 0.9 * 0.9)
        assert result.band == "high"
        assert result.early_exit is True
        assert result.early_exit_classification == "score>=0.8"
        assert result.contributing_proposers == {"p0", "p1", "p2"}

    def test_permutations_bit_identical(self):
        signals = _signals(0.137, 0.9, 0.333, 0.61, 0.07)
        agg = Aggregator(BANDS)
        scores = {agg.score(list(p)) for p in itertools.permutations(signals)}
        assert len(scores) == 1

    def test_adding_signals_never_lowers_score(self):
        rng = random.Random(7)
        agg = Aggregator(BANDS)
        signals: list[Signal] = []
        previous = 0.0
        for i in range(200):
            signals.append(Signal.create(f"p{i}", confidence=rng.random() * 0.3))
            score = agg.score(signals)
            assert score >= previous
            previous = score

    def test_zero_confidence_signal_changes_nothing(self):
        agg = Aggregator(BANDS)
        base = _signals(0.5, 0.2)
        assert agg.score(base + _signals(0.0)) == agg.score(base)

    def test_confidence_is_weight_mass(self):
        result = Aggregator(BANDS, confidence_weight_divisor=5.0).aggregate(_signals(0.1, 0.1))
        assert result.confidence == pytest.approx(0.4)

    def test_confidence_capped_at_one(self):
        result = Aggregator(BANDS, confidence_weight_divisor=2.0).aggregate(_signals(*[0.1] * 5))
        assert result.confidence == 1.0


class TestMax:
    def test_max_strategy(self):
        agg = Aggregator(BANDS, strategy="max")
        assert agg.strategy == AggregationStrategy.MAX
        assert agg.score(_signals(0.3, 0.6, 0.2)) == 0.6

    def test_unknown_strategy_raises(self):
        with pytest.raises(ValueError):
            Aggregator(BANDS, strategy="mean")


class TestWeights:
    def test_explicit_weight(self):
        agg = Aggregator(BANDS)
        assert agg.score(_signals(0.8, weight=0.5)) == pytest.approx(0.4)

    def test_schema_weight_table(self):
        agg = Aggregator(BANDS, default_weight=1.0, schema_weights={"ip": 0.25})
        (s,) = _signals(0.8, facts_schema_id="ip")
        assert agg.weight_of(s) == 0.25

    def test_resolver_takes_precedence(self):
        agg = Aggregator(BANDS, weight_resolver=lambda s: 0.1, schema_weights={"default": 0.9})
        (s,) = _signals(0.8, weight=0.7)
        assert agg.weight_of(s) == pytest.approx(0.1)

    def test_weight_clamped(self):
        agg = Aggregator(BANDS, weight_resolver=lambda s: 3.0)
        assert agg.weight_of(Signal.create("p", confidence=0.5)) == 1.0

    def test_from_settings(self, settings):
        agg = Aggregator.from_settings(settings)
        assert agg.band_thresholds == BANDS
        assert agg.early_exit_threshold == 0.8


class TestEarlyExit:
    def test_flagged_signal(self):
        flagged = Signal.create("rules", confidence=0.2).with_early_exit("known_fraud")
        result = Aggregator(BANDS, early_exit_threshold=0.9).aggregate([flagged])
        assert result.early_exit is True
        assert result.early_exit_classification == "known_fraud"

    def test_high_confidence_single_signal(self):
        agg = Aggregator(BANDS, early_exit_threshold=None, high_confidence_signal=0.7)
        result = agg.aggregate(_signals(0.75, weight=0.1))
        assert result.early_exit is True
        assert result.early_exit_classification == "high_confidence:p0"

    def test_no_early_exit_below_thresholds(self):
        result = Aggregator(BANDS, early_exit_threshold=0.8).aggregate(_signals(0.5))
        assert result.early_exit is False
        assert result.early_exit_classification is None


class TestSchemaBreakdown:
    def test_grouped_by_schema(self):
        signals = [
            Signal.create("a", confidence=0.2, facts_schema_id="ip"),
            Signal.create("b", confidence=0.4, facts_schema_id="ip"),
            Signal.create("c", confidence=0.9, facts_schema_id="device"),
        ]
        breakdown = Aggregator(BANDS).aggregate(signals).schema_breakdown
        assert list(breakdown) == ["device", "ip"]
        assert breakdown["ip"]["signal_count"] == 2
        assert breakdown["ip"]["average_confidence"] == pytest.approx(0.3)
