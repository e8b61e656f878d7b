"""Band classification over ordered score cut points."""

from __future__ import annotations

from typing import Sequence

BandThresholds = Sequence[tuple[str, float]]


def classify_band(score: float, thresholds: BandThresholds) -> str:
    """Classify a score into a named band.

    Bands are inclusive-lower, exclusive-upper; the top band is unbounded
    above. Scores below the first cut fall into the first (weakest) band.
    """
    if not thresholds:
        raise ValueError("at least one band threshold is required")
    band = thresholds[0][0]
    for name, cut in thresholds:
        if score >= cut:
            band = name
        else:
            break
    return band


def lowest_band(thresholds: BandThresholds) -> str:
    if not thresholds:
        raise ValueError("at least one band threshold is required")
    return thresholds[0][0]


def band_rank(band: str, thresholds: BandThresholds) -> int:
    """0-based position of a band, weakest first. Unknown bands rank -1."""
    for i, (name, _) in enumerate(thresholds):
        if name == band:
            return i
    return -1


def summarize_bands(bands: Sequence[str], thresholds: BandThresholds) -> dict[str, int]:
    """Count occurrences per band, including zero counts."""
    counts: dict[str, int] = {name: 0 for name, _ in thresholds}
    for b in bands:
        counts[b] = counts.get(b, 0) + 1
    return counts
