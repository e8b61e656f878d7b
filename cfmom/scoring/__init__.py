"""Scoring — evidence constraint, signal fusion, band classification."""

from cfmom.scoring.aggregator import Aggregator
from cfmom.scoring.bands import classify_band, lowest_band
from cfmom.scoring.constrainer import ConstraintOutcome, Constrainer

__all__ = ["Aggregator", "ConstraintOutcome", "Constrainer", "classify_band", "lowest_band"]
