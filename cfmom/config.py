"""Settings loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from cfmom.contracts import AggregationStrategy


def _load_env() -> None:
    """Load .env from project root if it exists."""
    env_path = Path(__file__).resolve().parent.parent / ".env"
    if env_path.exists():
        load_dotenv(env_path)


_load_env()

DEFAULT_BAND_THRESHOLDS = "low:0.0,medium:0.4,high:0.7,critical:0.9"


def parse_band_thresholds(raw: str) -> tuple[tuple[str, float], ...]:
    """Parse "low:0.0,medium:0.4,high:0.8" into ordered (name, cut) pairs.

    Ordering is preserved as written; validate() checks it is increasing.
    """
    bands: list[tuple[str, float]] = []
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        name, sep, cut = part.partition(":")
        if not sep:
            raise ValueError(f"Band threshold {part!r} must look like name:cut")
        bands.append((name.strip(), float(cut)))
    return tuple(bands)


def parse_parallelism(raw: str) -> dict[int, int]:
    """Parse "1:8,2:4" into {wave: max_parallel}."""
    overrides: dict[int, int] = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        wave, sep, limit = part.partition(":")
        if not sep:
            raise ValueError(f"Parallelism override {part!r} must look like wave:limit")
        overrides[int(wave)] = int(limit)
    return overrides


def _optional_float(name: str, default: str) -> float | None:
    raw = os.environ.get(name, default).strip()
    if not raw or raw.lower() == "none":
        return None
    return float(raw)


def _flag(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass(frozen=True)
class Settings:
    # Wave loop
    max_waves: int = field(default_factory=lambda: int(os.environ.get("CFMOM_MAX_WAVES", "3")))
    per_wave_deadline: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_PER_WAVE_DEADLINE", "2.0"))
    )
    overall_deadline: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_OVERALL_DEADLINE", "5.0"))
    )
    wave_interval: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_WAVE_INTERVAL", "0.0"))
    )

    # Scoring
    early_exit_threshold: float | None = field(
        default_factory=lambda: _optional_float("CFMOM_EARLY_EXIT_THRESHOLD", "0.85")
    )
    high_confidence_signal: float | None = field(
        default_factory=lambda: _optional_float("CFMOM_HIGH_CONFIDENCE_SIGNAL", "")
    )
    band_thresholds: tuple[tuple[str, float], ...] = field(
        default_factory=lambda: parse_band_thresholds(
            os.environ.get("CFMOM_BAND_THRESHOLDS", DEFAULT_BAND_THRESHOLDS)
        )
    )
    aggregation_strategy: str = field(
        default_factory=lambda: os.environ.get("CFMOM_AGGREGATION_STRATEGY", "noisy_or")
    )
    default_weight: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_DEFAULT_WEIGHT", "1.0"))
    )
    confidence_weight_divisor: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_CONFIDENCE_WEIGHT_DIVISOR", "5.0"))
    )

    # Evidence verification
    evidence_retry_limit: int = field(
        default_factory=lambda: int(os.environ.get("CFMOM_EVIDENCE_RETRY_LIMIT", "2"))
    )
    evidence_backoff: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_EVIDENCE_BACKOFF", "0.05"))
    )
    evidence_http_timeout: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_EVIDENCE_HTTP_TIMEOUT", "5.0"))
    )
    # Verification may overrun the overall deadline by this much so that
    # signals collected in time are still checked
    verification_grace: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_VERIFICATION_GRACE", "0.25"))
    )
    require_evidence: bool = field(
        default_factory=lambda: _flag("CFMOM_REQUIRE_EVIDENCE", "false")
    )

    # Signal admission
    max_signals: int = field(
        default_factory=lambda: int(os.environ.get("CFMOM_MAX_SIGNALS", "1000"))
    )
    require_registered_schema: bool = field(
        default_factory=lambda: _flag("CFMOM_REQUIRE_REGISTERED_SCHEMA", "false")
    )

    # Concurrency
    max_parallel_proposers: int = field(
        default_factory=lambda: int(os.environ.get("CFMOM_MAX_PARALLEL_PROPOSERS", "10"))
    )
    parallelism_per_wave: dict[int, int] = field(
        default_factory=lambda: parse_parallelism(os.environ.get("CFMOM_PARALLELISM_PER_WAVE", ""))
    )

    # Circuit breaker
    circuit_breaker_threshold: int = field(
        default_factory=lambda: int(os.environ.get("CFMOM_CIRCUIT_BREAKER_THRESHOLD", "5"))
    )
    circuit_breaker_reset: float = field(
        default_factory=lambda: float(os.environ.get("CFMOM_CIRCUIT_BREAKER_RESET", "60.0"))
    )

    # Run event log (empty disables)
    run_log_dir: str = field(default_factory=lambda: os.environ.get("CFMOM_RUN_LOG_DIR", ""))

    # LLM-backed proposers
    anthropic_api_key: str = field(default_factory=lambda: os.environ.get("ANTHROPIC_API_KEY", ""))
    llm_model: str = field(
        default_factory=lambda: os.environ.get("CFMOM_LLM_MODEL", "claude-sonnet-4-5")
    )
    llm_max_concurrent: int = field(
        default_factory=lambda: int(os.environ.get("CFMOM_LLM_MAX_CONCURRENT", "5"))
    )

    @property
    def band_names(self) -> list[str]:
        return [name for name, _ in self.band_thresholds]

    def parallelism_for(self, wave: int) -> int:
        """Max concurrent proposers for a 1-based wave number."""
        return self.parallelism_per_wave.get(wave, self.max_parallel_proposers)

    def validate(self) -> list[str]:
        """Return list of validation errors. Empty list means valid."""
        errors = []
        if self.max_waves < 1:
            errors.append("MAX_WAVES must be >= 1")
        if self.per_wave_deadline <= 0:
            errors.append("PER_WAVE_DEADLINE must be > 0")
        if self.overall_deadline <= 0:
            errors.append("OVERALL_DEADLINE must be > 0")
        if self.wave_interval < 0:
            errors.append("WAVE_INTERVAL must be >= 0")
        if self.evidence_retry_limit < 0:
            errors.append("EVIDENCE_RETRY_LIMIT must be >= 0")
        if self.evidence_backoff < 0:
            errors.append("EVIDENCE_BACKOFF must be >= 0")
        if self.verification_grace < 0:
            errors.append("VERIFICATION_GRACE must be >= 0")
        for name, value in (
            ("EARLY_EXIT_THRESHOLD", self.early_exit_threshold),
            ("HIGH_CONFIDENCE_SIGNAL", self.high_confidence_signal),
        ):
            if value is not None and not 0.0 <= value <= 1.0:
                errors.append(f"{name} must be within [0, 1], got {value}")

        if not self.band_thresholds:
            errors.append("BAND_THRESHOLDS must define at least one band")
        else:
            names = self.band_names
            if len(set(names)) != len(names):
                errors.append(f"BAND_THRESHOLDS has duplicate band names: {names}")
            cuts = [cut for _, cut in self.band_thresholds]
            if any(b <= a for a, b in zip(cuts, cuts[1:])):
                errors.append(f"BAND_THRESHOLDS cuts must be strictly increasing, got {cuts}")

        valid_strategies = [s.value for s in AggregationStrategy]
        if self.aggregation_strategy not in valid_strategies:
            errors.append(
                f"AGGREGATION_STRATEGY must be one of {valid_strategies},"
                f" got '{self.aggregation_strategy}'"
            )
        if self.default_weight < 0:
            errors.append("DEFAULT_WEIGHT must be >= 0")
        if self.confidence_weight_divisor <= 0:
            errors.append("CONFIDENCE_WEIGHT_DIVISOR must be > 0")
        if self.max_parallel_proposers < 1:
            errors.append("MAX_PARALLEL_PROPOSERS must be >= 1")
        for wave, limit in self.parallelism_per_wave.items():
            if limit < 1:
                errors.append(f"PARALLELISM_PER_WAVE for wave {wave} must be >= 1, got {limit}")
        if self.circuit_breaker_threshold < 1:
            errors.append("CIRCUIT_BREAKER_THRESHOLD must be >= 1")
        if self.max_signals < 1:
            errors.append("MAX_SIGNALS must be >= 1")
        return errors

    def warnings(self) -> list[str]:
        """Return list of non-fatal configuration warnings."""
        warns: list[str] = []
        if self.per_wave_deadline > self.overall_deadline:
            warns.append(
                f"PER_WAVE_DEADLINE={self.per_wave_deadline}s exceeds "
                f"OVERALL_DEADLINE={self.overall_deadline}s; waves will be cut short."
            )
        if self.early_exit_threshold is not None and len(self.band_thresholds) >= 2:
            second_cut = self.band_thresholds[1][1]
            if self.early_exit_threshold < second_cut:
                warns.append(
                    f"EARLY_EXIT_THRESHOLD={self.early_exit_threshold} is below the "
                    f"'{self.band_thresholds[1][0]}' band cut ({second_cut}); runs may stop "
                    "while still in the lowest band."
                )
        return warns


def get_settings() -> Settings:
    """Create Settings from current environment."""
    return Settings()
