"""Orchestrator — the wave loop.

Idle -> Running(1..max_waves) -> Terminated. Each wave dispatches the ready
proposers, verifies what they emitted, re-aggregates the cumulative valid
set, and decides whether to stop. Cumulative state lives in an immutable
RunState that every wave replaces.

Each proposer is dispatched at most once per run, in the first wave whose
orchestration signals satisfy its triggers. A failed proposer is not
retried, so the completed and failed sets never overlap.
"""

from __future__ import annotations

import asyncio
import sys
import uuid
from collections import Counter
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Sequence

from cfmom.config import Settings, get_settings
from cfmom.contracts import (
    AggregatedResult,
    CFMoMResult,
    ConfigurationError,
    DropReason,
    DroppedSignal,
    EvidenceStore,
    FailureKind,
    Proposer,
    ProposerFailure,
    ProposerState,
    Signal,
    TerminationReason,
)
from cfmom.event_log.writer import EventLog
from cfmom.orchestration.circuit import CircuitBreaker
from cfmom.orchestration.policy import as_policy, no_evidence_decision
from cfmom.orchestration.scheduler import WaveScheduler
from cfmom.orchestration.triggers import (
    COMPLETED_PROPOSERS_SIGNAL,
    CURRENT_BAND_SIGNAL,
    CURRENT_SCORE_SIGNAL,
    WAVE_SIGNAL,
    is_ready,
)
from cfmom.proposers.base import as_proposer
from cfmom.scoring.aggregator import Aggregator
from cfmom.scoring.bands import lowest_band
from cfmom.scoring.constrainer import ConstraintOutcome, Constrainer

ORCHESTRATION_SIGNALS_KEY = "orchestration_signals"


@dataclass(frozen=True)
class RunState:
    """Cumulative state after ``wave`` waves."""

    aggregation: AggregatedResult
    wave: int = 0
    signals: tuple[Signal, ...] = ()  # raw, every wave, dispatch order
    valid: tuple[Signal, ...] = ()
    dropped: tuple[DroppedSignal, ...] = ()
    retry_queue: tuple[Signal, ...] = ()  # dropped for unreachable stores
    dispatched: frozenset[str] = frozenset()
    completed: frozenset[str] = frozenset()
    failed: frozenset[str] = frozenset()
    failures: tuple[ProposerFailure, ...] = ()
    orchestration_signals: Mapping[str, Any] = field(default_factory=dict)


class Orchestrator:
    """Reusable wave-loop driver. One instance may serve many runs.

    The circuit breaker is per instance, so proposer health carries across
    runs on the same orchestrator.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        decision_policy: Any,
        constrainer: Constrainer | None = None,
        stores: Mapping[str, EvidenceStore] | None = None,
        aggregator: Aggregator | None = None,
        scheduler: WaveScheduler | None = None,
        log_dir: str | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        _validate(self.settings)
        if constrainer is not None and stores is not None:
            raise ConfigurationError("Pass either constrainer or stores, not both")

        self.constrainer = constrainer or Constrainer.from_settings(self.settings, stores or {})
        self.aggregator = aggregator or Aggregator.from_settings(self.settings)
        self.scheduler = scheduler or WaveScheduler()
        self.decision_policy = as_policy(
            decision_policy, lowest_band(self.aggregator.band_thresholds)
        )
        self.circuit = CircuitBreaker(
            self.settings.circuit_breaker_threshold, self.settings.circuit_breaker_reset
        )
        self._log_dir = log_dir if log_dir is not None else self.settings.run_log_dir

    async def run(
        self,
        proposers: Sequence[Any],
        *,
        context: Any = None,
        cancel: asyncio.Event | None = None,
    ) -> CFMoMResult:
        """Run the wave loop to termination and return the result.

        Raises ConfigurationError before any wave for invalid settings or
        duplicate proposer names. Proposer and evidence failures never
        escape; they are recorded in the result.
        """
        settings = self.settings
        _validate(settings)
        for warning in settings.warnings():
            print(f"WARNING: {warning}", file=sys.stderr)

        proposers = [as_proposer(p) for p in proposers]
        names = [p.name for p in proposers]
        duplicates = sorted(n for n, count in Counter(names).items() if count > 1)
        if duplicates:
            raise ConfigurationError(f"Duplicate proposer names: {duplicates}")
        # Stable: ties keep caller order
        ordered = sorted(proposers, key=lambda p: getattr(p, "priority", 0))

        loop = asyncio.get_running_loop()
        started = loop.time()
        correlation_id = uuid.uuid4().hex
        log = EventLog(self._log_dir, correlation_id, clock=loop.time) if self._log_dir else None
        run_end = started + settings.overall_deadline

        def emit(event: str, wave: int, details: dict[str, Any]) -> None:
            if log is not None:
                log.record(event, wave=wave, details=details)

        emit("run.started", 0, {"proposers": names, "max_waves": settings.max_waves})

        empty = self.aggregator.aggregate(())
        state = RunState(
            aggregation=empty, orchestration_signals=_system_signals(empty, frozenset(), 0)
        )
        termination: TerminationReason | None = None

        while termination is None:
            if cancel is not None and cancel.is_set():
                termination = TerminationReason.CANCELLED
                break
            remaining = run_end - loop.time()
            if remaining <= 0:
                termination = TerminationReason.DEADLINE
                break

            wave = state.wave + 1
            ready = self._ready(ordered, state)
            if not ready and not state.retry_queue:
                termination = TerminationReason.NO_READY_PROPOSERS
                break

            emit(
                "wave.started",
                wave,
                {"proposers": [p.name for p in ready], "retries": len(state.retry_queue)},
            )
            view = ProposerState(
                context=context,
                correlation_id=correlation_id,
                wave=wave,
                collected_signals=state.valid,
                aggregation=state.aggregation,
                completed_proposers=state.completed,
                failed_proposers=state.failed,
                orchestration_signals=dict(state.orchestration_signals),
                elapsed_s=loop.time() - started,
            )
            outcome = await self.scheduler.run_wave(
                ready,
                view,
                deadline=min(settings.per_wave_deadline, remaining),
                wave=wave,
                max_parallel=settings.parallelism_for(wave),
                cancel_event=cancel,
            )

            for name in outcome.completed:
                self.circuit.record_success(name)
            optional = {p.name: getattr(p, "optional", False) for p in ready}
            for failure in outcome.failures:
                emit("proposer.failed", wave, failure.to_dict())
                if not optional.get(failure.name, False):
                    print(
                        f"ERROR: required proposer '{failure.name}' failed in wave {wave} "
                        f"({failure.kind.value}): {failure.detail}",
                        file=sys.stderr,
                    )
                # Caller cancellation says nothing about proposer health
                if failure.kind == FailureKind.CANCELLED:
                    continue
                if self.circuit.record_failure(failure.name):
                    emit(
                        "circuit.opened",
                        wave,
                        {"name": failure.name, "threshold": self.circuit.threshold},
                    )

            to_verify = state.retry_queue + outcome.signals
            verified, deadline_hit = await self._verify(
                to_verify,
                wave=wave,
                capacity=max(0, settings.max_signals - len(state.valid)),
                timeout=max(run_end - loop.time(), settings.verification_grace),
            )
            for d in verified.dropped:
                if d.reason == DropReason.HASH_MISMATCH:
                    emit("evidence.hash_mismatch", wave, d.to_dict())
            if verified.dropped:
                by_reason = Counter(d.reason.value for d in verified.dropped)
                emit(
                    "evidence.dropped",
                    wave,
                    {"count": len(verified.dropped), "by_reason": dict(by_reason)},
                )

            state = self._advance(state, wave, ready, outcome, verified, to_verify)
            emit(
                "wave.completed",
                wave,
                {
                    "score": state.aggregation.score,
                    "band": state.aggregation.band,
                    "completed": list(outcome.completed),
                    "failed": list(outcome.failed),
                    "valid": len(verified.valid),
                    "dropped": len(verified.dropped),
                },
            )

            if deadline_hit:
                termination = TerminationReason.DEADLINE
            elif outcome.cancelled or (cancel is not None and cancel.is_set()):
                termination = TerminationReason.CANCELLED
            elif state.aggregation.early_exit:
                termination = TerminationReason.EARLY_EXIT
            elif state.dispatched and not state.completed:
                termination = TerminationReason.ALL_FAILED
            elif wave >= settings.max_waves:
                termination = TerminationReason.MAX_WAVES
            elif loop.time() >= run_end:
                termination = TerminationReason.DEADLINE
            elif settings.wave_interval > 0:
                await _pause(min(settings.wave_interval, run_end - loop.time()), cancel)

        result = self._result(state, termination, correlation_id, (loop.time() - started) * 1000)
        emit(
            "run.completed",
            state.wave,
            {
                "termination": termination.value,
                "decision": str(getattr(result.decision, "value", result.decision)),
                "score": result.score,
                "band": result.band,
            },
        )
        return result

    def _ready(self, ordered: Sequence[Proposer], state: RunState) -> list[Proposer]:
        return [
            p
            for p in ordered
            if p.name not in state.dispatched
            and getattr(p, "enabled", True)
            and self.circuit.is_closed(p.name)
            and is_ready(getattr(p, "triggers", None), state.orchestration_signals)
        ]

    async def _verify(
        self,
        signals: tuple[Signal, ...],
        *,
        wave: int,
        capacity: int,
        timeout: float,
    ) -> tuple[ConstraintOutcome, bool]:
        """Verify a batch, waiting on stores for at most ``timeout`` seconds.

        The second element is True when some store had not answered in time.
        """
        if not signals:
            return ConstraintOutcome((), ()), False
        outcome = await self.constrainer.validate(
            signals, wave=wave, capacity=capacity, timeout=timeout
        )
        timed_out = any(d.reason == DropReason.VERIFICATION_TIMEOUT for d in outcome.dropped)
        return outcome, timed_out

    def _advance(
        self,
        state: RunState,
        wave: int,
        ready: Sequence[Proposer],
        outcome: Any,
        verified: ConstraintOutcome,
        submitted: tuple[Signal, ...],
    ) -> RunState:
        valid = state.valid + verified.valid
        aggregation = self.aggregator.aggregate(valid)
        completed = state.completed | frozenset(outcome.completed)

        # A resubmitted signal's earlier drop record is replaced by this wave's verdict
        resubmitted = {s.id for s in state.retry_queue}
        kept = tuple(d for d in state.dropped if d.signal_id not in resubmitted)
        dropped = kept + verified.dropped
        retry_ids = set(verified.retryable)

        published = dict(state.orchestration_signals)
        for s in verified.valid:
            extra = s.metadata.get(ORCHESTRATION_SIGNALS_KEY)
            if isinstance(extra, Mapping):
                published.update(extra)
        published.update(_system_signals(aggregation, completed, wave))

        return replace(
            state,
            wave=wave,
            aggregation=aggregation,
            signals=state.signals + outcome.signals,
            valid=valid,
            dropped=dropped,
            retry_queue=tuple(s for s in submitted if s.id in retry_ids),
            dispatched=state.dispatched | frozenset(p.name for p in ready),
            completed=completed,
            failed=state.failed | frozenset(outcome.failed),
            failures=state.failures + outcome.failures,
            orchestration_signals=published,
        )

    def _result(
        self,
        state: RunState,
        termination: TerminationReason,
        correlation_id: str,
        duration_ms: float,
    ) -> CFMoMResult:
        if state.valid:
            decision = self.decision_policy.map_band(state.aggregation.band)
        else:
            decision = no_evidence_decision(
                self.decision_policy, lowest_band(self.aggregator.band_thresholds)
            )
        return CFMoMResult(
            correlation_id=correlation_id,
            decision=decision,
            reason=_explain(termination, state, self.settings),
            aggregation=state.aggregation,
            signals=state.signals,
            dropped=state.dropped,
            completed_proposers=state.completed,
            failed_proposers=state.failed,
            failures=state.failures,
            wave_count=state.wave,
            total_duration_ms=duration_ms,
            termination=termination,
        )


async def run(
    proposers: Sequence[Any],
    settings: Settings | None = None,
    *,
    decision_policy: Any,
    constrainer: Constrainer | None = None,
    stores: Mapping[str, EvidenceStore] | None = None,
    aggregator: Aggregator | None = None,
    context: Any = None,
    cancel: asyncio.Event | None = None,
) -> CFMoMResult:
    """One-shot convenience around Orchestrator.run()."""
    orchestrator = Orchestrator(
        settings,
        decision_policy=decision_policy,
        constrainer=constrainer,
        stores=stores,
        aggregator=aggregator,
    )
    return await orchestrator.run(proposers, context=context, cancel=cancel)


# --- Helpers ---


def _validate(settings: Settings) -> None:
    errors = settings.validate()
    if errors:
        raise ConfigurationError("Invalid settings: " + "; ".join(errors))


def _system_signals(
    aggregation: AggregatedResult, completed: frozenset[str], wave: int
) -> dict[str, Any]:
    return {
        COMPLETED_PROPOSERS_SIGNAL: sorted(completed),
        CURRENT_SCORE_SIGNAL: aggregation.score,
        CURRENT_BAND_SIGNAL: aggregation.band,
        WAVE_SIGNAL: wave,
    }


async def _pause(seconds: float, cancel: asyncio.Event | None) -> None:
    """Sleep between waves, waking early on cancellation."""
    if seconds <= 0:
        return
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except TimeoutError:
        pass


def _explain(termination: TerminationReason, state: RunState, settings: Settings) -> str:
    agg = state.aggregation
    if termination == TerminationReason.EARLY_EXIT:
        head = f"early exit ({agg.early_exit_classification}) in wave {state.wave}"
    elif termination == TerminationReason.MAX_WAVES:
        head = f"max waves ({settings.max_waves}) exhausted"
    elif termination == TerminationReason.DEADLINE:
        head = (
            f"overall deadline ({settings.overall_deadline:g}s) elapsed after {state.wave} wave(s)"
        )
    elif termination == TerminationReason.ALL_FAILED:
        head = "all dispatched proposers failed"
    elif termination == TerminationReason.NO_READY_PROPOSERS:
        head = f"no proposers ready after {state.wave} wave(s)"
    else:
        head = f"run cancelled after {state.wave} wave(s)"

    parts = [head]
    if state.valid:
        parts.append(
            f"score {agg.score:.3f} in band '{agg.band}' from {len(state.valid)} verified signal(s)"
        )
        if agg.confidence < 0.5:
            parts.append(f"low evidence confidence ({agg.confidence:.2f})")
    else:
        parts.append("no verified signals; decision is the empty-evidence default")

    if state.dropped:
        counts = Counter(d.reason.value for d in state.dropped)
        summary = ", ".join(f"{reason}={n}" for reason, n in sorted(counts.items()))
        parts.append(f"dropped {len(state.dropped)} signal(s) ({summary})")
    if state.failed:
        parts.append(f"failed proposers: {', '.join(sorted(state.failed))}")
    return "; ".join(parts)
