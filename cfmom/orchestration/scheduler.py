"""Wave scheduler — concurrent fan-out of one wave's proposers under a deadline.

Proposers are dispatched together (bounded by a semaphore) and joined with
asyncio.wait until all finish or the wave deadline elapses. Whatever is
still running at the deadline is cancelled and recorded as a timeout; its
partial output is discarded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Sequence

from cfmom.contracts import FailureKind, Proposer, ProposerFailure, ProposerState, Signal


@dataclass(frozen=True)
class WaveOutcome:
    signals: tuple[Signal, ...]  # dispatch order
    completed: tuple[str, ...]
    failures: tuple[ProposerFailure, ...]
    cancelled: bool = False

    @property
    def failed(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.failures)


async def _invoke(proposer: Proposer, state: ProposerState, semaphore: asyncio.Semaphore) -> Any:
    async with semaphore:
        timeout = getattr(proposer, "execution_timeout", None)
        if timeout is not None:
            return await asyncio.wait_for(proposer.propose(state), timeout)
        return await proposer.propose(state)


def _coerce_signals(name: str, result: Any) -> list[Signal]:
    """Validate a proposer's return value. Raises TypeError on a bad shape."""
    if result is None:
        return []
    if not isinstance(result, (list, tuple)):
        raise TypeError(f"{name} returned {type(result).__name__}, expected a list of Signal")
    for item in result:
        if not isinstance(item, Signal):
            raise TypeError(f"{name} returned a {type(item).__name__} item, expected Signal")
    return list(result)


class WaveScheduler:
    async def run_wave(
        self,
        proposers: Sequence[Proposer],
        state: ProposerState,
        *,
        deadline: float,
        wave: int,
        max_parallel: int | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> WaveOutcome:
        """Run one wave and collect signals, completions and failures.

        Never raises for proposer misbehaviour. Cancelling the calling task
        cancels every proposer task before CancelledError propagates.
        """
        if not proposers:
            return WaveOutcome((), (), ())

        semaphore = asyncio.Semaphore(max_parallel or len(proposers))
        tasks = {
            asyncio.create_task(_invoke(p, state, semaphore), name=f"proposer:{p.name}"): p
            for p in proposers
        }
        cancel_waiter: asyncio.Task | None = None
        if cancel_event is not None:
            cancel_waiter = asyncio.create_task(cancel_event.wait())

        loop = asyncio.get_running_loop()
        wave_end = loop.time() + max(0.0, deadline)
        pending: set[asyncio.Task] = set(tasks)
        cancelled = False

        try:
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    cancelled = True
                    break
                remaining = wave_end - loop.time()
                if remaining <= 0:
                    break
                waitables = pending | {cancel_waiter} if cancel_waiter else pending
                done, _ = await asyncio.wait(
                    waitables, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
        finally:
            for task in pending:
                task.cancel()
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            leftovers = [*pending, *([cancel_waiter] if cancel_waiter else [])]
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)

        signals: list[Signal] = []
        completed: list[str] = []
        failures: list[ProposerFailure] = []

        for task, proposer in tasks.items():
            name = proposer.name
            if task in pending:
                if cancelled:
                    failures.append(
                        ProposerFailure(name, FailureKind.CANCELLED, wave, "run cancelled")
                    )
                else:
                    detail = f"wave deadline ({deadline:.3f}s) elapsed"
                    failures.append(ProposerFailure(name, FailureKind.TIMEOUT, wave, detail))
                continue
            if task.cancelled():
                failures.append(
                    ProposerFailure(name, FailureKind.CANCELLED, wave, "task cancelled")
                )
                continue

            exc = task.exception()
            if isinstance(exc, TimeoutError):
                timeout = getattr(proposer, "execution_timeout", None)
                failures.append(
                    ProposerFailure(
                        name, FailureKind.TIMEOUT, wave, f"execution timeout ({timeout}s) exceeded"
                    )
                )
                continue
            if exc is not None:
                failures.append(
                    ProposerFailure(name, FailureKind.ERROR, wave, f"{type(exc).__name__}: {exc}")
                )
                continue

            try:
                produced = _coerce_signals(name, task.result())
            except TypeError as e:
                failures.append(ProposerFailure(name, FailureKind.ERROR, wave, str(e)))
                continue
            signals.extend(produced)
            completed.append(name)

        return WaveOutcome(tuple(signals), tuple(completed), tuple(failures), cancelled)
