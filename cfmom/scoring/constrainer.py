"""Evidence constrainer — binary pass/drop gate over a batch of signals.

A signal passes iff every EvidenceRef it cites verifies against its store.
Drops are recorded with the reason, because the reasons differ in kind:

  unresolvable       — store unknown, unit absent, or store answered with an
                       error other than unreachability. Not retried.
  hash_mismatch      — store content differs from the cited hash. Not
                       retried; possible fabrication, surfaced on stderr.
  store_unreachable  — EvidenceUnreachable after evidence_retry_limit
                       retries with exponential backoff. Retryable in a
                       later wave; never counts as proposer failure.
  verification_timeout — the store had not answered when validate()'s
                       timeout ran out. Not retried.

Refs are verified concurrently and identical refs within one batch are
verified once.
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass
from typing import Callable, Mapping

from cfmom.config import Settings
from cfmom.contracts import (
    DropReason,
    DroppedSignal,
    EvidenceRef,
    EvidenceStore,
    EvidenceUnreachable,
    Signal,
)
from cfmom.evidence.refs import hashes_match, normalize_hash

SchemaValidator = Callable[[Signal], "str | None"]

# Permanent reasons win over the retryable one when several refs fail.
_REASON_PRIORITY = {
    DropReason.HASH_MISMATCH: 0,
    DropReason.UNRESOLVABLE: 1,
    DropReason.STORE_UNREACHABLE: 2,
    DropReason.VERIFICATION_TIMEOUT: 3,
}


@dataclass(frozen=True)
class RefCheck:
    """Outcome of verifying one EvidenceRef. reason=None means verified."""

    ref: EvidenceRef
    reason: DropReason | None = None
    detail: str = ""
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.reason is None


@dataclass(frozen=True)
class ConstraintOutcome:
    valid: tuple[Signal, ...]
    dropped: tuple[DroppedSignal, ...]

    @property
    def retryable(self) -> tuple[str, ...]:
        """Ids of signals dropped only because a store was unreachable."""
        return tuple(d.signal_id for d in self.dropped if d.retryable)

    @property
    def hash_mismatches(self) -> tuple[DroppedSignal, ...]:
        return tuple(d for d in self.dropped if d.reason == DropReason.HASH_MISMATCH)


class Constrainer:
    """Validates signals against the evidence stores that hold their evidence."""

    def __init__(
        self,
        stores: Mapping[str, EvidenceStore],
        *,
        retry_limit: int = 2,
        backoff: float = 0.05,
        require_evidence: bool = False,
        validators: Mapping[str, SchemaValidator] | None = None,
        require_registered_schema: bool = False,
    ) -> None:
        if retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        self._stores = dict(stores)
        self._retry_limit = retry_limit
        self._backoff = backoff
        self._require_evidence = require_evidence
        self._validators: dict[str, SchemaValidator] = dict(validators or {})
        self._require_registered_schema = require_registered_schema

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        stores: Mapping[str, EvidenceStore],
        *,
        validators: Mapping[str, SchemaValidator] | None = None,
    ) -> Constrainer:
        return cls(
            stores,
            retry_limit=settings.evidence_retry_limit,
            backoff=settings.evidence_backoff,
            require_evidence=settings.require_evidence,
            validators=validators,
            require_registered_schema=settings.require_registered_schema,
        )

    @property
    def store_names(self) -> list[str]:
        return list(self._stores)

    def register_store(self, name: str, store: EvidenceStore) -> None:
        self._stores[name] = store

    def register_schema(self, schema_id: str, validator: SchemaValidator) -> None:
        self._validators[schema_id] = validator

    # --- Schema admission ---

    def _check_schema(self, signal: Signal) -> str | None:
        validator = self._validators.get(signal.facts_schema_id)
        if validator is None:
            if self._require_registered_schema:
                return f"no validator registered for schema '{signal.facts_schema_id}'"
            return None
        error = validator(signal)
        if error:
            return f"schema '{signal.facts_schema_id}' rejected facts: {error}"
        return None

    # --- Evidence verification ---

    async def verify_ref(self, ref: EvidenceRef) -> RefCheck:
        """Verify a single ref, retrying unreachable stores with backoff."""
        store = self._stores.get(ref.store)
        if store is None:
            return RefCheck(ref, DropReason.UNRESOLVABLE, f"unknown store '{ref.store}'", 0)

        last_error = ""
        for attempt in range(self._retry_limit + 1):
            try:
                if not await store.exists(ref.kind, ref.id):
                    return RefCheck(
                        ref,
                        DropReason.UNRESOLVABLE,
                        f"{ref.kind}/{ref.id} not found in '{ref.store}'",
                        attempt + 1,
                    )
                if ref.content_hash is not None:
                    actual = await store.content_hash(ref.kind, ref.id)
                    if not hashes_match(ref.content_hash, actual):
                        return RefCheck(
                            ref,
                            DropReason.HASH_MISMATCH,
                            f"expected {ref.content_hash}, store has "
                            f"{normalize_hash(actual)}",
                            attempt + 1,
                        )
                return RefCheck(ref, None, "", attempt + 1)
            except EvidenceUnreachable as e:
                last_error = str(e) or "unreachable"
                if attempt < self._retry_limit:
                    await asyncio.sleep(self._backoff * 2**attempt)
            except Exception as e:
                return RefCheck(
                    ref,
                    DropReason.UNRESOLVABLE,
                    f"store '{ref.store}' error: {type(e).__name__}: {e}",
                    attempt + 1,
                )

        return RefCheck(
            ref,
            DropReason.STORE_UNREACHABLE,
            f"store '{ref.store}' unreachable after {self._retry_limit + 1} attempt(s): "
            f"{last_error}",
            self._retry_limit + 1,
        )

    async def validate(
        self,
        signals: list[Signal] | tuple[Signal, ...],
        *,
        wave: int,
        capacity: int | None = None,
        timeout: float | None = None,
    ) -> ConstraintOutcome:
        """Split a batch into valid signals and drop records.

        ``capacity`` caps how many signals may pass; the overflow is
        dropped with reason "capacity" in input order. ``timeout`` bounds
        the wait on stores: refs still pending then are cancelled and their
        signals dropped with reason "verification_timeout".
        """
        checks: dict[EvidenceRef, asyncio.Task[RefCheck]] = {}

        def _check(ref: EvidenceRef) -> asyncio.Task[RefCheck]:
            if ref not in checks:
                checks[ref] = asyncio.ensure_future(self.verify_ref(ref))
            return checks[ref]

        pending: list[tuple[Signal, tuple[EvidenceRef, ...]]] = []
        dropped: list[DroppedSignal] = []

        for signal in signals:
            schema_error = self._check_schema(signal)
            if schema_error:
                dropped.append(
                    DroppedSignal(
                        signal.id,
                        signal.source_id,
                        DropReason.SCHEMA_INVALID,
                        wave,
                        detail=schema_error,
                    )
                )
                continue
            if not signal.evidence and self._require_evidence:
                dropped.append(
                    DroppedSignal(
                        signal.id,
                        signal.source_id,
                        DropReason.UNRESOLVABLE,
                        wave,
                        detail="signal cites no evidence",
                    )
                )
                continue
            for ref in signal.evidence:
                _check(ref)
            pending.append((signal, signal.evidence))

        results = await self._collect(checks, timeout)

        valid: list[Signal] = []
        for signal, refs in pending:
            failures = [results[ref] for ref in refs if not results[ref].ok]
            if not failures:
                if capacity is not None and len(valid) >= capacity:
                    dropped.append(
                        DroppedSignal(
                            signal.id,
                            signal.source_id,
                            DropReason.CAPACITY,
                            wave,
                            detail=f"signal capacity ({capacity}) reached",
                        )
                    )
                else:
                    valid.append(signal)
                continue

            worst = min(failures, key=lambda c: _REASON_PRIORITY[c.reason])
            if worst.reason == DropReason.HASH_MISMATCH:
                print(
                    f"WARNING: hash mismatch on {worst.ref.store}/{worst.ref.kind}/{worst.ref.id} "
                    f"cited by {signal.source_id} (signal {signal.id}): possible fabrication",
                    file=sys.stderr,
                )
            dropped.append(
                DroppedSignal(
                    signal.id,
                    signal.source_id,
                    worst.reason,
                    wave,
                    evidence=worst.ref,
                    detail=worst.detail,
                )
            )

        return ConstraintOutcome(valid=tuple(valid), dropped=tuple(dropped))

    async def _collect(
        self, checks: dict[EvidenceRef, asyncio.Task[RefCheck]], timeout: float | None
    ) -> dict[EvidenceRef, RefCheck]:
        if not checks:
            return {}
        try:
            _, late = await asyncio.wait(checks.values(), timeout=timeout)
        finally:
            for task in checks.values():
                if not task.done():
                    task.cancel()
        if late:
            await asyncio.gather(*late, return_exceptions=True)

        results: dict[EvidenceRef, RefCheck] = {}
        for ref, task in checks.items():
            if task in late:
                results[ref] = RefCheck(
                    ref,
                    DropReason.VERIFICATION_TIMEOUT,
                    f"store '{ref.store}' had not answered within the verification "
                    f"budget ({timeout:.3f}s)",
                    0,
                )
            else:
                results[ref] = task.result()
        return results
