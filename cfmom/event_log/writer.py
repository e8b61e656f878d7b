"""Per-run JSONL event log.

Layout: ``<log_dir>/<correlation_id>/events.jsonl``, one RunEvent per line.
"""

from __future__ import annotations

import json
import time
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from cfmom.contracts import RunEvent


class EventLog:
    """Append-only record of one orchestration run.

    ``record()`` stamps the correlation id, wall-clock time and elapsed
    seconds since the log was opened; ``emit()`` appends a prebuilt event.
    Reads skip lines that do not parse, so a run killed mid-write still
    yields everything before the torn line.
    """

    FILENAME = "events.jsonl"

    def __init__(self, log_dir: str | Path, correlation_id: str, *, clock=time.monotonic) -> None:
        self.correlation_id = correlation_id
        self._run_dir = Path(log_dir) / correlation_id
        self._run_dir.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._opened = clock()

    @property
    def path(self) -> Path:
        return self._run_dir / self.FILENAME

    def record(self, event: str, *, wave: int, details: dict[str, Any] | None = None) -> RunEvent:
        entry = make_event(
            event=event,
            correlation_id=self.correlation_id,
            wave=wave,
            elapsed_s=self._clock() - self._opened,
            details=details,
        )
        self.emit(entry)
        return entry

    def emit(self, entry: RunEvent) -> None:
        # default=str: details may carry enums, sets or refs
        with self.path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")

    def _entries(self) -> Iterator[RunEvent]:
        try:
            with self.path.open(encoding="utf-8") as f:
                for raw in f:
                    if not raw.strip():
                        continue
                    try:
                        yield json.loads(raw)
                    except json.JSONDecodeError:
                        continue
        except FileNotFoundError:
            return

    def read_all(self, event: str | None = None) -> list[RunEvent]:
        """Events in write order, optionally only those named ``event``."""
        return [e for e in self._entries() if event is None or e.get("event") == event]

    def counts(self) -> dict[str, int]:
        """Number of events per event name."""
        return dict(Counter(e.get("event", "?") for e in self._entries()))


def make_event(
    *,
    event: str,
    correlation_id: str,
    wave: int,
    elapsed_s: float,
    details: dict[str, Any] | None = None,
) -> RunEvent:
    return RunEvent(
        event=event,
        correlation_id=correlation_id,
        wave=wave,
        ts=datetime.now(timezone.utc).isoformat(),
        elapsed_s=round(elapsed_s, 3),
        details=details or {},
    )
