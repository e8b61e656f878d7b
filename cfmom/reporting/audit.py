"""Markdown audit report with YAML frontmatter for a finished run."""

from __future__ import annotations

import json
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum

import yaml

from cfmom.contracts import CFMoMResult, DropReason


def _decision_value(decision: object) -> object:
    if isinstance(decision, Enum):
        return decision.value
    if decision is None or isinstance(decision, (str, int, float, bool)):
        return decision
    return str(decision)


def render_audit(result: CFMoMResult) -> str:
    """Render a run result as a Markdown audit trail."""
    agg = result.aggregation
    frontmatter = {
        "title": f"CFMoM run {result.correlation_id}",
        "generated": datetime.now(timezone.utc).isoformat(),
        "correlation_id": result.correlation_id,
        "decision": _decision_value(result.decision),
        "band": agg.band,
        "score": round(agg.score, 4),
        "confidence": round(agg.confidence, 4),
        "early_exit": agg.early_exit,
        "waves": result.wave_count,
        "termination": result.termination.value,
        "duration_ms": round(result.total_duration_ms, 1),
    }

    lines: list[str] = []
    lines.append("---")
    lines.append(yaml.safe_dump(frontmatter, default_flow_style=False, sort_keys=False).strip())
    lines.append("---")
    lines.append("")

    lines.append(f"# Decision: {_decision_value(result.decision)}")
    lines.append("")
    lines.append(result.reason)
    lines.append("")
    if agg.early_exit and agg.early_exit_classification:
        lines.append(f"Early exit: `{agg.early_exit_classification}`")
        lines.append("")

    # --- Signals ---
    dropped_ids = {d.signal_id for d in result.dropped}
    lines.append("## Signals")
    lines.append("")
    if not result.signals:
        lines.append("_No signals emitted._")
    else:
        lines.append("| Proposer | Confidence | Schema | Evidence | Status |")
        lines.append("|----------|-----------:|--------|---------:|--------|")
        for s in result.signals:
            status = "dropped" if s.id in dropped_ids else "verified"
            lines.append(
                f"| {s.source_id} | {s.confidence:.2f} | {s.facts_schema_id} "
                f"| {len(s.evidence)} | {status} |"
            )
    lines.append("")

    # --- Dropped evidence ---
    if result.dropped:
        lines.append("## Dropped Evidence")
        lines.append("")
        by_reason = defaultdict(list)
        for d in result.dropped:
            by_reason[d.reason].append(d)
        for reason in DropReason:
            records = by_reason.get(reason)
            if not records:
                continue
            heading = reason.value.replace("_", " ")
            if reason == DropReason.HASH_MISMATCH:
                heading += " (possible fabrication)"
            lines.append(f"### {heading.capitalize()} ({len(records)})")
            lines.append("")
            for d in records:
                ref = d.evidence
                where = f"`{ref.store}/{ref.kind}/{ref.id}`" if ref else "n/a"
                lines.append(f"- wave {d.wave}, {d.source_id}, {where}: {d.detail}")
            lines.append("")

    # --- Proposers ---
    lines.append("## Proposers")
    lines.append("")
    completed = ", ".join(sorted(result.completed_proposers)) or "none"
    lines.append(f"- **Completed:** {completed}")
    if result.failures:
        lines.append("- **Failed:**")
        for f in result.failures:
            lines.append(f"  - {f.name} (wave {f.wave}, {f.kind.value}): {f.detail}")
    else:
        lines.append("- **Failed:** none")
    lines.append("")

    # --- Schema breakdown ---
    if agg.schema_breakdown:
        lines.append("## Schema Breakdown")
        lines.append("")
        lines.append("| Schema | Signals | Avg. confidence |")
        lines.append("|--------|--------:|----------------:|")
        for b in agg.schema_breakdown.values():
            lines.append(
                f"| {b['schema_id']} | {b['signal_count']} | {b['average_confidence']:.2f} |"
            )
        lines.append("")

    return "\n".join(lines)


def result_to_json(result: CFMoMResult, *, indent: int | None = 2) -> str:
    return json.dumps(result.to_dict(), indent=indent, ensure_ascii=False, default=str)
