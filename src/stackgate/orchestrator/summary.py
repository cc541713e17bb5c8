"""Human-readable run summaries."""

from __future__ import annotations

from stackgate.drift.models import DriftReport
from stackgate.orchestrator.models import RunResult, UnitStatus


def _plan_counts(summary: dict[str, int] | None) -> str:
    if not summary:
        return ""
    return (
        f"+{summary.get('create', 0)} ~{summary.get('update', 0)} "
        f"-{summary.get('destroy', 0)}"
    )


def render_summary(result: RunResult) -> str:
    """One line per unit in run order; violated rules listed under blocked units."""
    lines = [f"Run {result.run_id}{' (dry run)' if result.dry_run else ''}"]
    width = max((len(name) for name in result.order), default=0)
    for name in result.order:
        unit = result.units[name]
        parts = [f"  {name.ljust(width)}  {unit.status.value}"]
        counts = _plan_counts(unit.plan_summary)
        if counts:
            parts.append(f"[{counts}]")
        if unit.reason:
            parts.append(f"({unit.reason})")
        if unit.annotations:
            parts.append("; ".join(unit.annotations))
        lines.append(" ".join(parts))
        if unit.status is UnitStatus.BLOCKED and unit.decision is not None:
            for violation in unit.decision.violations:
                target = f" [{violation.resource_id}]" if violation.resource_id else ""
                lines.append(f"      - {violation.rule_id}{target}: {violation.message}")
        if unit.status is UnitStatus.FAILED and unit.error:
            lines.append(f"      ! {unit.error}")
    counts: dict[str, int] = {}
    for unit in result.units.values():
        counts[unit.status.value] = counts.get(unit.status.value, 0) + 1
    totals = ", ".join(f"{count} {status}" for status, count in sorted(counts.items()))
    lines.append(f"Result: {totals or 'no units'}; exit code {result.exit_code}")
    if result.cancelled:
        lines.append("Run was cancelled before all units started.")
    return "\n".join(lines)


def render_drift(report: DriftReport) -> str:
    if not report.drifted:
        header = f"{report.unit}: in sync"
    else:
        header = f"{report.unit}: {len(report.deltas)} drifted resource(s)"
    lines = [header]
    for delta in report.deltas:
        lines.append(f"  {delta.kind.value:<9} {delta.resource_id}")
        for diff in delta.diffs:
            lines.append(f"      {diff.path}: {diff.before!r} -> {diff.after!r}")
    if report.decision is not None and not report.decision.allowed:
        for violation in report.decision.violations:
            lines.append(f"  policy {violation.rule_id}: {violation.message}")
    return "\n".join(lines)
