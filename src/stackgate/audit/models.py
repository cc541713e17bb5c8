"""Data models for run, unit and drift audit records."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RunRecord:
    run_id: str
    status: str
    dry_run: bool
    concurrency: int
    targets: str | None
    policy_checksum: str | None
    started_at: str
    completed_at: str | None = None
    exit_code: int | None = None


@dataclass
class TransitionRecord:
    run_id: str
    unit: str
    state: str
    reason: str | None
    created_at: str


@dataclass
class UnitResultRecord:
    run_id: str
    unit: str
    status: str
    reason: str | None
    plan_summary: str | None
    plan_checksum: str | None
    decision: str | None
    annotations: str | None
    error: str | None
    completed_at: str


@dataclass
class DriftRecord:
    report_id: str
    unit: str
    created_at: str
    delta_count: int
    deltas: str
    allowed: bool | None
    decision: str | None


@dataclass
class ArtifactRecord:
    artifact_id: str
    kind: str
    location: str
    checksum: str
    created_at: str
    run_id: str | None = None
    unit: str | None = None
