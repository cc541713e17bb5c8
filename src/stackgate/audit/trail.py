"""Audit trail facade used by the orchestrator and the drift detector."""

from __future__ import annotations

import json

from stackgate.audit.artifacts import ArtifactStore
from stackgate.audit.db import SqliteStore
from stackgate.audit.models import (
    DriftRecord,
    RunRecord,
    TransitionRecord,
    UnitResultRecord,
)
from stackgate.domain.plan import Plan
from stackgate.drift.models import DriftReport
from stackgate.orchestrator.models import (
    EXIT_BLOCKED,
    EXIT_FAILED,
    EXIT_SUCCESS,
    RunResult,
    UnitResult,
)
from stackgate.utils.serialization import json_default
from stackgate.utils.time import utc_now_iso

_RUN_STATUS = {EXIT_SUCCESS: "Succeeded", EXIT_BLOCKED: "Blocked", EXIT_FAILED: "Failed"}


def _dumps(value: object) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=json_default)


class AuditTrail:
    def __init__(self, store: SqliteStore, artifacts: ArtifactStore | None = None) -> None:
        self._store = store
        self._artifacts = artifacts

    @property
    def store(self) -> SqliteStore:
        return self._store

    def start_run(
        self,
        run_id: str,
        *,
        dry_run: bool,
        concurrency: int,
        targets: list[str] | None,
        policy_checksum: str | None,
    ) -> None:
        self._store.create_run(
            RunRecord(
                run_id=run_id,
                status="Running",
                dry_run=dry_run,
                concurrency=concurrency,
                targets=",".join(targets) if targets else None,
                policy_checksum=policy_checksum,
                started_at=utc_now_iso(),
            )
        )

    def transition(self, run_id: str, unit: str, state: str, reason: str | None) -> None:
        self._store.add_transition(
            TransitionRecord(
                run_id=run_id,
                unit=unit,
                state=state,
                reason=reason,
                created_at=utc_now_iso(),
            )
        )

    def plan_artifact(self, run_id: str, plan: Plan) -> None:
        if self._artifacts is None:
            return
        record = self._artifacts.write_json("plan", plan.to_dict(), run_id=run_id, unit=plan.unit)
        self._store.add_artifact(record)

    def unit_result(self, run_id: str, result: UnitResult) -> None:
        self._store.add_unit_result(
            UnitResultRecord(
                run_id=run_id,
                unit=result.unit,
                status=result.status.value,
                reason=result.reason,
                plan_summary=_dumps(result.plan_summary),
                plan_checksum=result.plan_checksum,
                decision=_dumps(result.decision.to_dict()) if result.decision else None,
                annotations=_dumps(result.annotations) if result.annotations else None,
                error=result.error,
                completed_at=utc_now_iso(),
            )
        )

    def finish_run(self, result: RunResult) -> None:
        if result.cancelled:
            status = "Cancelled"
        else:
            status = _RUN_STATUS.get(result.exit_code, "Failed")
        self._store.finish_run(result.run_id, status, result.exit_code, utc_now_iso())

    def drift_report(self, report: DriftReport) -> None:
        self._store.add_drift_report(
            DriftRecord(
                report_id=report.report_id,
                unit=report.unit,
                created_at=report.timestamp.isoformat(),
                delta_count=len(report.deltas),
                deltas=_dumps([delta.to_dict() for delta in report.deltas]) or "[]",
                allowed=report.decision.allowed if report.decision else None,
                decision=_dumps(report.decision.to_dict()) if report.decision else None,
            )
        )
        if self._artifacts is not None and report.drifted:
            record = self._artifacts.write_json("drift", report.to_dict(), unit=report.unit)
            self._store.add_artifact(record)
