from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import pytest

from stackgate.audit.artifacts import ArtifactStore
from stackgate.audit.db import SqliteStore
from stackgate.audit.models import RunRecord, TransitionRecord
from stackgate.audit.trail import AuditTrail
from stackgate.domain.resources import StateSnapshot
from stackgate.drift.models import DeltaKind, DriftDelta, DriftReport
from stackgate.execution.planner import plan
from stackgate.orchestrator.models import RunResult, UnitResult, UnitStatus
from stackgate.policy.decision import PolicyDecision, Violation


@pytest.fixture
def store(tmp_path: Path):
    sqlite_store = SqliteStore(str(tmp_path / "audit" / "audit.sqlite"))
    yield sqlite_store
    sqlite_store.close()


@pytest.fixture
def artifacts(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(str(tmp_path / "artifacts"))


@pytest.fixture
def trail(store, artifacts) -> AuditTrail:
    return AuditTrail(store, artifacts)


def test_run_lifecycle(trail, store) -> None:
    trail.start_run(
        "run-1", dry_run=True, concurrency=2, targets=["a", "b"], policy_checksum="abc"
    )

    run = store.get_run("run-1")
    assert run.status == "Running"
    assert run.dry_run is True
    assert run.targets == "a,b"

    result = RunResult(
        run_id="run-1",
        order=("a",),
        units={"a": UnitResult(unit="a", status=UnitStatus.BLOCKED, reason="policy denied")},
        dry_run=True,
    )
    trail.finish_run(result)

    run = store.get_run("run-1")
    assert run.status == "Blocked"
    assert run.exit_code == 2
    assert run.completed_at is not None


def test_transitions_keep_insertion_order(trail, store) -> None:
    trail.start_run("run-1", dry_run=False, concurrency=1, targets=None, policy_checksum=None)
    for state in ("Planning", "Gating", "Blocked"):
        trail.transition("run-1", "a", state, "policy denied" if state == "Blocked" else None)
    trail.transition("run-1", "b", "Blocked", "dependency a blocked")

    states = [(t.unit, t.state) for t in store.list_transitions("run-1")]
    assert states == [("a", "Planning"), ("a", "Gating"), ("a", "Blocked"), ("b", "Blocked")]
    (only_b,) = store.list_transitions("run-1", unit="b")
    assert only_b.reason == "dependency a blocked"


def test_concurrent_appends_are_not_lost(store) -> None:
    store.create_run(
        RunRecord("run-1", "Running", False, 8, None, None, "2026-01-01T00:00:00+00:00")
    )

    def append(index: int) -> None:
        for step in range(25):
            store.add_transition(
                TransitionRecord("run-1", f"unit-{index}", f"state-{step}", None, "now")
            )

    threads = [threading.Thread(target=append, args=(i,)) for i in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    records = store.list_transitions("run-1")
    assert len(records) == 200
    for index in range(8):
        unit_states = [r.state for r in records if r.unit == f"unit-{index}"]
        assert unit_states == [f"state-{step}" for step in range(25)]


def test_unit_result_stores_decision(trail, store) -> None:
    trail.start_run("run-1", dry_run=False, concurrency=1, targets=None, policy_checksum=None)
    result = UnitResult(
        unit="a",
        status=UnitStatus.BLOCKED,
        reason="policy denied",
        plan_summary={"create": 1},
        decision=PolicyDecision(False, (Violation("tagging", "required_tags.owner", "missing"),)),
    )

    trail.unit_result("run-1", result)

    (record,) = store.list_unit_results("run-1")
    assert record.status == "Blocked"
    assert json.loads(record.plan_summary) == {"create": 1}
    assert json.loads(record.decision)["violations"][0]["rule_id"] == "required_tags.owner"
    assert record.annotations is None


def test_plan_artifact_written_with_checksum(trail, store, artifacts, make_unit) -> None:
    trail.start_run("run-1", dry_run=False, concurrency=1, targets=None, policy_checksum=None)
    unit = make_unit("a")
    unit_plan = plan(unit, StateSnapshot.empty("a"))

    trail.plan_artifact("run-1", unit_plan)

    row = store.fetch_one("SELECT * FROM artifacts WHERE run_id = ?", ("run-1",))
    assert row["kind"] == "plan"
    assert row["unit"] == "a"
    payload = artifacts.read_json(row["location"])
    assert payload["changes"][0]["action"] == "create"


def test_drift_report_appended_with_artifact(trail, store) -> None:
    report = DriftReport(
        unit="a",
        timestamp=datetime(2026, 1, 1, tzinfo=timezone.utc),
        deltas=(DriftDelta("x", DeltaKind.MISSING),),
        decision=PolicyDecision(True),
    )

    trail.drift_report(report)
    trail.drift_report(DriftReport(unit="a", timestamp=report.timestamp, deltas=()))

    records = store.list_drift_reports("a")
    assert [r.delta_count for r in records] == [1, 0]
    assert records[0].allowed is True
    assert records[1].allowed is None
    rows = store.fetch_all("SELECT kind FROM artifacts", ())
    assert [row["kind"] for row in rows] == ["drift"]


def test_artifact_read_outside_base_rejected(artifacts, tmp_path: Path) -> None:
    outside = tmp_path / "elsewhere.json"
    outside.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError, match="outside base directory"):
        artifacts.read_json(str(outside))


def test_in_memory_store() -> None:
    store = SqliteStore(":memory:")
    assert store.get_run("missing") is None
    store.close()
    store.close()
