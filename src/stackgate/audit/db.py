"""SQLite access layer for runs, unit transitions, results and drift reports."""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path
from typing import Mapping, Sequence

from stackgate.audit.models import (
    ArtifactRecord,
    DriftRecord,
    RunRecord,
    TransitionRecord,
    UnitResultRecord,
)

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]


class SqliteStore:
    """Append-mostly audit store.

    Every record is one INSERT committed under a process-wide lock, so
    concurrent writers never interleave partial records.
    """

    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._closed = False
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                status TEXT NOT NULL,
                dry_run INTEGER NOT NULL,
                concurrency INTEGER NOT NULL,
                targets TEXT,
                policy_checksum TEXT,
                started_at TEXT NOT NULL,
                completed_at TEXT,
                exit_code INTEGER
            );

            CREATE TABLE IF NOT EXISTS unit_transitions (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                unit TEXT NOT NULL,
                state TEXT NOT NULL,
                reason TEXT,
                created_at TEXT NOT NULL,
                FOREIGN KEY(run_id) REFERENCES runs(run_id)
            );

            CREATE TABLE IF NOT EXISTS unit_results (
                run_id TEXT NOT NULL,
                unit TEXT NOT NULL,
                status TEXT NOT NULL,
                reason TEXT,
                plan_summary TEXT,
                plan_checksum TEXT,
                decision TEXT,
                annotations TEXT,
                error TEXT,
                completed_at TEXT NOT NULL,
                PRIMARY KEY (run_id, unit),
                FOREIGN KEY(run_id) REFERENCES runs(run_id)
            );

            CREATE TABLE IF NOT EXISTS drift_reports (
                report_id TEXT PRIMARY KEY,
                unit TEXT NOT NULL,
                created_at TEXT NOT NULL,
                delta_count INTEGER NOT NULL,
                deltas TEXT NOT NULL,
                allowed INTEGER,
                decision TEXT
            );

            CREATE TABLE IF NOT EXISTS artifacts (
                artifact_id TEXT PRIMARY KEY,
                run_id TEXT,
                unit TEXT,
                kind TEXT NOT NULL,
                location TEXT NOT NULL,
                checksum TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_transitions_run_unit
                ON unit_transitions(run_id, unit);
            CREATE INDEX IF NOT EXISTS idx_drift_unit_created_at
                ON drift_reports(unit, created_at);
            CREATE INDEX IF NOT EXISTS idx_artifacts_run_id ON artifacts(run_id);
            """
        )
        self._conn.commit()

    def execute(
        self,
        query: str,
        params: _SqlParams,
    ) -> None:
        with self._lock:
            self._conn.execute(query, params)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    def fetch_one(
        self,
        query: str,
        params: _SqlParams,
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(
        self,
        query: str,
        params: _SqlParams,
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    def create_run(self, run: RunRecord) -> None:
        self.execute(
            """
            INSERT INTO runs (
                run_id, status, dry_run, concurrency, targets, policy_checksum,
                started_at, completed_at, exit_code
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run.run_id,
                run.status,
                int(run.dry_run),
                run.concurrency,
                run.targets,
                run.policy_checksum,
                run.started_at,
                run.completed_at,
                run.exit_code,
            ),
        )

    def finish_run(self, run_id: str, status: str, exit_code: int, completed_at: str) -> None:
        self.execute(
            "UPDATE runs SET status = ?, exit_code = ?, completed_at = ? WHERE run_id = ?",
            (status, exit_code, completed_at, run_id),
        )

    def get_run(self, run_id: str) -> RunRecord | None:
        row = self.fetch_one("SELECT * FROM runs WHERE run_id = ?", (run_id,))
        if row is None:
            return None
        data = dict(row)
        data["dry_run"] = bool(data["dry_run"])
        return RunRecord(**data)

    def add_transition(self, transition: TransitionRecord) -> None:
        self.execute(
            """
            INSERT INTO unit_transitions (run_id, unit, state, reason, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                transition.run_id,
                transition.unit,
                transition.state,
                transition.reason,
                transition.created_at,
            ),
        )

    def list_transitions(self, run_id: str, unit: str | None = None) -> list[TransitionRecord]:
        if unit is None:
            rows = self.fetch_all(
                "SELECT run_id, unit, state, reason, created_at FROM unit_transitions "
                "WHERE run_id = ? ORDER BY seq",
                (run_id,),
            )
        else:
            rows = self.fetch_all(
                "SELECT run_id, unit, state, reason, created_at FROM unit_transitions "
                "WHERE run_id = ? AND unit = ? ORDER BY seq",
                (run_id, unit),
            )
        return [TransitionRecord(**dict(row)) for row in rows]

    def add_unit_result(self, result: UnitResultRecord) -> None:
        self.execute(
            """
            INSERT INTO unit_results (
                run_id, unit, status, reason, plan_summary, plan_checksum,
                decision, annotations, error, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.run_id,
                result.unit,
                result.status,
                result.reason,
                result.plan_summary,
                result.plan_checksum,
                result.decision,
                result.annotations,
                result.error,
                result.completed_at,
            ),
        )

    def list_unit_results(self, run_id: str) -> list[UnitResultRecord]:
        rows = self.fetch_all(
            "SELECT * FROM unit_results WHERE run_id = ? ORDER BY unit", (run_id,)
        )
        return [UnitResultRecord(**dict(row)) for row in rows]

    def add_drift_report(self, report: DriftRecord) -> None:
        self.execute(
            """
            INSERT INTO drift_reports (
                report_id, unit, created_at, delta_count, deltas, allowed, decision
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                report.report_id,
                report.unit,
                report.created_at,
                report.delta_count,
                report.deltas,
                None if report.allowed is None else int(report.allowed),
                report.decision,
            ),
        )

    def list_drift_reports(self, unit: str) -> list[DriftRecord]:
        rows = self.fetch_all(
            "SELECT * FROM drift_reports WHERE unit = ? ORDER BY created_at, rowid", (unit,)
        )
        records: list[DriftRecord] = []
        for row in rows:
            data = dict(row)
            if data["allowed"] is not None:
                data["allowed"] = bool(data["allowed"])
            records.append(DriftRecord(**data))
        return records

    def add_artifact(self, artifact: ArtifactRecord) -> None:
        self.execute(
            """
            INSERT INTO artifacts (
                artifact_id, run_id, unit, kind, location, checksum, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                artifact.artifact_id,
                artifact.run_id,
                artifact.unit,
                artifact.kind,
                artifact.location,
                artifact.checksum,
                artifact.created_at,
            ),
        )
