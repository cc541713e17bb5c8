"""Drift detection: last-applied state against live resources, read-only."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable
from datetime import datetime

from stackgate.audit.trail import AuditTrail
from stackgate.backend.factory import BackendRegistry
from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.drift.models import DeltaKind, DriftDelta, DriftReport
from stackgate.errors import StackgateError
from stackgate.execution.diff import diff_resources
from stackgate.execution.provider import ResourceProvider
from stackgate.policy.gate import PolicyContext, PolicyGate
from stackgate.policy.models import PolicySet
from stackgate.utils.time import utc_now

logger = logging.getLogger(__name__)


def compute_deltas(
    last_applied: StateSnapshot,
    live_state: StateSnapshot,
) -> tuple[DriftDelta, ...]:
    deltas: list[DriftDelta] = []
    for rid in sorted(set(last_applied.resources) | set(live_state.resources)):
        applied = last_applied.resources.get(rid)
        live = live_state.resources.get(rid)
        if live is None:
            deltas.append(DriftDelta(rid, DeltaKind.MISSING, diff_resources(applied, None)))
        elif applied is None:
            deltas.append(DriftDelta(rid, DeltaKind.UNMANAGED, diff_resources(None, live)))
        else:
            diffs = diff_resources(applied, live)
            if diffs:
                deltas.append(DriftDelta(rid, DeltaKind.MODIFIED, diffs))
    return tuple(deltas)


class DriftDetector:
    """Compares state with live resources and runs the result through the policy gate.

    Reports are appended to the audit trail. State is never written and the
    state lock is never taken.
    """

    def __init__(
        self,
        gate: PolicyGate,
        policy_set: PolicySet,
        *,
        backends: BackendRegistry | None = None,
        provider: ResourceProvider | None = None,
        audit: AuditTrail | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._gate = gate
        self._policy_set = policy_set.snapshot()
        self._backends = backends
        self._provider = provider
        self._audit = audit
        self._clock = clock

    def detect(
        self,
        unit: Unit,
        last_applied: StateSnapshot,
        live_state: StateSnapshot,
    ) -> DriftReport:
        deltas = compute_deltas(last_applied, live_state)
        context = PolicyContext(
            unit=unit.name,
            environment=unit.environment,
            region=unit.backend.region,
            account=unit.backend.account,
        )
        decision = self._gate.evaluate(live_state, self._policy_set, context)
        report = DriftReport(
            unit=unit.name, timestamp=self._clock(), deltas=deltas, decision=decision
        )
        if report.drifted:
            logger.warning(
                "Drift detected in %s: %d resource(s) differ; policy allowed=%s",
                unit.name,
                len(deltas),
                decision.allowed,
            )
        else:
            logger.info("No drift in %s", unit.name)
        if self._audit is not None:
            self._audit.drift_report(report)
        return report

    def check(self, unit: Unit) -> DriftReport:
        if self._backends is None or self._provider is None:
            raise RuntimeError("DriftDetector.check needs a backend registry and a provider")
        last_applied = self._backends.backend_for(unit).read_state(unit)
        live_state = self._provider.read(unit)
        return self.detect(unit, last_applied, live_state)

    def watch(
        self,
        units: Iterable[Unit],
        interval_seconds: float,
        *,
        cycles: int | None = None,
        stop_event: threading.Event | None = None,
        on_report: Callable[[DriftReport], None] | None = None,
        on_error: Callable[[Unit, StackgateError], None] | None = None,
    ) -> int:
        """Run detection cycles every ``interval_seconds`` until stopped.

        A unit whose check fails is logged and passed to ``on_error``; the
        remaining units are still checked. Returns the number of completed
        cycles.
        """
        stop = stop_event or threading.Event()
        unit_list = list(units)
        completed = 0
        while not stop.is_set() and (cycles is None or completed < cycles):
            for unit in unit_list:
                try:
                    report = self.check(unit)
                except StackgateError as exc:
                    logger.error("Drift check of %s failed: %s", unit.name, exc)
                    if on_error is not None:
                        on_error(unit, exc)
                    continue
                if on_report is not None:
                    on_report(report)
            completed += 1
            if cycles is not None and completed >= cycles:
                break
            stop.wait(interval_seconds)
        return completed
