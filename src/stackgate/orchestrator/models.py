"""Per-unit lifecycle states and run results."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from stackgate.policy.decision import PolicyDecision

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_BLOCKED = 2


class UnitStatus(str, Enum):
    PENDING = "Pending"
    PLANNING = "Planning"
    GATING = "Gating"
    APPLYING = "Applying"
    DONE = "Done"
    BLOCKED = "Blocked"
    FAILED = "Failed"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({UnitStatus.DONE, UnitStatus.BLOCKED, UnitStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.PENDING: frozenset({UnitStatus.PLANNING, UnitStatus.BLOCKED, UnitStatus.FAILED}),
    UnitStatus.PLANNING: frozenset({UnitStatus.GATING, UnitStatus.BLOCKED, UnitStatus.FAILED}),
    UnitStatus.GATING: frozenset(
        {UnitStatus.APPLYING, UnitStatus.DONE, UnitStatus.BLOCKED, UnitStatus.FAILED}
    ),
    # Applying -> Planning is the re-plan after a state write conflict.
    UnitStatus.APPLYING: frozenset({UnitStatus.DONE, UnitStatus.FAILED, UnitStatus.PLANNING}),
}


class BlockReason:
    POLICY_DENIED = "policy denied"
    CANCELLED = "cancelled"

    @staticmethod
    def dependency(name: str, status: UnitStatus) -> str:
        return f"dependency {name} {status.value.lower()}"


ANNOTATION_APPLY_SKIPPED = "apply skipped"
ANNOTATION_NO_CHANGES = "no changes"


class InvalidTransitionError(RuntimeError):
    pass


@dataclass
class UnitResult:
    unit: str
    status: UnitStatus = UnitStatus.PENDING
    reason: str | None = None
    plan_summary: dict[str, int] | None = None
    plan_checksum: str | None = None
    decision: PolicyDecision | None = None
    annotations: list[str] = field(default_factory=list)
    error: str | None = None
    history: list[UnitStatus] = field(default_factory=lambda: [UnitStatus.PENDING])

    def transition(self, status: UnitStatus, reason: str | None = None) -> None:
        if status not in _ALLOWED_TRANSITIONS.get(self.status, frozenset()):
            raise InvalidTransitionError(
                f"Unit '{self.unit}' cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if reason is not None:
            self.reason = reason
        self.history.append(status)

    @property
    def entered_planning(self) -> bool:
        return UnitStatus.PLANNING in self.history

    def to_dict(self) -> dict[str, object]:
        return {
            "unit": self.unit,
            "status": self.status.value,
            "reason": self.reason,
            "plan_summary": self.plan_summary,
            "plan_checksum": self.plan_checksum,
            "decision": self.decision.to_dict() if self.decision else None,
            "annotations": list(self.annotations),
            "error": self.error,
            "history": [state.value for state in self.history],
        }


@dataclass
class RunResult:
    run_id: str
    order: tuple[str, ...]
    units: dict[str, UnitResult]
    dry_run: bool = False
    cancelled: bool = False

    def statuses(self) -> dict[str, UnitStatus]:
        return {name: self.units[name].status for name in self.order}

    @property
    def exit_code(self) -> int:
        statuses = [result.status for result in self.units.values()]
        if any(status is not UnitStatus.DONE and not status.terminal for status in statuses):
            return EXIT_FAILED
        if any(status is UnitStatus.FAILED for status in statuses):
            return EXIT_FAILED
        if any(status is UnitStatus.BLOCKED for status in statuses):
            return EXIT_BLOCKED
        return EXIT_SUCCESS

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
            "exit_code": self.exit_code,
            "units": [self.units[name].to_dict() for name in self.order],
        }
