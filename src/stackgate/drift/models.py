"""Drift report models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from uuid import uuid4

from stackgate.domain.plan import AttributeDiff
from stackgate.policy.decision import PolicyDecision


class DeltaKind(str, Enum):
    MODIFIED = "modified"
    MISSING = "missing"
    UNMANAGED = "unmanaged"


@dataclass(frozen=True)
class DriftDelta:
    resource_id: str
    kind: DeltaKind
    diffs: tuple[AttributeDiff, ...] = ()

    def to_dict(self) -> dict[str, object]:
        return {
            "resource_id": self.resource_id,
            "kind": self.kind.value,
            "diffs": [d.to_dict() for d in self.diffs],
        }


@dataclass(frozen=True)
class DriftReport:
    unit: str
    timestamp: datetime
    deltas: tuple[DriftDelta, ...]
    decision: PolicyDecision | None = None
    report_id: str = field(default_factory=lambda: uuid4().hex)

    @property
    def drifted(self) -> bool:
        return bool(self.deltas)

    def to_dict(self) -> dict[str, object]:
        return {
            "report_id": self.report_id,
            "unit": self.unit,
            "timestamp": self.timestamp.isoformat(),
            "deltas": [delta.to_dict() for delta in self.deltas],
            "decision": self.decision.to_dict() if self.decision else None,
        }
