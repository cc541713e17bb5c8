"""Plan value objects."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from stackgate.utils.hashing import sha256_json
from stackgate.utils.time import utc_now


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DESTROY = "destroy"
    NO_OP = "no-op"


@dataclass(frozen=True)
class AttributeDiff:
    path: str
    before: object = None
    after: object = None

    def to_dict(self) -> dict[str, object]:
        return {"path": self.path, "before": self.before, "after": self.after}


@dataclass(frozen=True)
class ResourceChange:
    resource_id: str
    resource_type: str
    action: Action
    diff: tuple[AttributeDiff, ...] = ()
    attributes: dict[str, object] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "resource_id": self.resource_id,
            "type": self.resource_type,
            "action": self.action.value,
            "diff": [d.to_dict() for d in self.diff],
            "attributes": self.attributes,
            "tags": self.tags,
        }


@dataclass(frozen=True)
class Plan:
    """Proposed changes for one unit, computed against one state version.

    ``created_at`` is informational and excluded from equality, so two plans
    computed from the same inputs compare equal.
    """

    unit: str
    changes: tuple[ResourceChange, ...]
    base_version: str | None = None
    base_serial: int = 0
    created_at: datetime = field(default_factory=utc_now, compare=False)

    @property
    def has_changes(self) -> bool:
        return any(change.action is not Action.NO_OP for change in self.changes)

    def actionable(self) -> tuple[ResourceChange, ...]:
        return tuple(c for c in self.changes if c.action is not Action.NO_OP)

    def summary(self) -> dict[str, int]:
        counts = {action.value: 0 for action in Action}
        for change in self.changes:
            counts[change.action.value] += 1
        return counts

    def to_dict(self) -> dict[str, object]:
        return {
            "unit": self.unit,
            "base_version": self.base_version,
            "base_serial": self.base_serial,
            "changes": [change.to_dict() for change in self.changes],
        }

    @property
    def checksum(self) -> str:
        return sha256_json(self.to_dict())
