"""Resource and state snapshot value objects."""

from __future__ import annotations

import copy
from collections.abc import Mapping
from dataclasses import dataclass, field
from uuid import uuid4


@dataclass(frozen=True)
class ResourceState:
    """One resource, either as declared by a unit or as observed in state."""

    resource_id: str
    type: str
    attributes: dict[str, object] = field(default_factory=dict)
    tags: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        return {
            "type": self.type,
            "attributes": copy.deepcopy(self.attributes),
            "tags": dict(self.tags),
        }

    @classmethod
    def from_dict(cls, resource_id: str, data: Mapping[str, object]) -> "ResourceState":
        attributes = data.get("attributes") or {}
        tags = data.get("tags") or {}
        if not isinstance(attributes, Mapping) or not isinstance(tags, Mapping):
            raise ValueError(f"Resource '{resource_id}' has malformed attributes or tags")
        return cls(
            resource_id=resource_id,
            type=str(data.get("type", "")),
            attributes=copy.deepcopy(dict(attributes)),
            tags={str(k): str(v) for k, v in tags.items()},
        )


@dataclass(frozen=True)
class StateSnapshot:
    """Point-in-time state of one unit.

    ``version`` is the opaque token of the stored object the snapshot was read
    from (an ETag or content hash). A write succeeds only if the stored object
    still carries that token. ``None`` means nothing was stored yet.
    """

    unit: str
    resources: dict[str, ResourceState] = field(default_factory=dict)
    serial: int = 0
    lineage: str | None = None
    version: str | None = None

    @classmethod
    def empty(cls, unit: str) -> "StateSnapshot":
        return cls(unit=unit)

    def evolve(self, resources: Mapping[str, ResourceState]) -> "StateSnapshot":
        """Return the successor snapshot, keeping this one's version as the write base."""
        return StateSnapshot(
            unit=self.unit,
            resources=dict(sorted(resources.items())),
            serial=self.serial + 1,
            lineage=self.lineage or uuid4().hex,
            version=self.version,
        )

    def to_payload(self) -> dict[str, object]:
        return {
            "unit": self.unit,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": {
                rid: resource.to_dict() for rid, resource in sorted(self.resources.items())
            },
        }

    @classmethod
    def from_payload(
        cls,
        unit: str,
        payload: Mapping[str, object],
        version: str | None,
    ) -> "StateSnapshot":
        raw = payload.get("resources") or {}
        if not isinstance(raw, Mapping):
            raise ValueError(f"State for unit '{unit}' has malformed resources")
        resources = {
            str(rid): ResourceState.from_dict(str(rid), data)
            for rid, data in raw.items()
            if isinstance(data, Mapping)
        }
        serial = payload.get("serial", 0)
        lineage = payload.get("lineage")
        return cls(
            unit=unit,
            resources=dict(sorted(resources.items())),
            serial=int(serial) if isinstance(serial, (int, str)) else 0,
            lineage=str(lineage) if lineage else None,
            version=version,
        )
