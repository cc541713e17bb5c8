"""Resource providers: the boundary to whatever actually owns live resources."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol, runtime_checkable

from stackgate.domain.plan import ResourceChange
from stackgate.domain.resources import ResourceState, StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import ProviderError
from stackgate.utils.hashing import sha256_text
from stackgate.utils.serialization import json_default


@runtime_checkable
class ResourceProvider(Protocol):
    def read(self, unit: Unit) -> StateSnapshot:
        """Return a consistent snapshot of the unit's live resources."""
        ...

    def create(self, unit: Unit, change: ResourceChange) -> ResourceState: ...

    def update(self, unit: Unit, change: ResourceChange) -> ResourceState: ...

    def delete(self, unit: Unit, change: ResourceChange) -> None: ...


def _resource_from_change(change: ResourceChange) -> ResourceState:
    return ResourceState(
        resource_id=change.resource_id,
        type=change.resource_type,
        attributes=dict(change.attributes),
        tags=dict(change.tags),
    )


class MemoryResourceProvider:
    """Keeps live resources in process.

    ``failures`` maps a resource id to exceptions raised, in order, by the
    next calls that touch it.
    """

    def __init__(self) -> None:
        self._live: dict[str, dict[str, ResourceState]] = {}
        self._mutex = threading.Lock()
        self.failures: dict[str, list[BaseException]] = {}
        self.calls: list[tuple[str, str, str]] = []

    def set_live(self, unit_name: str, resources: Iterable[ResourceState]) -> None:
        with self._mutex:
            self._live[unit_name] = {r.resource_id: r for r in resources}

    def fail(self, resource_id: str, *errors: BaseException) -> None:
        self.failures.setdefault(resource_id, []).extend(errors)

    def _maybe_fail(self, resource_id: str) -> None:
        pending = self.failures.get(resource_id)
        if pending:
            raise pending.pop(0)

    def read(self, unit: Unit) -> StateSnapshot:
        with self._mutex:
            resources = dict(self._live.get(unit.name, {}))
        return StateSnapshot(unit=unit.name, resources=dict(sorted(resources.items())))

    def create(self, unit: Unit, change: ResourceChange) -> ResourceState:
        self.calls.append((unit.name, "create", change.resource_id))
        self._maybe_fail(change.resource_id)
        resource = _resource_from_change(change)
        with self._mutex:
            self._live.setdefault(unit.name, {})[change.resource_id] = resource
        return resource

    def update(self, unit: Unit, change: ResourceChange) -> ResourceState:
        self.calls.append((unit.name, "update", change.resource_id))
        self._maybe_fail(change.resource_id)
        resource = _resource_from_change(change)
        with self._mutex:
            self._live.setdefault(unit.name, {})[change.resource_id] = resource
        return resource

    def delete(self, unit: Unit, change: ResourceChange) -> None:
        self.calls.append((unit.name, "delete", change.resource_id))
        self._maybe_fail(change.resource_id)
        with self._mutex:
            self._live.get(unit.name, {}).pop(change.resource_id, None)


class LocalResourceProvider:
    """Stores "live" resources as one JSON file per unit under ``base_path``.

    Stands in for a cloud account when running units locally.
    """

    def __init__(self, base_path: str) -> None:
        self._base = Path(base_path).resolve()
        self._base.mkdir(parents=True, exist_ok=True)
        self._mutex = threading.Lock()

    def _path(self, unit: Unit) -> Path:
        return self._base / f"{sha256_text(unit.name)[:16]}.json"

    def _load(self, unit: Unit) -> dict[str, ResourceState]:
        path = self._path(unit)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            raise ProviderError(f"Corrupt live state for unit '{unit.name}': {exc}") from exc
        except OSError as exc:
            raise ProviderError(f"Cannot read live state for unit '{unit.name}': {exc}") from exc
        resources = data.get("resources", {}) if isinstance(data, dict) else {}
        try:
            return {rid: ResourceState.from_dict(rid, raw) for rid, raw in resources.items()}
        except (AttributeError, ValueError) as exc:
            raise ProviderError(f"Corrupt live state for unit '{unit.name}': {exc}") from exc

    def _store(self, unit: Unit, resources: dict[str, ResourceState]) -> None:
        path = self._path(unit)
        payload = {
            "unit": unit.name,
            "resources": {rid: r.to_dict() for rid, r in sorted(resources.items())},
        }
        try:
            fd, tmp_name = tempfile.mkstemp(dir=self._base, suffix=".tmp")
        except OSError as exc:
            raise ProviderError(f"Cannot write live state for unit '{unit.name}': {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True, default=json_default)
            os.replace(tmp_name, path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ProviderError(f"Cannot write live state for unit '{unit.name}': {exc}") from exc

    def read(self, unit: Unit) -> StateSnapshot:
        with self._mutex:
            resources = self._load(unit)
        return StateSnapshot(unit=unit.name, resources=dict(sorted(resources.items())))

    def create(self, unit: Unit, change: ResourceChange) -> ResourceState:
        resource = _resource_from_change(change)
        with self._mutex:
            resources = self._load(unit)
            resources[change.resource_id] = resource
            self._store(unit, resources)
        return resource

    update = create

    def delete(self, unit: Unit, change: ResourceChange) -> None:
        with self._mutex:
            resources = self._load(unit)
            resources.pop(change.resource_id, None)
            self._store(unit, resources)
