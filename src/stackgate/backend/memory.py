"""In-process state backend."""

from __future__ import annotations

import threading

from stackgate.backend.base import LockHandle, StateBackend
from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import ConflictError, LockError
from stackgate.utils.hashing import sha256_json


class MemoryStateBackend(StateBackend):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self._mutex = threading.Lock()
        self._states: dict[str, tuple[dict[str, object], str]] = {}
        self._locks: dict[str, dict[str, object]] = {}
        self.write_count = 0

    def _try_acquire(self, unit: Unit, handle: LockHandle) -> None:
        with self._mutex:
            holder = self._locks.get(handle.key)
            if holder is not None:
                raise LockError(unit.name, dict(holder))
            self._locks[handle.key] = handle.holder_info()

    def _release(self, handle: LockHandle) -> None:
        with self._mutex:
            holder = self._locks.get(handle.key)
            if holder is not None and holder.get("lock_id") == handle.lock_id:
                del self._locks[handle.key]

    def _holder(self, key: str) -> dict[str, object] | None:
        with self._mutex:
            holder = self._locks.get(key)
            return dict(holder) if holder is not None else None

    def read_state(self, unit: Unit) -> StateSnapshot:
        with self._mutex:
            stored = self._states.get(unit.backend.key)
        if stored is None:
            return StateSnapshot.empty(unit.name)
        payload, version = stored
        return StateSnapshot.from_payload(unit.name, payload, version)

    def _write(self, unit: Unit, snapshot: StateSnapshot) -> StateSnapshot:
        payload = snapshot.to_payload()
        with self._mutex:
            stored = self._states.get(unit.backend.key)
            current = stored[1] if stored is not None else None
            if current != snapshot.version:
                raise ConflictError(unit.name, snapshot.version, current)
            version = sha256_json([snapshot.serial, payload])
            self._states[unit.backend.key] = (payload, version)
            self.write_count += 1
        return StateSnapshot.from_payload(unit.name, payload, version)

    def seed(self, unit: Unit, snapshot: StateSnapshot) -> StateSnapshot:
        """Store ``snapshot`` unconditionally, bypassing locks."""
        payload = snapshot.to_payload()
        version = sha256_json([snapshot.serial, payload])
        with self._mutex:
            self._states[unit.backend.key] = (payload, version)
        return StateSnapshot.from_payload(unit.name, payload, version)
