"""Filesystem state backend: one JSON document per unit key plus a lock file."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path

from stackgate.backend.base import LockHandle, StateBackend
from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import ConfigurationError, ConflictError, LockError
from stackgate.utils.hashing import sha256_bytes
from stackgate.utils.serialization import json_default

_LOCK_SUFFIX = ".lock"


class LocalStateBackend(StateBackend):
    def __init__(self, base_path: str, **kwargs) -> None:
        super().__init__(**kwargs)
        self._base = Path(base_path).resolve()
        self._base.mkdir(parents=True, exist_ok=True)
        # Serializes the version check and the replace within this process.
        self._write_mutex = threading.Lock()

    def _state_path(self, key: str) -> Path:
        path = (self._base / key).resolve()
        if not path.is_relative_to(self._base):
            raise ConfigurationError(f"State key '{key}' resolves outside {self._base}")
        return path

    def _lock_path(self, key: str) -> Path:
        state_path = self._state_path(key)
        return state_path.with_name(state_path.name + _LOCK_SUFFIX)

    def _try_acquire(self, unit: Unit, handle: LockHandle) -> None:
        path = self._lock_path(handle.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            raise LockError(unit.name, self._holder(handle.key)) from None
        with os.fdopen(fd, "w", encoding="utf-8") as handle_file:
            json.dump(handle.holder_info(), handle_file)

    def _release(self, handle: LockHandle) -> None:
        if not self.is_held(handle):
            return
        self._lock_path(handle.key).unlink(missing_ok=True)

    def _holder(self, key: str) -> dict[str, object] | None:
        path = self._lock_path(key)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # Lock file created but holder info not yet flushed.
            return {"owner": "unknown"}
        return data if isinstance(data, dict) else {"owner": "unknown"}

    def _read_raw(self, key: str) -> bytes | None:
        try:
            return self._state_path(key).read_bytes()
        except FileNotFoundError:
            return None

    def read_state(self, unit: Unit) -> StateSnapshot:
        raw = self._read_raw(unit.backend.key)
        if raw is None:
            return StateSnapshot.empty(unit.name)
        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Corrupt state file for unit '{unit.name}': {exc}") from exc
        return StateSnapshot.from_payload(unit.name, payload, sha256_bytes(raw))

    def _write(self, unit: Unit, snapshot: StateSnapshot) -> StateSnapshot:
        data = json.dumps(
            snapshot.to_payload(), ensure_ascii=True, indent=2, sort_keys=True, default=json_default
        ).encode("utf-8")
        path = self._state_path(unit.backend.key)
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._write_mutex:
            current_raw = self._read_raw(unit.backend.key)
            current = sha256_bytes(current_raw) if current_raw is not None else None
            if current != snapshot.version:
                raise ConflictError(unit.name, snapshot.version, current)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as tmp:
                    tmp.write(data)
                    tmp.flush()
                    os.fsync(tmp.fileno())
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        return StateSnapshot.from_payload(unit.name, snapshot.to_payload(), sha256_bytes(data))
