"""State backend contract: per-unit locking and compare-and-swap state writes."""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from uuid import uuid4

from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import LockError
from stackgate.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_MAX_POLL_INTERVAL_SECONDS = 2.0


@dataclass(frozen=True)
class LockHandle:
    unit: str
    key: str
    owner: str
    lock_id: str = field(default_factory=lambda: uuid4().hex)
    acquired_at: str = field(default_factory=utc_now_iso)

    def holder_info(self) -> dict[str, object]:
        return {
            "unit": self.unit,
            "owner": self.owner,
            "lock_id": self.lock_id,
            "acquired_at": self.acquired_at,
        }


class StateBackend(ABC):
    """One logical state store, addressed by each unit's backend key.

    Subclasses implement the single-attempt primitives; this class adds the
    blocking acquisition loop, lock ownership checks and scoped locking.
    """

    def __init__(
        self,
        *,
        lock_timeout_seconds: float = 30.0,
        poll_interval_seconds: float = 0.1,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock_timeout_seconds = lock_timeout_seconds
        self._poll_interval_seconds = poll_interval_seconds
        self._sleep = sleep
        self._clock = clock

    @abstractmethod
    def _try_acquire(self, unit: Unit, handle: LockHandle) -> None:
        """Take the lock or raise LockError naming the current holder."""

    @abstractmethod
    def _release(self, handle: LockHandle) -> None: ...

    @abstractmethod
    def _holder(self, key: str) -> dict[str, object] | None: ...

    @abstractmethod
    def read_state(self, unit: Unit) -> StateSnapshot: ...

    @abstractmethod
    def _write(self, unit: Unit, snapshot: StateSnapshot) -> StateSnapshot:
        """Store ``snapshot`` if the stored version equals ``snapshot.version``.

        Raises ConflictError otherwise. Returns the stored snapshot carrying
        its new version token.
        """

    def acquire_lock(self, unit: Unit, *, owner: str, wait: bool = True) -> LockHandle:
        handle = LockHandle(unit=unit.name, key=unit.backend.key, owner=owner)
        deadline = self._clock() + self._lock_timeout_seconds
        interval = self._poll_interval_seconds
        while True:
            try:
                self._try_acquire(unit, handle)
            except LockError:
                if not wait or self._clock() >= deadline:
                    raise
                self._sleep(interval)
                interval = min(interval * 2, _MAX_POLL_INTERVAL_SECONDS)
                continue
            logger.debug("Acquired state lock for %s (%s)", unit.name, handle.lock_id)
            return handle

    def release_lock(self, handle: LockHandle) -> None:
        self._release(handle)
        logger.debug("Released state lock for %s (%s)", handle.unit, handle.lock_id)

    def is_held(self, handle: LockHandle) -> bool:
        holder = self._holder(handle.key)
        return holder is not None and holder.get("lock_id") == handle.lock_id

    def write_state(
        self,
        unit: Unit,
        snapshot: StateSnapshot,
        *,
        handle: LockHandle,
    ) -> StateSnapshot:
        if handle.unit != unit.name or handle.key != unit.backend.key:
            raise LockError(
                unit.name,
                handle.holder_info(),
                f"Lock handle for '{handle.unit}' cannot write state of unit '{unit.name}'",
            )
        if not self.is_held(handle):
            raise LockError(
                unit.name,
                self._holder(handle.key),
                f"Writer does not hold the state lock for unit '{unit.name}'",
            )
        return self._write(unit, snapshot)

    @contextmanager
    def locked(self, unit: Unit, *, owner: str, wait: bool = True) -> Iterator[LockHandle]:
        handle = self.acquire_lock(unit, owner=owner, wait=wait)
        try:
            yield handle
        finally:
            self.release_lock(handle)
