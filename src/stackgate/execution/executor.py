"""Plan/apply executor."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from stackgate.backend.base import LockHandle
from stackgate.backend.factory import BackendRegistry
from stackgate.domain.plan import Action, Plan, ResourceChange
from stackgate.domain.resources import ResourceState, StateSnapshot
from stackgate.domain.units import Unit
from stackgate.errors import (
    ApplyError,
    ConflictError,
    LockError,
    ProviderError,
    StackgateError,
)
from stackgate.execution import planner
from stackgate.execution.provider import ResourceProvider
from stackgate.execution.retry import call_with_retry

logger = logging.getLogger(__name__)


class PlanApplyExecutor:
    def __init__(
        self,
        backends: BackendRegistry,
        provider: ResourceProvider,
        *,
        max_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._backends = backends
        self._provider = provider
        self._max_retries = max_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._sleep = sleep

    @property
    def provider(self) -> ResourceProvider:
        return self._provider

    def read_state(self, unit: Unit) -> StateSnapshot:
        return self._backends.backend_for(unit).read_state(unit)

    def plan(self, unit: Unit, current_state: StateSnapshot) -> Plan:
        return planner.plan(unit, current_state)

    def apply(self, unit: Unit, plan: Plan, handle: LockHandle) -> StateSnapshot:
        """Apply ``plan`` while holding ``handle``; return the written snapshot.

        Stops at the first change that fails. Provider errors and unexpected
        exceptions both end in ApplyError, listing completed and pending
        changes, after the resources touched so far are written to state.
        Nothing is rolled back.
        """
        backend = self._backends.backend_for(unit)
        if handle.unit != unit.name or not backend.is_held(handle):
            raise LockError(
                unit.name,
                handle.holder_info(),
                f"Apply of '{unit.name}' requires its state lock",
            )

        state = backend.read_state(unit)
        if state.version != plan.base_version:
            raise ConflictError(unit.name, plan.base_version, state.version)

        resources: dict[str, ResourceState] = dict(state.resources)
        completed: list[str] = []
        actionable = plan.actionable()
        for index, change in enumerate(actionable):
            try:
                result = call_with_retry(
                    lambda change=change: self._apply_change(unit, change),
                    max_retries=self._max_retries,
                    backoff_base_seconds=self._backoff_base_seconds,
                    sleep=self._sleep,
                    label=f"{change.action.value} {unit.name}/{change.resource_id}",
                )
            except Exception as exc:
                if isinstance(exc, StackgateError) and not isinstance(exc, ProviderError):
                    raise
                pending = [c.resource_id for c in actionable[index:]]
                written = self._record_partial(unit, state, resources, handle)
                cause = str(exc)
                if not isinstance(exc, ProviderError):
                    cause = f"{type(exc).__name__}: {exc}"
                raise ApplyError(unit.name, completed, pending, cause, written) from exc
            if result is None:
                resources.pop(change.resource_id, None)
            else:
                resources[change.resource_id] = result
            completed.append(change.resource_id)
            logger.info("Applied %s %s/%s", change.action.value, unit.name, change.resource_id)

        return backend.write_state(unit, state.evolve(resources), handle=handle)

    def _apply_change(self, unit: Unit, change: ResourceChange) -> ResourceState | None:
        if change.action is Action.CREATE:
            return self._provider.create(unit, change)
        if change.action is Action.UPDATE:
            return self._provider.update(unit, change)
        if change.action is Action.DESTROY:
            self._provider.delete(unit, change)
            return None
        raise ValueError(f"Cannot apply action {change.action.value}")

    def _record_partial(
        self,
        unit: Unit,
        state: StateSnapshot,
        resources: dict[str, ResourceState],
        handle: LockHandle,
    ) -> StateSnapshot | None:
        if resources == state.resources:
            return None
        try:
            return self._backends.backend_for(unit).write_state(
                unit, state.evolve(resources), handle=handle
            )
        except StackgateError:
            logger.exception("Could not record partial apply of unit %s", unit.name)
            return None
