"""Run-all orchestrator: dependency-ordered, gated, cancellable unit execution."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable
from uuid import uuid4

from stackgate.audit.trail import AuditTrail
from stackgate.backend.base import LockHandle, StateBackend
from stackgate.backend.factory import BackendRegistry
from stackgate.domain.plan import Plan
from stackgate.domain.units import Unit
from stackgate.errors import (
    ApplyError,
    ConflictError,
    LockError,
    PolicyEngineError,
    StackgateError,
)
from stackgate.execution.executor import PlanApplyExecutor
from stackgate.execution.retry import backoff_delay
from stackgate.graph.builder import UnitGraph
from stackgate.orchestrator.models import (
    ANNOTATION_APPLY_SKIPPED,
    ANNOTATION_NO_CHANGES,
    BlockReason,
    RunResult,
    UnitResult,
    UnitStatus,
)
from stackgate.policy.gate import PolicyContext, PolicyGate
from stackgate.policy.models import PolicySet
from stackgate.utils.hashing import sha256_json

logger = logging.getLogger(__name__)


class RunAllOrchestrator:
    """Walks a unit graph and drives each unit through plan, gate and apply.

    A unit starts once every dependency is Done; a Blocked or Failed
    dependency blocks it without planning. At most ``concurrency`` units are
    active at once. The policy set is copied at construction, so every unit
    in the run is gated by the same policies.
    """

    def __init__(
        self,
        graph: UnitGraph,
        executor: PlanApplyExecutor,
        backends: BackendRegistry,
        gate: PolicyGate,
        policy_set: PolicySet,
        *,
        concurrency: int = 4,
        dry_run: bool = False,
        lock_wait: bool = True,
        lock_retries: int = 3,
        conflict_retries: int = 2,
        backoff_base_seconds: float = 0.5,
        audit: AuditTrail | None = None,
        run_id: str | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._graph = graph
        self._executor = executor
        self._backends = backends
        self._gate = gate
        self._policy_set = policy_set.snapshot()
        self._concurrency = concurrency
        self._dry_run = dry_run
        self._lock_wait = lock_wait
        self._lock_retries = lock_retries
        self._conflict_retries = conflict_retries
        self._backoff_base_seconds = backoff_base_seconds
        self._audit = audit
        self._sleep = sleep
        self.run_id = run_id or uuid4().hex
        self._cancelled = threading.Event()
        self._results: dict[str, UnitResult] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        """Stop scheduling units. Applies already in progress run to completion."""
        if not self._cancelled.is_set():
            logger.warning("Run %s cancelled; no further units will start", self.run_id)
        self._cancelled.set()

    async def run(self, targets: list[str] | None = None) -> RunResult:
        order = self._graph.order
        self._results = {name: UnitResult(unit=name) for name in order}
        finished = {name: asyncio.Event() for name in order}
        semaphore = asyncio.Semaphore(self._concurrency)

        if self._audit is not None:
            await asyncio.to_thread(
                self._audit.start_run,
                self.run_id,
                dry_run=self._dry_run,
                concurrency=self._concurrency,
                targets=targets,
                policy_checksum=sha256_json(self._policy_set.model_dump()),
            )
        logger.info(
            "Run %s: %d unit(s), concurrency %d%s",
            self.run_id,
            len(order),
            self._concurrency,
            " (dry run)" if self._dry_run else "",
        )

        async def unit_task(name: str) -> None:
            result = self._results[name]
            try:
                await self._schedule_unit(name, finished, semaphore)
            except Exception as exc:
                logger.exception("Internal error while running unit %s", name)
                if not result.status.terminal:
                    result.error = f"internal error: {exc}"
                    await self._transition(result, UnitStatus.FAILED, "internal error")
            finally:
                finished[name].set()
                if self._audit is not None:
                    await asyncio.to_thread(self._audit.unit_result, self.run_id, result)

        await asyncio.gather(*(unit_task(name) for name in order))

        run_result = RunResult(
            run_id=self.run_id,
            order=order,
            units=self._results,
            dry_run=self._dry_run,
            cancelled=self.cancelled,
        )
        if self._audit is not None:
            await asyncio.to_thread(self._audit.finish_run, run_result)
        logger.info("Run %s finished with exit code %d", self.run_id, run_result.exit_code)
        return run_result

    async def _schedule_unit(
        self,
        name: str,
        finished: dict[str, asyncio.Event],
        semaphore: asyncio.Semaphore,
    ) -> None:
        unit = self._graph.unit(name)
        result = self._results[name]
        for dep in unit.dependencies:
            await finished[dep].wait()

        if self.cancelled:
            await self._transition(result, UnitStatus.BLOCKED, BlockReason.CANCELLED)
            return
        for dep in unit.dependencies:
            dep_status = self._results[dep].status
            if dep_status is not UnitStatus.DONE:
                await self._transition(
                    result, UnitStatus.BLOCKED, BlockReason.dependency(dep, dep_status)
                )
                return

        async with semaphore:
            if self.cancelled:
                await self._transition(result, UnitStatus.BLOCKED, BlockReason.CANCELLED)
                return
            await self._run_lifecycle(unit, result)

    async def _run_lifecycle(self, unit: Unit, result: UnitResult) -> None:
        try:
            await self._transition(result, UnitStatus.PLANNING)
            backend = self._backends.backend_for(unit)
            if self._dry_run:
                await self._dry_run_unit(unit, result, backend)
                return
            handle = await self._acquire_lock(unit, backend)
            try:
                await self._apply_unit(unit, result, handle)
            finally:
                await self._release_lock(backend, handle, result)
        except ApplyError as exc:
            result.error = str(exc)
            result.annotations.append(f"completed: {', '.join(exc.completed) or '-'}")
            result.annotations.append(f"pending: {', '.join(exc.pending) or '-'}")
            await self._fail(result, "apply failed")
        except LockError as exc:
            result.error = str(exc)
            await self._fail(result, "state lock unavailable")
        except PolicyEngineError as exc:
            result.error = str(exc)
            await self._fail(result, "policy engine error")
        except ConflictError as exc:
            result.error = str(exc)
            await self._fail(result, "state conflict")
        except StackgateError as exc:
            result.error = str(exc)
            await self._fail(result, type(exc).__name__)

    async def _dry_run_unit(self, unit: Unit, result: UnitResult, backend: StateBackend) -> None:
        state = await asyncio.to_thread(backend.read_state, unit)
        plan = await asyncio.to_thread(self._executor.plan, unit, state)
        self._record_plan(result, plan)
        if not await self._gate_plan(unit, result, plan):
            return
        result.annotations.append(ANNOTATION_APPLY_SKIPPED)
        await self._transition(result, UnitStatus.DONE)

    async def _apply_unit(self, unit: Unit, result: UnitResult, handle: LockHandle) -> None:
        conflicts = 0
        while True:
            state = await asyncio.to_thread(self._executor.read_state, unit)
            plan = await asyncio.to_thread(self._executor.plan, unit, state)
            self._record_plan(result, plan)
            if self._audit is not None:
                await asyncio.to_thread(self._audit.plan_artifact, self.run_id, plan)
            if not await self._gate_plan(unit, result, plan):
                return
            if self.cancelled:
                await self._transition(result, UnitStatus.BLOCKED, BlockReason.CANCELLED)
                return
            await self._transition(result, UnitStatus.APPLYING)
            if not plan.has_changes:
                result.annotations.append(ANNOTATION_NO_CHANGES)
                await self._transition(result, UnitStatus.DONE)
                return
            try:
                snapshot = await asyncio.to_thread(self._executor.apply, unit, plan, handle)
            except ConflictError as exc:
                conflicts += 1
                if conflicts > self._conflict_retries:
                    raise
                logger.warning("%s; re-planning (%d/%d)", exc, conflicts, self._conflict_retries)
                await self._transition(result, UnitStatus.PLANNING, "state conflict")
                continue
            logger.info("Unit %s applied; state serial %d", unit.name, snapshot.serial)
            await self._transition(result, UnitStatus.DONE)
            return

    async def _gate_plan(self, unit: Unit, result: UnitResult, plan: Plan) -> bool:
        await self._transition(result, UnitStatus.GATING)
        context = PolicyContext(
            unit=unit.name,
            environment=unit.environment,
            region=unit.backend.region,
            account=unit.backend.account,
        )
        decision = await asyncio.to_thread(self._gate.evaluate, plan, self._policy_set, context)
        result.decision = decision
        if decision.allowed:
            return True
        logger.warning(
            "Unit %s blocked by policy: %s", unit.name, ", ".join(decision.rule_ids) or "denied"
        )
        await self._transition(result, UnitStatus.BLOCKED, BlockReason.POLICY_DENIED)
        return False

    def _record_plan(self, result: UnitResult, plan: Plan) -> None:
        result.plan_summary = plan.summary()
        result.plan_checksum = plan.checksum

    async def _acquire_lock(self, unit: Unit, backend: StateBackend) -> LockHandle:
        attempt = 0
        while True:
            try:
                return await asyncio.to_thread(
                    backend.acquire_lock, unit, owner=self.run_id, wait=self._lock_wait
                )
            except LockError as exc:
                if attempt >= self._lock_retries:
                    raise
                delay = backoff_delay(attempt, self._backoff_base_seconds)
                logger.warning("%s; retrying in %.2fs", exc, delay)
                await self._sleep(delay)
                attempt += 1

    async def _release_lock(
        self,
        backend: StateBackend,
        handle: LockHandle,
        result: UnitResult,
    ) -> None:
        try:
            await asyncio.to_thread(backend.release_lock, handle)
        except Exception:
            logger.exception("Failed to release state lock for %s", handle.unit)
            result.annotations.append(f"lock {handle.lock_id} may need manual release")

    async def _fail(self, result: UnitResult, reason: str) -> None:
        logger.error("Unit %s failed: %s", result.unit, result.error)
        await self._transition(result, UnitStatus.FAILED, reason)

    async def _transition(
        self,
        result: UnitResult,
        status: UnitStatus,
        reason: str | None = None,
    ) -> None:
        result.transition(status, reason)
        logger.debug("Unit %s -> %s%s", result.unit, status.value, f" ({reason})" if reason else "")
        if self._audit is not None:
            await asyncio.to_thread(
                self._audit.transition, self.run_id, result.unit, status.value, reason
            )
