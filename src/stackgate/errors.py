"""Exception taxonomy for graph construction, state backends, execution and policy."""

from __future__ import annotations

from collections.abc import Sequence


class StackgateError(Exception):
    """Base class for all orchestrator errors."""


class ConfigurationError(StackgateError):
    """A unit declaration, backend or policy document is invalid."""


class GraphError(StackgateError):
    """The unit graph cannot be built. Fatal for the whole run."""


class CycleError(GraphError):
    def __init__(self, members: Sequence[str]) -> None:
        self.members = tuple(members)
        path = " -> ".join([*self.members, self.members[0]]) if self.members else ""
        super().__init__(f"Dependency cycle detected: {path}")


class UnresolvedDependencyError(GraphError):
    def __init__(self, unit: str, dependency: str) -> None:
        self.unit = unit
        self.dependency = dependency
        super().__init__(f"Unit '{unit}' depends on unknown unit '{dependency}'")


class LockError(StackgateError):
    """The state lock for a unit is held by someone else, or is not held by the caller."""

    def __init__(
        self,
        unit: str,
        holder: dict[str, object] | None,
        message: str | None = None,
    ) -> None:
        self.unit = unit
        self.holder = holder
        if message is None:
            owner = (holder or {}).get("owner", "unknown")
            message = f"State lock for unit '{unit}' is held by {owner}"
        super().__init__(message)


class ConflictError(StackgateError):
    """A conditional state write lost against a concurrent writer."""

    def __init__(self, unit: str, expected: str | None, actual: str | None) -> None:
        self.unit = unit
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"State for unit '{unit}' changed underneath the writer "
            f"(expected version {expected!r}, found {actual!r})"
        )


class ProviderError(StackgateError):
    """The resource provider rejected a read or a change."""


class TransientProviderError(ProviderError):
    """A provider failure that is safe to retry."""


class ApplyError(StackgateError):
    """Apply stopped part-way. Nothing is rolled back."""

    def __init__(
        self,
        unit: str,
        completed: Sequence[str],
        pending: Sequence[str],
        cause: str,
        snapshot: object | None = None,
    ) -> None:
        self.unit = unit
        self.completed = tuple(completed)
        self.pending = tuple(pending)
        self.cause = cause
        self.snapshot = snapshot
        super().__init__(
            f"Apply of unit '{unit}' failed after {len(self.completed)} change(s); "
            f"{len(self.pending)} pending: {cause}"
        )


class PolicyEngineError(StackgateError):
    """The policy engine could not produce a decision. Not a deny."""
