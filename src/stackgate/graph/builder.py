"""Validated dependency graph of units."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping

from stackgate.domain.units import Unit
from stackgate.errors import CycleError, GraphError, UnresolvedDependencyError


class UnitGraph:
    """Immutable DAG of units with a deterministic topological order."""

    def __init__(self, units: Mapping[str, Unit], order: tuple[str, ...]) -> None:
        self._units = dict(units)
        self._order = order
        dependents: dict[str, list[str]] = {name: [] for name in self._units}
        for unit in self._units.values():
            for dep in unit.dependencies:
                dependents[dep].append(unit.name)
        self._dependents = {name: tuple(sorted(names)) for name, names in dependents.items()}

    @property
    def order(self) -> tuple[str, ...]:
        return self._order

    @property
    def units(self) -> dict[str, Unit]:
        return dict(self._units)

    def __len__(self) -> int:
        return len(self._units)

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def unit(self, name: str) -> Unit:
        return self._units[name]

    def dependencies_of(self, name: str) -> tuple[str, ...]:
        return self._units[name].dependencies

    def dependents_of(self, name: str) -> tuple[str, ...]:
        return self._dependents[name]

    def transitive_dependents(self, name: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._dependents[name])
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._dependents[current])
        return seen

    def transitive_dependencies(self, name: str) -> set[str]:
        seen: set[str] = set()
        stack = list(self._units[name].dependencies)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self._units[current].dependencies)
        return seen

    def subgraph(self, targets: Iterable[str], include_dependencies: bool = True) -> "UnitGraph":
        """Restrict the graph to ``targets`` (plus their dependencies by default).

        Without dependencies, edges to excluded units are dropped so the
        targets are treated as already satisfied.
        """
        wanted: set[str] = set()
        for target in targets:
            if target not in self._units:
                raise GraphError(f"Unknown target unit '{target}'")
            wanted.add(target)
            if include_dependencies:
                wanted |= self.transitive_dependencies(target)
        units: dict[str, Unit] = {}
        for name in wanted:
            unit = self._units[name]
            if not include_dependencies:
                kept = tuple(dep for dep in unit.dependencies if dep in wanted)
                if kept != unit.dependencies:
                    unit = _with_dependencies(unit, kept)
            units[name] = unit
        return build_graph(units.values())


def _with_dependencies(unit: Unit, dependencies: tuple[str, ...]) -> Unit:
    return Unit(
        name=unit.name,
        path=unit.path,
        backend=unit.backend,
        dependencies=dependencies,
        environment=unit.environment,
        resources=unit.resources,
        includes=unit.includes,
    )


def build_graph(units: Iterable[Unit]) -> UnitGraph:
    """Validate unit declarations and compute the topological order.

    Ties between ready units are broken by name so the order is reproducible.
    """
    by_name: dict[str, Unit] = {}
    for unit in units:
        if unit.name in by_name:
            raise GraphError(f"Duplicate unit identifier '{unit.name}'")
        by_name[unit.name] = unit

    for name in sorted(by_name):
        for dep in by_name[name].dependencies:
            if dep not in by_name:
                raise UnresolvedDependencyError(name, dep)

    _check_backend_addresses(by_name)

    indegree = {name: len(set(unit.dependencies)) for name, unit in by_name.items()}
    dependents: dict[str, list[str]] = {name: [] for name in by_name}
    for unit in by_name.values():
        for dep in set(unit.dependencies):
            dependents[dep].append(unit.name)

    ready = [name for name, degree in indegree.items() if degree == 0]
    heapq.heapify(ready)
    order: list[str] = []
    while ready:
        name = heapq.heappop(ready)
        order.append(name)
        for dependent in dependents[name]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(by_name):
        remaining = {name for name in by_name if name not in set(order)}
        raise CycleError(_find_cycle(by_name, remaining))

    return UnitGraph(by_name, tuple(order))


def _check_backend_addresses(units: Mapping[str, Unit]) -> None:
    owners: dict[tuple[str, str, str], Unit] = {}
    for name in sorted(units):
        unit = units[name]
        other = owners.get(unit.backend.address)
        if other is None:
            owners[unit.backend.address] = unit
            continue
        if not (unit.backend.shared and other.backend.shared):
            raise GraphError(
                f"Units '{other.name}' and '{unit.name}' share backend key "
                f"'{unit.backend.key}' in '{unit.backend.location}'"
            )


def _find_cycle(units: Mapping[str, Unit], candidates: set[str]) -> list[str]:
    """Return the members of one cycle among ``candidates``, in dependency order."""
    visiting: list[str] = []
    on_path: set[str] = set()
    done: set[str] = set()

    def visit(name: str) -> list[str] | None:
        visiting.append(name)
        on_path.add(name)
        for dep in sorted(set(units[name].dependencies)):
            if dep not in candidates or dep in done:
                continue
            if dep in on_path:
                return visiting[visiting.index(dep):]
            found = visit(dep)
            if found is not None:
                return found
        visiting.pop()
        on_path.discard(name)
        done.add(name)
        return None

    for start in sorted(candidates):
        if start in done:
            continue
        cycle = visit(start)
        if cycle is not None:
            return cycle
    return sorted(candidates)
