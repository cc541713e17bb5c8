"""Plan computation: desired unit configuration against current state."""

from __future__ import annotations

from stackgate.domain.plan import Action, Plan, ResourceChange
from stackgate.domain.resources import StateSnapshot
from stackgate.domain.units import Unit
from stackgate.execution.diff import diff_resources


def plan(unit: Unit, current_state: StateSnapshot) -> Plan:
    """Compute the change set for ``unit``. Pure and deterministic.

    Changes are ordered by resource id. A resource whose type changes is
    reported as an update carrying a ``type`` diff.
    """
    changes: list[ResourceChange] = []
    for rid in sorted(set(unit.resources) | set(current_state.resources)):
        desired = unit.resources.get(rid)
        current = current_state.resources.get(rid)
        if desired is None:
            current = current_state.resources[rid]
            changes.append(
                ResourceChange(
                    resource_id=rid,
                    resource_type=current.type,
                    action=Action.DESTROY,
                    diff=diff_resources(current, None),
                    attributes={},
                    tags=dict(current.tags),
                )
            )
            continue
        diff = diff_resources(current, desired)
        if current is None:
            action = Action.CREATE
        elif diff:
            action = Action.UPDATE
        else:
            action = Action.NO_OP
        changes.append(
            ResourceChange(
                resource_id=rid,
                resource_type=desired.type,
                action=action,
                diff=diff,
                attributes=dict(desired.attributes),
                tags=dict(desired.tags),
            )
        )
    return Plan(
        unit=unit.name,
        changes=tuple(changes),
        base_version=current_state.version,
        base_serial=current_state.serial,
    )
