from __future__ import annotations

from stackgate.domain.plan import Action, AttributeDiff
from stackgate.domain.resources import ResourceState, StateSnapshot
from stackgate.execution.diff import diff_resources, flatten
from stackgate.execution.planner import plan


def _resource(rid: str, rtype: str = "bucket", **attributes) -> ResourceState:
    return ResourceState(resource_id=rid, type=rtype, attributes=attributes, tags={"owner": "a"})


def test_flatten_nested_mappings() -> None:
    assert flatten({"a": {"b": 1, "c": {"d": [1, 2]}}, "e": {}}, "attributes") == {
        "attributes.a.b": 1,
        "attributes.a.c.d": [1, 2],
        "attributes.e": {},
    }


def test_diff_resources_reports_paths_in_order() -> None:
    before = ResourceState("x", "bucket", {"size": 1, "policy": {"public": False}}, {"owner": "a"})
    after = ResourceState("x", "bucket", {"size": 2, "policy": {"public": False}}, {"team": "b"})

    assert diff_resources(before, after) == (
        AttributeDiff("attributes.size", 1, 2),
        AttributeDiff("tags.owner", "a", None),
        AttributeDiff("tags.team", None, "b"),
    )
    assert diff_resources(before, before) == ()


def test_plan_classifies_every_resource(make_unit) -> None:
    unit = make_unit(
        "app",
        resources={
            "keep": _resource("keep", size=1),
            "grow": _resource("grow", size=2),
            "new": _resource("new"),
        },
    )
    state = StateSnapshot.empty("app").evolve(
        {
            "keep": _resource("keep", size=1),
            "grow": _resource("grow", size=1),
            "old": _resource("old", "queue"),
        }
    )

    result = plan(unit, state)

    actions = {change.resource_id: change.action for change in result.changes}
    assert actions == {
        "grow": Action.UPDATE,
        "keep": Action.NO_OP,
        "new": Action.CREATE,
        "old": Action.DESTROY,
    }
    assert [change.resource_id for change in result.changes] == ["grow", "keep", "new", "old"]
    assert result.summary() == {"create": 1, "update": 1, "destroy": 1, "no-op": 1}
    assert [c.resource_id for c in result.actionable()] == ["grow", "new", "old"]
    destroyed = result.changes[-1]
    assert destroyed.resource_type == "queue"
    assert destroyed.attributes == {}


def test_type_change_is_an_update(make_unit) -> None:
    unit = make_unit("app", resources={"x": _resource("x", "queue")})
    state = StateSnapshot.empty("app").evolve({"x": _resource("x", "bucket")})

    (change,) = plan(unit, state).changes

    assert change.action is Action.UPDATE
    assert AttributeDiff("type", "bucket", "queue") in change.diff


def test_plan_is_deterministic(make_unit) -> None:
    unit = make_unit("app", resources={f"r{i}": _resource(f"r{i}", size=i) for i in range(5)})
    state = StateSnapshot(unit="app", serial=4, version="v4")

    first = plan(unit, state)
    second = plan(unit, state)

    assert first == second
    assert first.checksum == second.checksum
    assert first.base_version == "v4"
    assert first.base_serial == 4


def test_plan_without_changes(make_unit) -> None:
    unit = make_unit("app")
    state = StateSnapshot.empty("app").evolve(unit.resources)

    result = plan(unit, state)

    assert not result.has_changes
    assert result.actionable() == ()
