"""Structural diff of resources, shared by planning and drift detection."""

from __future__ import annotations

from collections.abc import Mapping

from stackgate.domain.plan import AttributeDiff
from stackgate.domain.resources import ResourceState

_MISSING = object()


def _flatten(value: object, prefix: str, out: dict[str, object]) -> None:
    if isinstance(value, Mapping) and value:
        for key in sorted(value, key=str):
            _flatten(value[key], f"{prefix}.{key}" if prefix else str(key), out)
        return
    out[prefix] = value


def flatten(value: Mapping[str, object], prefix: str = "") -> dict[str, object]:
    """Flatten nested mappings into dotted paths. Lists are compared whole."""
    out: dict[str, object] = {}
    _flatten(value, prefix, out)
    if prefix and prefix in out and out[prefix] == {}:
        del out[prefix]
    return out


def diff_resources(
    before: ResourceState | None,
    after: ResourceState | None,
) -> tuple[AttributeDiff, ...]:
    """Return attribute-level differences, ordered by path."""
    left: dict[str, object] = {}
    right: dict[str, object] = {}
    if before is not None:
        left["type"] = before.type
        left.update(flatten(before.attributes, "attributes"))
        left.update(flatten(before.tags, "tags"))
    if after is not None:
        right["type"] = after.type
        right.update(flatten(after.attributes, "attributes"))
        right.update(flatten(after.tags, "tags"))

    diffs: list[AttributeDiff] = []
    for path in sorted(set(left) | set(right)):
        old = left.get(path, _MISSING)
        new = right.get(path, _MISSING)
        if old == new:
            continue
        diffs.append(
            AttributeDiff(
                path=path,
                before=None if old is _MISSING else old,
                after=None if new is _MISSING else new,
            )
        )
    return tuple(diffs)
