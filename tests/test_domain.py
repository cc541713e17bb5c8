from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from pathlib import PurePosixPath

import pytest

from stackgate.domain.resources import ResourceState, StateSnapshot
from stackgate.orchestrator.models import InvalidTransitionError, UnitResult, UnitStatus
from stackgate.utils.hashing import canonical_json, sha256_json
from stackgate.utils.serialization import json_default


class _Color(Enum):
    RED = "red"


def test_evolve_keeps_lineage_and_write_base() -> None:
    first = StateSnapshot(unit="app", serial=2, lineage="abc", version="v2")
    nxt = first.evolve({"b": ResourceState("b", "bucket"), "a": ResourceState("a", "bucket")})

    assert nxt.serial == 3
    assert nxt.lineage == "abc"
    assert nxt.version == "v2"
    assert list(nxt.resources) == ["a", "b"]
    assert StateSnapshot.empty("app").evolve({}).lineage is not None


def test_payload_round_trip_preserves_state() -> None:
    snapshot = StateSnapshot.empty("app").evolve(
        {"a": ResourceState("a", "bucket", {"nested": {"k": [1, 2]}}, {"owner": "x"})}
    )
    restored = StateSnapshot.from_payload("app", snapshot.to_payload(), version="v1")

    assert restored.resources == snapshot.resources
    assert restored.serial == 1
    assert restored.version == "v1"


def test_malformed_payload_rejected() -> None:
    with pytest.raises(ValueError, match="malformed resources"):
        StateSnapshot.from_payload("app", {"resources": ["a"]}, version=None)
    with pytest.raises(ValueError, match="malformed attributes"):
        ResourceState.from_dict("a", {"type": "bucket", "attributes": "oops"})


def test_unit_result_rejects_invalid_transition() -> None:
    result = UnitResult(unit="a")
    result.transition(UnitStatus.PLANNING)

    with pytest.raises(InvalidTransitionError, match="cannot move from Planning to Done"):
        result.transition(UnitStatus.DONE)
    result.transition(UnitStatus.GATING)
    result.transition(UnitStatus.BLOCKED, "policy denied")
    with pytest.raises(InvalidTransitionError):
        result.transition(UnitStatus.PLANNING)
    assert result.reason == "policy denied"


def test_json_default_handles_common_types() -> None:
    stamp = datetime(2026, 1, 1, tzinfo=timezone.utc)
    assert json_default(stamp) == "2026-01-01T00:00:00+00:00"
    assert json_default(_Color.RED) == "red"
    assert json_default(Decimal("2")) == 2
    assert json_default(Decimal("1.5")) == 1.5
    assert json_default(PurePosixPath("/tmp/x")) == "/tmp/x"
    assert json_default({"b", "a"}) == ["a", "b"]


def test_canonical_json_is_key_order_independent() -> None:
    assert canonical_json({"b": 1, "a": 2}) == '{"a":2,"b":1}'
    assert sha256_json({"b": 1, "a": 2}) == sha256_json({"a": 2, "b": 1})
