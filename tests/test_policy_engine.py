from __future__ import annotations

import json
import sys

import pytest

from stackgate.errors import PolicyEngineError
from stackgate.policy.engine import (
    CommandEvaluator,
    RuleEvaluator,
    compile_patterns,
    evaluator_for,
    validate_pattern_safety,
)
from stackgate.policy.models import PolicyDocument


def _policy(**rules) -> PolicyDocument:
    return PolicyDocument.model_validate({"name": "guard", "rules": rules})


def _document(*resources: dict, kind: str = "plan", region: str | None = None) -> dict:
    return {
        "kind": kind,
        "unit": "app",
        "environment": "prod",
        "region": region,
        "resources": list(resources),
        "change_count": len(resources),
    }


def _resource(rid: str, action: str | None = "create", rtype: str = "bucket", **extra) -> dict:
    return {"id": rid, "type": rtype, "action": action, "attributes": {}, "tags": {}, **extra}


def test_required_tag_missing_and_malformed() -> None:
    evaluator = RuleEvaluator(
        _policy(required_tags=[{"key": "owner"}, {"key": "cost-center", "pattern": "cc-[0-9]+"}])
    )
    result = evaluator.evaluate(
        _document(
            _resource("a", tags={"owner": "x", "cost-center": "cc-12"}),
            _resource("b", tags={"cost-center": "twelve"}),
        )
    )

    assert not result.allow
    assert [(v.rule_id, v.resource_id) for v in result.violations] == [
        ("required_tags.owner", "b"),
        ("required_tags.cost-center", "b"),
    ]
    assert "missing required tag 'owner'" in result.violations[0].message


def test_destroyed_resources_need_no_tags() -> None:
    evaluator = RuleEvaluator(_policy(required_tags=[{"key": "owner"}]))
    assert evaluator.evaluate(_document(_resource("a", action="destroy"))).allow


def test_required_tag_scoped_to_resource_types() -> None:
    evaluator = RuleEvaluator(
        _policy(required_tags=[{"key": "owner", "resource_types": ["data.*"]}])
    )
    result = evaluator.evaluate(
        _document(_resource("a", rtype="bucket"), _resource("b", rtype="database"))
    )
    assert [v.resource_id for v in result.violations] == ["b"]


def test_deny_actions_and_types() -> None:
    evaluator = RuleEvaluator(
        _policy(
            deny_resource_types=["iam_user"],
            deny_actions=[{"action": "destroy", "resource_types": ["database"], "message": "no"}],
        )
    )
    result = evaluator.evaluate(
        _document(
            _resource("u", rtype="iam_user"),
            _resource("db", action="destroy", rtype="database"),
            _resource("tmp", action="destroy", rtype="bucket"),
        )
    )

    assert [(v.rule_id, v.resource_id, v.message) for v in result.violations] == [
        ("deny_resource_types", "u", "Resource type 'iam_user' of 'u' is not permitted"),
        ("deny_actions.destroy", "db", "no"),
    ]


def test_allowed_regions_uses_attribute_then_context() -> None:
    evaluator = RuleEvaluator(_policy(allowed_regions=["eu-west-1"]))
    result = evaluator.evaluate(
        _document(
            _resource("a", attributes={"region": "us-east-1"}),
            _resource("b"),
            region="eu-west-1",
        )
    )
    assert [v.resource_id for v in result.violations] == ["a"]

    assert not evaluator.evaluate(_document(_resource("c"), region="ap-south-1")).allow


def test_max_changes_applies_to_plans_only() -> None:
    evaluator = RuleEvaluator(_policy(max_changes=1))
    two = (_resource("a"), _resource("b"))

    assert evaluator.evaluate(_document(*two)).violations[0].rule_id == "max_changes"
    assert evaluator.evaluate(_document(*two, kind="state")).allow


def test_rule_order_is_stable() -> None:
    evaluator = RuleEvaluator(
        _policy(
            required_tags=[{"key": "owner"}],
            deny_resource_types=["bucket"],
            max_changes=0,
        )
    )
    result = evaluator.evaluate(_document(_resource("a")))
    assert [v.rule_id for v in result.violations] == [
        "required_tags.owner",
        "deny_resource_types",
        "max_changes",
    ]


@pytest.mark.parametrize(
    "pattern",
    [
        "(?<=a)b",
        r"(a)\1",
        "(a+)+",
        "a" * 300,
    ],
)
def test_unsafe_patterns_rejected(pattern: str) -> None:
    with pytest.raises(ValueError, match="Unsafe regex"):
        validate_pattern_safety(pattern, "test")


def test_invalid_pattern_rejected() -> None:
    with pytest.raises(ValueError, match="Invalid regex"):
        compile_patterns(["[unclosed"], "test")


def test_evaluator_for_wraps_compile_errors() -> None:
    policy = _policy(deny_resource_types=["(a+)+"])
    with pytest.raises(PolicyEngineError, match="cannot be compiled"):
        evaluator_for(policy)


def _command_policy(script: str, timeout: float | None = None) -> PolicyDocument:
    return PolicyDocument(
        name="external",
        command=[sys.executable, "-c", script],
        timeout_seconds=timeout,
    )


def test_command_evaluator_reads_decision_from_stdout() -> None:
    script = (
        "import json, sys\n"
        "doc = json.load(sys.stdin)\n"
        "bad = [r['id'] for r in doc['resources'] if not r['tags']]\n"
        "print(json.dumps({'allow': not bad, 'violations': "
        "[{'rule_id': 'ext.tags', 'message': 'untagged', 'resource_id': i} for i in bad]}))\n"
    )
    evaluator = evaluator_for(_command_policy(script))
    assert isinstance(evaluator, CommandEvaluator)

    result = evaluator.evaluate(_document(_resource("a"), _resource("b", tags={"owner": "x"})))

    assert not result.allow
    assert [(v.policy, v.rule_id, v.resource_id) for v in result.violations] == [
        ("external", "ext.tags", "a")
    ]


def test_command_evaluator_nonzero_exit_is_engine_error() -> None:
    evaluator = CommandEvaluator(_command_policy("import sys; sys.exit(3)"))
    with pytest.raises(PolicyEngineError, match="exit 3"):
        evaluator.evaluate(_document())


def test_command_evaluator_malformed_output_is_engine_error() -> None:
    evaluator = CommandEvaluator(_command_policy("print('allow')"))
    with pytest.raises(PolicyEngineError, match="invalid JSON"):
        evaluator.evaluate(_document())

    evaluator = CommandEvaluator(_command_policy(f"print({json.dumps(json.dumps({'allow': 1}))})"))
    with pytest.raises(PolicyEngineError, match="boolean 'allow'"):
        evaluator.evaluate(_document())


def test_command_evaluator_timeout_is_engine_error() -> None:
    evaluator = CommandEvaluator(_command_policy("import time; time.sleep(5)", timeout=0.2))
    with pytest.raises(PolicyEngineError, match="timed out"):
        evaluator.evaluate(_document())


def test_command_evaluator_missing_binary() -> None:
    policy = PolicyDocument(name="missing", command=["/nonexistent/policy-engine"])
    with pytest.raises(PolicyEngineError, match="could not start"):
        CommandEvaluator(policy).evaluate(_document())
