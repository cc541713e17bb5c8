"""Policy gate: turn a plan or a state snapshot into one aggregate decision."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from stackgate.domain.plan import Plan
from stackgate.domain.resources import StateSnapshot
from stackgate.errors import PolicyEngineError
from stackgate.policy.decision import EvaluationResult, PolicyDecision
from stackgate.policy.engine import PolicyEvaluator, evaluator_for
from stackgate.policy.models import PolicyDocument, PolicySet

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PolicyContext:
    unit: str
    environment: str | None = None
    region: str | None = None
    account: str | None = None


def build_input(subject: Plan | StateSnapshot, context: PolicyContext) -> dict[str, object]:
    """Render the JSON-like document every evaluator receives."""
    resources: list[dict[str, object]] = []
    if isinstance(subject, Plan):
        kind = "plan"
        for change in subject.actionable():
            resources.append(
                {
                    "id": change.resource_id,
                    "type": change.resource_type,
                    "action": change.action.value,
                    "attributes": dict(change.attributes),
                    "tags": dict(change.tags),
                    "diff": [d.to_dict() for d in change.diff],
                }
            )
        change_count = len(resources)
    else:
        kind = "state"
        for rid, resource in sorted(subject.resources.items()):
            resources.append(
                {
                    "id": rid,
                    "type": resource.type,
                    "action": None,
                    "attributes": dict(resource.attributes),
                    "tags": dict(resource.tags),
                }
            )
        change_count = 0
    return {
        "kind": kind,
        "unit": context.unit,
        "environment": context.environment,
        "region": context.region,
        "account": context.account,
        "resources": resources,
        "change_count": change_count,
        "actions": sorted({str(r["action"]) for r in resources if r["action"] is not None}),
    }


class PolicyGate:
    """Evaluates every applicable policy independently and ANDs the results.

    A deny is a normal decision. PolicyEngineError means no decision exists.
    """

    def __init__(
        self,
        *,
        command_timeout_seconds: float | None = None,
        evaluator_factory: Callable[[PolicyDocument], PolicyEvaluator] | None = None,
    ) -> None:
        self._evaluator_factory = evaluator_factory or (
            lambda policy: evaluator_for(policy, command_timeout_seconds)
        )

    def evaluate(
        self,
        subject: Plan | StateSnapshot,
        policy_set: PolicySet,
        context: PolicyContext,
    ) -> PolicyDecision:
        document = build_input(subject, context)
        results: list[EvaluationResult] = []
        for policy in policy_set.policies:
            if not policy.applies_to(context.environment):
                continue
            evaluator = self._evaluator_factory(policy)
            try:
                result = evaluator.evaluate(document)
            except PolicyEngineError:
                raise
            except Exception as exc:
                raise PolicyEngineError(
                    f"Policy '{policy.name}' could not be evaluated: {exc}"
                ) from exc
            results.append(result)
        decision = PolicyDecision.combine(results)
        logger.debug(
            "Policy decision for %s (%s): allowed=%s violations=%d",
            context.unit,
            document["kind"],
            decision.allowed,
            len(decision.violations),
        )
        return decision
