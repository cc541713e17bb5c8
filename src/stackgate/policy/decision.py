"""Policy evaluation results."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Violation:
    policy: str
    rule_id: str
    message: str
    resource_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "policy": self.policy,
            "rule_id": self.rule_id,
            "message": self.message,
            "resource_id": self.resource_id,
        }


@dataclass(frozen=True)
class EvaluationResult:
    """What one evaluator returned for one policy."""

    allow: bool
    violations: tuple[Violation, ...] = ()


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    violations: tuple[Violation, ...] = ()

    @property
    def rule_ids(self) -> tuple[str, ...]:
        return tuple(v.rule_id for v in self.violations)

    def to_dict(self) -> dict[str, object]:
        return {
            "allowed": self.allowed,
            "violations": [v.to_dict() for v in self.violations],
        }

    @classmethod
    def combine(cls, results: list[EvaluationResult]) -> "PolicyDecision":
        """AND the allows; concatenate violations in evaluation order."""
        violations: list[Violation] = []
        for result in results:
            violations.extend(result.violations)
        return cls(
            allowed=all(result.allow for result in results),
            violations=tuple(violations),
        )
