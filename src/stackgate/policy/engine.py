"""Policy evaluators: built-in rules and external commands."""

from __future__ import annotations

import json
import logging
import re
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from stackgate.errors import PolicyEngineError
from stackgate.policy.decision import EvaluationResult, Violation
from stackgate.policy.models import PolicyDocument, RequiredTag
from stackgate.utils.serialization import json_default

logger = logging.getLogger(__name__)

_MAX_POLICY_REGEX_LENGTH = 256
_MAX_TAG_VALUE_LENGTH = 256
_BACKREFERENCE_PATTERN = re.compile(r"\\[1-9]")
_NESTED_QUANTIFIER_PATTERN = re.compile(
    r"\((?:[^()\\]|\\.)*[+*](?:[^()\\]|\\.)*\)\s*(?:[+*]|\{\d+(?:,\d*)?\})"
)
_LOOKBEHIND_TOKENS = ("(?<=", "(?<!")
_DEFAULT_COMMAND_TIMEOUT_SECONDS = 30.0


class PolicyEvaluator(Protocol):
    def evaluate(self, document: Mapping[str, object]) -> EvaluationResult: ...


def validate_pattern_safety(pattern: str, label: str) -> None:
    if len(pattern) > _MAX_POLICY_REGEX_LENGTH:
        raise ValueError(
            f"Unsafe regex in {label} policy pattern '{pattern}': exceeds "
            f"{_MAX_POLICY_REGEX_LENGTH} characters"
        )
    if any(token in pattern for token in _LOOKBEHIND_TOKENS):
        raise ValueError(
            f"Unsafe regex in {label} policy pattern '{pattern}': look-behind is not allowed"
        )
    if _BACKREFERENCE_PATTERN.search(pattern):
        raise ValueError(
            f"Unsafe regex in {label} policy pattern '{pattern}': "
            "backreferences are not allowed"
        )
    if _NESTED_QUANTIFIER_PATTERN.search(pattern):
        raise ValueError(
            f"Unsafe regex in {label} policy pattern '{pattern}': "
            "nested quantifiers are not allowed"
        )


def compile_patterns(patterns: Sequence[str], label: str) -> list[re.Pattern[str]]:
    compiled: list[re.Pattern[str]] = []
    for pat in patterns:
        validate_pattern_safety(pat, label)
        try:
            compiled.append(re.compile(pat))
        except re.error as exc:
            raise ValueError(f"Invalid regex in {label} policy pattern '{pat}': {exc}") from exc
    return compiled


@dataclass(frozen=True)
class _CompiledRequiredTag:
    tag: RequiredTag
    regex: re.Pattern[str]
    resource_types: list[re.Pattern[str]]


def _type_matches(patterns: list[re.Pattern[str]], resource_type: str) -> bool:
    if not patterns:
        return True
    return any(pattern.fullmatch(resource_type) for pattern in patterns)


class RuleEvaluator:
    """Evaluates a policy's built-in rules against an input document.

    Violations come out in rule declaration order, then resource order.
    """

    def __init__(self, policy: PolicyDocument) -> None:
        self._policy = policy
        rules = policy.rules
        label = f"{policy.name}"
        self._required_tags = [
            _CompiledRequiredTag(
                tag=tag,
                regex=compile_patterns([tag.pattern], f"{label}:required_tag:{tag.key}")[0],
                resource_types=compile_patterns(
                    tag.resource_types, f"{label}:required_tag:{tag.key}"
                ),
            )
            for tag in rules.required_tags
        ]
        self._denied_types = compile_patterns(
            rules.deny_resource_types, f"{label}:deny_resource_types"
        )
        self._denied_actions = [
            (rule, compile_patterns(rule.resource_types, f"{label}:deny_actions:{rule.action}"))
            for rule in rules.deny_actions
        ]
        self._allowed_regions = frozenset(rules.allowed_regions)
        self._max_changes = rules.max_changes

    def evaluate(self, document: Mapping[str, object]) -> EvaluationResult:
        resources = _resources(document)
        violations: list[Violation] = []
        violations.extend(self._check_required_tags(resources))
        violations.extend(self._check_denied_types(resources))
        violations.extend(self._check_denied_actions(resources))
        violations.extend(self._check_regions(resources, document.get("region")))
        violations.extend(self._check_max_changes(document))
        return EvaluationResult(allow=not violations, violations=tuple(violations))

    def _violation(self, rule_id: str, message: str, resource_id: str | None = None) -> Violation:
        return Violation(self._policy.name, rule_id, message, resource_id)

    def _check_required_tags(self, resources: list[Mapping[str, object]]) -> list[Violation]:
        found: list[Violation] = []
        for compiled in self._required_tags:
            key = compiled.tag.key
            for resource in resources:
                if resource.get("action") == "destroy":
                    continue
                rid = str(resource.get("id"))
                rtype = str(resource.get("type", ""))
                if not _type_matches(compiled.resource_types, rtype):
                    continue
                tags = resource.get("tags")
                value = tags.get(key) if isinstance(tags, Mapping) else None
                if value is None:
                    message = compiled.tag.message or (
                        f"Resource '{rid}' ({rtype}) is missing required tag '{key}'"
                    )
                    found.append(self._violation(f"required_tags.{key}", message, rid))
                    continue
                text = str(value)
                if len(text) > _MAX_TAG_VALUE_LENGTH or not compiled.regex.fullmatch(text):
                    message = compiled.tag.message or (
                        f"Resource '{rid}' ({rtype}) tag '{key}' does not match "
                        f"'{compiled.tag.pattern}'"
                    )
                    found.append(self._violation(f"required_tags.{key}", message, rid))
        return found

    def _check_denied_types(self, resources: list[Mapping[str, object]]) -> list[Violation]:
        found: list[Violation] = []
        for pattern in self._denied_types:
            for resource in resources:
                if resource.get("action") == "destroy":
                    continue
                rtype = str(resource.get("type", ""))
                if pattern.fullmatch(rtype):
                    rid = str(resource.get("id"))
                    found.append(
                        self._violation(
                            "deny_resource_types",
                            f"Resource type '{rtype}' of '{rid}' is not permitted",
                            rid,
                        )
                    )
        return found

    def _check_denied_actions(self, resources: list[Mapping[str, object]]) -> list[Violation]:
        found: list[Violation] = []
        for rule, type_patterns in self._denied_actions:
            for resource in resources:
                if resource.get("action") != rule.action:
                    continue
                rtype = str(resource.get("type", ""))
                if not _type_matches(type_patterns, rtype):
                    continue
                rid = str(resource.get("id"))
                message = rule.message or f"Action '{rule.action}' on '{rid}' ({rtype}) is denied"
                found.append(self._violation(f"deny_actions.{rule.action}", message, rid))
        return found

    def _check_regions(
        self,
        resources: list[Mapping[str, object]],
        default_region: object,
    ) -> list[Violation]:
        if not self._allowed_regions:
            return []
        found: list[Violation] = []
        for resource in resources:
            if resource.get("action") == "destroy":
                continue
            attributes = resource.get("attributes")
            region = attributes.get("region") if isinstance(attributes, Mapping) else None
            region = region or default_region
            if region is None or str(region) in self._allowed_regions:
                continue
            rid = str(resource.get("id"))
            found.append(
                self._violation(
                    "allowed_regions",
                    f"Resource '{rid}' targets region '{region}' outside "
                    f"{sorted(self._allowed_regions)}",
                    rid,
                )
            )
        return found

    def _check_max_changes(self, document: Mapping[str, object]) -> list[Violation]:
        if self._max_changes is None or document.get("kind") != "plan":
            return []
        count = document.get("change_count", 0)
        if isinstance(count, int) and count > self._max_changes:
            return [
                self._violation(
                    "max_changes",
                    f"Plan changes {count} resources; at most {self._max_changes} allowed",
                )
            ]
        return []


def _resources(document: Mapping[str, object]) -> list[Mapping[str, object]]:
    raw = document.get("resources")
    if not isinstance(raw, list):
        return []
    return [item for item in raw if isinstance(item, Mapping)]


class CommandEvaluator:
    """Runs an external policy engine.

    The input document goes to stdin as JSON; stdout must be a JSON object
    ``{"allow": bool, "violations": [{"rule_id": ..., "message": ...}]}``.
    """

    def __init__(
        self,
        policy: PolicyDocument,
        default_timeout_seconds: float | None = None,
    ) -> None:
        if not policy.command:
            raise ValueError(f"Policy '{policy.name}' has no command")
        self._policy = policy
        self._command = list(policy.command)
        self._timeout = (
            policy.timeout_seconds or default_timeout_seconds or _DEFAULT_COMMAND_TIMEOUT_SECONDS
        )

    def evaluate(self, document: Mapping[str, object]) -> EvaluationResult:
        payload = json.dumps(document, sort_keys=True, default=json_default)
        name = self._policy.name
        try:
            result = subprocess.run(
                self._command,
                input=payload,
                check=False,
                capture_output=True,
                text=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired:
            raise PolicyEngineError(
                f"Policy engine for '{name}' timed out after {self._timeout}s"
            ) from None
        except OSError as exc:
            raise PolicyEngineError(f"Policy engine for '{name}' could not start: {exc}") from exc
        if result.returncode != 0:
            logger.debug("Policy engine stderr for %s: %s", name, result.stderr[:2000])
            raise PolicyEngineError(
                f"Policy engine for '{name}' failed (exit {result.returncode})"
            )
        return self._parse(result.stdout)

    def _parse(self, stdout: str) -> EvaluationResult:
        name = self._policy.name
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as exc:
            raise PolicyEngineError(
                f"Policy engine for '{name}' returned invalid JSON: {exc}"
            ) from exc
        if not isinstance(data, dict) or not isinstance(data.get("allow"), bool):
            raise PolicyEngineError(f"Policy engine for '{name}' returned no boolean 'allow'")
        raw_violations = data.get("violations") or []
        if not isinstance(raw_violations, list):
            raise PolicyEngineError(f"Policy engine for '{name}' returned malformed violations")
        violations: list[Violation] = []
        for index, item in enumerate(raw_violations):
            if isinstance(item, str):
                violations.append(Violation(name, f"{name}.{index}", item))
            elif isinstance(item, dict):
                resource_id = item.get("resource_id")
                violations.append(
                    Violation(
                        name,
                        str(item.get("rule_id") or f"{name}.{index}"),
                        str(item.get("message", "")),
                        str(resource_id) if resource_id is not None else None,
                    )
                )
            else:
                raise PolicyEngineError(f"Policy engine for '{name}' returned malformed violations")
        return EvaluationResult(allow=data["allow"], violations=tuple(violations))


def evaluator_for(
    policy: PolicyDocument,
    command_timeout_seconds: float | None = None,
) -> PolicyEvaluator:
    if policy.command:
        return CommandEvaluator(policy, command_timeout_seconds)
    try:
        return RuleEvaluator(policy)
    except ValueError as exc:
        raise PolicyEngineError(f"Policy '{policy.name}' cannot be compiled: {exc}") from exc
