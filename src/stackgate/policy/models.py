"""Policy configuration models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


class RequiredTag(BaseModel):
    key: str
    pattern: str = Field(default=".+")
    resource_types: list[str] = Field(default_factory=list)
    message: str | None = Field(default=None)

    @field_validator("resource_types", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class ActionRule(BaseModel):
    action: Literal["create", "update", "destroy"]
    resource_types: list[str] = Field(default_factory=list)
    message: str | None = Field(default=None)

    @field_validator("resource_types", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class PolicyRules(BaseModel):
    required_tags: list[RequiredTag] = Field(default_factory=list)
    deny_resource_types: list[str] = Field(default_factory=list)
    deny_actions: list[ActionRule] = Field(default_factory=list)
    allowed_regions: list[str] = Field(default_factory=list)
    max_changes: int | None = Field(default=None, ge=0)

    @field_validator(
        "required_tags", "deny_resource_types", "deny_actions", "allowed_regions", mode="before"
    )
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class PolicyDocument(BaseModel):
    """One named policy. Either built-in ``rules`` or an external ``command``."""

    name: str
    description: str | None = Field(default=None)
    environments: list[str] = Field(default_factory=list)
    rules: PolicyRules = Field(default_factory=PolicyRules)
    command: list[str] | None = Field(default=None)
    timeout_seconds: float | None = Field(default=None, gt=0)

    @field_validator("environments", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("command", mode="before")
    @classmethod
    def _validate_command(cls, v: Any) -> list | None:
        if v is None:
            return None
        if isinstance(v, str):
            v = v.split()
        if not v:
            raise ValueError("command must not be empty")
        return v

    def applies_to(self, environment: str | None) -> bool:
        if not self.environments:
            return True
        return environment in self.environments


class PolicySet(BaseModel):
    version: int = Field(default=1)
    policies: list[PolicyDocument] = Field(default_factory=list)

    @field_validator("policies", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("policies")
    @classmethod
    def _unique_names(cls, v: list[PolicyDocument]) -> list[PolicyDocument]:
        seen: set[str] = set()
        for policy in v:
            if policy.name in seen:
                raise ValueError(f"Duplicate policy name '{policy.name}'")
            seen.add(policy.name)
        return v

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "PolicySet":
        return cls.model_validate(data)

    def snapshot(self) -> "PolicySet":
        """Deep copy so later edits to this object cannot reach a running evaluation."""
        return self.model_copy(deep=True)
