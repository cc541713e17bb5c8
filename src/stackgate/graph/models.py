"""Declaration models for unit.yaml, shared module files and stackgate.yaml."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _ensure_list(v: Any) -> list:
    if v is None:
        return []
    if isinstance(v, str):
        return [v]
    return v


def _ensure_dict(v: Any) -> dict:
    if v is None:
        return {}
    return v


class BackendDeclaration(BaseModel):
    kind: str = Field(default="local")
    location: str | None = Field(default=None)
    key: str | None = Field(default=None)
    region: str | None = Field(default=None)
    account: str | None = Field(default=None)
    shared: bool = Field(default=False)

    @field_validator("kind")
    @classmethod
    def _normalize_kind(cls, v: str) -> str:
        kind = v.strip().lower()
        if kind not in {"local", "s3", "memory"}:
            raise ValueError(f"Unsupported backend kind '{v}'")
        return kind


class ResourceDeclaration(BaseModel):
    type: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("attributes", "tags", mode="before")
    @classmethod
    def _validate_dicts(cls, v: Any) -> dict:
        return _ensure_dict(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _stringify_tags(cls, v: Any) -> dict:
        if isinstance(v, dict):
            return {str(k): str(val) for k, val in v.items()}
        return v


class ModuleDeclaration(BaseModel):
    """A shared module file pulled into units with ``include``."""

    default_tags: dict[str, str] = Field(default_factory=dict)
    resources: dict[str, ResourceDeclaration] = Field(default_factory=dict)

    @field_validator("default_tags", "resources", mode="before")
    @classmethod
    def _validate_dicts(cls, v: Any) -> dict:
        return _ensure_dict(v)


class UnitDeclaration(ModuleDeclaration):
    name: str | None = Field(default=None)
    environment: str | None = Field(default=None)
    dependencies: list[str] = Field(default_factory=list)
    include: list[str] = Field(default_factory=list)
    backend: BackendDeclaration | None = Field(default=None)

    @field_validator("dependencies", "include", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class RootDeclaration(BaseModel):
    """Defaults shared by every unit beneath a root directory."""

    environment: str | None = Field(default=None)
    default_tags: dict[str, str] = Field(default_factory=dict)
    backend: BackendDeclaration = Field(default_factory=BackendDeclaration)

    @field_validator("default_tags", mode="before")
    @classmethod
    def _validate_dicts(cls, v: Any) -> dict:
        return _ensure_dict(v)
