"""Unit and backend configuration models."""

from __future__ import annotations

from dataclasses import dataclass, field

from stackgate.domain.resources import ResourceState


@dataclass(frozen=True)
class BackendConfig:
    """Where a unit's state lives.

    Several units may point at the same ``location`` (one bucket or directory)
    as long as their ``key`` differs, or all of them set ``shared``.
    """

    kind: str
    location: str
    key: str
    region: str | None = None
    account: str | None = None
    shared: bool = False

    @property
    def address(self) -> tuple[str, str, str]:
        return (self.kind, self.location, self.key)


@dataclass(frozen=True)
class Unit:
    name: str
    path: str
    backend: BackendConfig
    dependencies: tuple[str, ...] = ()
    environment: str | None = None
    resources: dict[str, ResourceState] = field(default_factory=dict)
    includes: tuple[str, ...] = ()
