from __future__ import annotations

from collections.abc import Callable

import pytest

from stackgate import config
from stackgate.backend.factory import BackendRegistry
from stackgate.domain.resources import ResourceState
from stackgate.domain.units import BackendConfig, Unit
from stackgate.execution.executor import PlanApplyExecutor
from stackgate.execution.provider import MemoryResourceProvider
from stackgate.policy.gate import PolicyGate
from stackgate.policy.models import PolicySet

UnitFactory = Callable[..., Unit]


def _no_sleep(_seconds: float) -> None:
    return None


async def _no_async_sleep(_seconds: float) -> None:
    return None


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config, "load_dotenv", lambda **_: None)
    config._load_settings_cached.cache_clear()
    yield
    config._load_settings_cached.cache_clear()


@pytest.fixture
def make_unit() -> UnitFactory:
    def factory(
        name: str,
        *,
        dependencies: tuple[str, ...] = (),
        resources: dict[str, ResourceState] | None = None,
        environment: str | None = None,
        kind: str = "memory",
        location: str = "shared",
        region: str | None = None,
        shared: bool = False,
        key: str | None = None,
    ) -> Unit:
        if resources is None:
            resources = {
                f"{name}-bucket": ResourceState(
                    resource_id=f"{name}-bucket",
                    type="bucket",
                    attributes={"versioning": True},
                    tags={"owner": "platform"},
                )
            }
        return Unit(
            name=name,
            path=f"/units/{name}",
            backend=BackendConfig(
                kind=kind,
                location=location,
                key=key or f"{name}/state.json",
                region=region,
                shared=shared,
            ),
            dependencies=tuple(dependencies),
            environment=environment,
            resources=resources,
        )

    return factory


@pytest.fixture
def backends() -> BackendRegistry:
    return BackendRegistry(lock_timeout_seconds=0)


@pytest.fixture
def provider() -> MemoryResourceProvider:
    return MemoryResourceProvider()


@pytest.fixture
def executor(backends: BackendRegistry, provider: MemoryResourceProvider) -> PlanApplyExecutor:
    return PlanApplyExecutor(backends, provider, max_retries=2, sleep=_no_sleep)


@pytest.fixture
def gate() -> PolicyGate:
    return PolicyGate(command_timeout_seconds=10)


@pytest.fixture
def owner_tag_policy() -> PolicySet:
    return PolicySet.from_yaml(
        {
            "policies": [
                {
                    "name": "tagging",
                    "rules": {"required_tags": [{"key": "owner"}]},
                }
            ]
        }
    )


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    return _no_sleep


@pytest.fixture
def no_async_sleep():
    return _no_async_sleep
