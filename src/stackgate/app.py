"""Application context assembly."""

from __future__ import annotations

from dataclasses import dataclass

from stackgate.audit.artifacts import ArtifactStore
from stackgate.audit.db import SqliteStore
from stackgate.audit.trail import AuditTrail
from stackgate.backend.factory import BackendRegistry
from stackgate.config import Settings, load_settings
from stackgate.execution.executor import PlanApplyExecutor
from stackgate.execution.provider import LocalResourceProvider, ResourceProvider
from stackgate.policy.gate import PolicyGate
from stackgate.policy.loader import load_policy
from stackgate.policy.models import PolicySet


@dataclass
class AppContext:
    """Everything one CLI invocation needs, built from settings."""

    settings: Settings
    store: SqliteStore
    artifacts: ArtifactStore
    audit: AuditTrail
    policy_set: PolicySet
    gate: PolicyGate
    backends: BackendRegistry
    provider: ResourceProvider
    executor: PlanApplyExecutor

    def close(self) -> None:
        self.store.close()


def build_app_context(
    settings: Settings | None = None,
    *,
    policy_path: str | None = None,
    provider: ResourceProvider | None = None,
) -> AppContext:
    settings = settings or load_settings()
    policy_set = load_policy(policy_path or settings.policy.path)
    gate = PolicyGate(command_timeout_seconds=settings.policy.command_timeout_seconds)

    store = SqliteStore(settings.storage.sqlite_path, wal=settings.storage.sqlite_wal)
    artifacts = ArtifactStore(settings.storage.artifact_path)
    audit = AuditTrail(store, artifacts)

    backends = BackendRegistry(
        lock_timeout_seconds=settings.lock.timeout_seconds,
        aws_profile=settings.aws.default_profile,
        default_region=settings.aws.default_region,
    )
    provider = provider or LocalResourceProvider(settings.storage.live_state_path)
    executor = PlanApplyExecutor(
        backends,
        provider,
        max_retries=settings.execution.max_retries,
        backoff_base_seconds=settings.execution.backoff_base_seconds,
    )
    return AppContext(
        settings=settings,
        store=store,
        artifacts=artifacts,
        audit=audit,
        policy_set=policy_set,
        gate=gate,
        backends=backends,
        provider=provider,
        executor=executor,
    )
