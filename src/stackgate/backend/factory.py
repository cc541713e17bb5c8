"""Resolve a unit's backend configuration to a shared backend instance."""

from __future__ import annotations

import threading
from collections.abc import Callable

from stackgate.backend.base import StateBackend
from stackgate.backend.local import LocalStateBackend
from stackgate.backend.memory import MemoryStateBackend
from stackgate.backend.s3 import S3StateBackend, create_s3_client
from stackgate.domain.units import BackendConfig, Unit
from stackgate.errors import ConfigurationError

BackendKey = tuple[str, str, str]


class BackendRegistry:
    """One backend per (kind, location), plus region for S3; units address it by key."""

    def __init__(
        self,
        *,
        lock_timeout_seconds: float = 30.0,
        aws_profile: str | None = None,
        default_region: str | None = None,
        s3_client_factory: Callable[[str | None, str | None], object] | None = None,
    ) -> None:
        self._lock_timeout_seconds = lock_timeout_seconds
        self._aws_profile = aws_profile
        self._default_region = default_region
        self._s3_client_factory = s3_client_factory or create_s3_client
        self._backends: dict[BackendKey, StateBackend] = {}
        self._mutex = threading.Lock()

    def backend_for(self, unit: Unit) -> StateBackend:
        return self.get(unit.backend)

    def _key(self, config: BackendConfig) -> BackendKey:
        # Region only selects the S3 endpoint; local and memory state ignore it.
        if config.kind != "s3":
            return (config.kind, config.location, "")
        return (config.kind, config.location, config.region or self._default_region or "")

    def get(self, config: BackendConfig) -> StateBackend:
        key = self._key(config)
        with self._mutex:
            backend = self._backends.get(key)
            if backend is None:
                backend = create_backend(
                    config,
                    lock_timeout_seconds=self._lock_timeout_seconds,
                    region=key[2] or None,
                    aws_profile=self._aws_profile,
                    s3_client_factory=self._s3_client_factory,
                )
                self._backends[key] = backend
            return backend

    def register(self, config: BackendConfig, backend: StateBackend) -> None:
        with self._mutex:
            self._backends[self._key(config)] = backend


def create_backend(
    config: BackendConfig,
    *,
    lock_timeout_seconds: float = 30.0,
    region: str | None = None,
    aws_profile: str | None = None,
    s3_client_factory: Callable[[str | None, str | None], object] | None = None,
) -> StateBackend:
    """Build a fresh backend for ``config.kind``. Prefer ``BackendRegistry`` to share one."""
    if config.kind == "memory":
        return MemoryStateBackend(lock_timeout_seconds=lock_timeout_seconds)
    if config.kind == "local":
        return LocalStateBackend(config.location, lock_timeout_seconds=lock_timeout_seconds)
    if config.kind == "s3":
        client = (s3_client_factory or create_s3_client)(region or config.region, aws_profile)
        return S3StateBackend(config.location, client, lock_timeout_seconds=lock_timeout_seconds)
    raise ConfigurationError(f"Unsupported backend kind '{config.kind}'")
