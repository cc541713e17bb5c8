from __future__ import annotations

from pathlib import Path

import pytest

from stackgate.app import build_app_context
from stackgate.config import load_settings
from stackgate.execution.provider import LocalResourceProvider, MemoryResourceProvider


@pytest.fixture
def settings_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    policy = tmp_path / "policy.yaml"
    policy.write_text("policies:\n  - name: open\n", encoding="utf-8")
    monkeypatch.setenv("STACKGATE_POLICY_PATH", str(policy))
    monkeypatch.setenv("SQLITE_PATH", str(tmp_path / "audit.sqlite"))
    monkeypatch.setenv("ARTIFACT_PATH", str(tmp_path / "artifacts"))
    monkeypatch.setenv("STACKGATE_LIVE_STATE_PATH", str(tmp_path / "live"))
    monkeypatch.setenv("STACKGATE_MAX_RETRIES", "4")
    return tmp_path


def test_context_wires_components_from_settings(settings_env: Path) -> None:
    ctx = build_app_context()
    try:
        assert [p.name for p in ctx.policy_set.policies] == ["open"]
        assert isinstance(ctx.provider, LocalResourceProvider)
        assert ctx.executor.provider is ctx.provider
        assert ctx.executor._max_retries == 4
        assert (settings_env / "audit.sqlite").exists()
        assert (settings_env / "live").is_dir()
    finally:
        ctx.close()


def test_policy_override_and_custom_provider(settings_env: Path) -> None:
    other = settings_env / "other.yaml"
    other.write_text("policies:\n  - name: strict\n  - name: audit\n", encoding="utf-8")
    provider = MemoryResourceProvider()

    ctx = build_app_context(load_settings(), policy_path=str(other), provider=provider)
    try:
        assert [p.name for p in ctx.policy_set.policies] == ["strict", "audit"]
        assert ctx.provider is provider
    finally:
        ctx.close()


def test_missing_policy_file(settings_env: Path) -> None:
    with pytest.raises(FileNotFoundError):
        build_app_context(policy_path=str(settings_env / "nope.yaml"))
