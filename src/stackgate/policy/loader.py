"""Policy loader for policy.yaml."""

from __future__ import annotations

from pathlib import Path

import yaml
from pydantic import ValidationError

from stackgate.errors import ConfigurationError
from stackgate.policy.models import PolicySet


def load_policy(path: str) -> PolicySet:
    policy_path = Path(path)
    if not policy_path.exists():
        raise FileNotFoundError(f"Policy file not found: {policy_path}")
    with policy_path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in policy file {policy_path}: {exc}") from exc
    try:
        return PolicySet.from_yaml(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid policy file {policy_path}: {exc}") from exc
