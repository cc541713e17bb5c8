"""Discover unit.yaml declarations beneath a root directory."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stackgate.domain.resources import ResourceState
from stackgate.domain.units import BackendConfig, Unit
from stackgate.errors import ConfigurationError
from stackgate.graph.builder import UnitGraph, build_graph
from stackgate.graph.models import (
    BackendDeclaration,
    ModuleDeclaration,
    ResourceDeclaration,
    RootDeclaration,
    UnitDeclaration,
)
from stackgate.utils.serialization import json_default

logger = logging.getLogger(__name__)

UNIT_FILENAME = "unit.yaml"
ROOT_FILENAME = "stackgate.yaml"
DEFAULT_STATE_DIR = ".stackgate/state"
DEFAULT_KEY_TEMPLATE = "{unit}/state.json"


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    return data


def load_root(root: Path) -> RootDeclaration:
    path = root / ROOT_FILENAME
    if not path.exists():
        return RootDeclaration()
    try:
        return RootDeclaration.model_validate(_read_yaml(path))
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid {path}: {exc}") from exc


def load_units(root: str | Path) -> list[Unit]:
    """Load every unit declared beneath ``root``.

    Dependencies may name a unit or point at its directory relatively
    (``../network``). References that match nothing are left as written so
    graph construction reports them.
    """
    root_path = Path(root).resolve()
    if not root_path.is_dir():
        raise ConfigurationError(f"Unit root is not a directory: {root_path}")
    defaults = load_root(root_path)

    declared: list[tuple[Path, str, UnitDeclaration]] = []
    for unit_file in sorted(root_path.rglob(UNIT_FILENAME)):
        try:
            declaration = UnitDeclaration.model_validate(_read_yaml(unit_file))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid unit declaration {unit_file}: {exc}") from exc
        unit_dir = unit_file.parent
        relative = unit_dir.relative_to(root_path).as_posix()
        name = declaration.name or (relative if relative != "." else root_path.name)
        declared.append((unit_dir, name, declaration))

    by_dir = {unit_dir: name for unit_dir, name, _ in declared}
    names = set(by_dir.values())

    units: list[Unit] = []
    for unit_dir, name, declaration in declared:
        dependencies = tuple(
            dict.fromkeys(
                _resolve_dependency(dep, unit_dir, names, by_dir)
                for dep in declaration.dependencies
            )
        )
        resources, includes = _collect_resources(unit_dir, declaration, defaults)
        units.append(
            Unit(
                name=name,
                path=str(unit_dir),
                backend=_backend_config(name, root_path, declaration.backend, defaults.backend),
                dependencies=dependencies,
                environment=declaration.environment or defaults.environment,
                resources=resources,
                includes=includes,
            )
        )
    logger.debug("Discovered %d unit(s) under %s", len(units), root_path)
    return units


def load_graph(root: str | Path) -> UnitGraph:
    return build_graph(load_units(root))


def _resolve_dependency(
    reference: str,
    unit_dir: Path,
    names: set[str],
    by_dir: dict[Path, str],
) -> str:
    if reference in names:
        return reference
    if reference.startswith(".") or "/" in reference:
        target = (unit_dir / reference).resolve()
        if target in by_dir:
            return by_dir[target]
    return reference


def _json_canonical(attributes: dict[str, Any]) -> dict[str, Any]:
    """Round-trip through JSON so declared values compare equal to stored state."""
    return json.loads(json.dumps(attributes, default=json_default))


def _collect_resources(
    unit_dir: Path,
    declaration: UnitDeclaration,
    defaults: RootDeclaration,
) -> tuple[dict[str, ResourceState], tuple[str, ...]]:
    merged: dict[str, tuple[ResourceDeclaration, dict[str, str]]] = {}
    includes: list[str] = []
    for include in declaration.include:
        module_path = (unit_dir / include).resolve()
        if not module_path.is_file():
            raise ConfigurationError(
                f"Unit at {unit_dir} includes missing module file '{include}'"
            )
        try:
            module = ModuleDeclaration.model_validate(_read_yaml(module_path))
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid module file {module_path}: {exc}") from exc
        includes.append(str(module_path))
        for rid, resource in module.resources.items():
            merged[rid] = (resource, module.default_tags)
    for rid, resource in declaration.resources.items():
        merged[rid] = (resource, {})

    resources: dict[str, ResourceState] = {}
    for rid in sorted(merged):
        resource, module_tags = merged[rid]
        tags = {**defaults.default_tags, **module_tags, **declaration.default_tags, **resource.tags}
        resources[rid] = ResourceState(
            resource_id=rid,
            type=resource.type,
            attributes=_json_canonical(resource.attributes),
            tags=tags,
        )
    return resources, tuple(includes)


def _backend_config(
    unit_name: str,
    root: Path,
    declared: BackendDeclaration | None,
    default: BackendDeclaration,
) -> BackendConfig:
    merged = default.model_copy(
        update=declared.model_dump(exclude_unset=True) if declared is not None else {}
    )
    location = merged.location
    if location is None:
        if merged.kind == "s3":
            raise ConfigurationError(f"Unit '{unit_name}' uses an s3 backend without a bucket")
        location = str(root / DEFAULT_STATE_DIR)
    elif merged.kind == "local" and not Path(location).is_absolute():
        location = str((root / location).resolve())
    key = (merged.key or DEFAULT_KEY_TEMPLATE).replace("{unit}", unit_name)
    return BackendConfig(
        kind=merged.kind,
        location=location,
        key=key,
        region=merged.region,
        account=merged.account,
        shared=merged.shared,
    )
