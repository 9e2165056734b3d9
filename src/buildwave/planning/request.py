"""
Work-request ingestion.

Purpose
- Load a work request (YAML or JSON) and validate it into ``Feature`` objects.

Functional requirements
- Validation reports ALL violations in one ``ValidationError``, never only the first.
- Unknown roles are rejected here, never at dispatch time.
- Dependencies must resolve and be acyclic (delegated to the graph builder).
"""

from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import yaml

from buildwave.domain.errors import UnknownRole, ValidationError
from buildwave.domain.ids import digest_text
from buildwave.domain.models import Feature, canonical_json
from buildwave.domain.roles import RoleId, parse_role
from buildwave.planning.dependency_graph import (
    DependencyGraph,
    build_dependency_graph,
    collect_graph_violations,
)
from buildwave.planning.waves import WavePlan, schedule_waves

_FEATURE_KEYS = frozenset(
    {"name", "description", "roles", "dependencies", "depends_on", "priority", "role_order"}
)


class Complexity(StrEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


@dataclass(frozen=True, slots=True)
class WorkRequest:
    name: str
    features: tuple[Feature, ...]
    graph: DependencyGraph
    plan: WavePlan
    complexity: Complexity
    digest: str

    def feature(self, name: str) -> Feature:
        for feature in self.features:
            if feature.name == name:
                return feature
        raise KeyError(f"unknown feature: {name}")

    def features_by_name(self) -> dict[str, Feature]:
        return {feature.name: feature for feature in self.features}

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "complexity": self.complexity.value,
            "features": [feature.to_dict() for feature in self.features],
        }


def infer_complexity(feature_count: int, wave_count: int) -> Complexity:
    """Size-based tier used when the request does not declare one."""
    if feature_count <= 3 and wave_count <= 2:
        return Complexity.SIMPLE
    if feature_count <= 8 and wave_count <= 4:
        return Complexity.MODERATE
    return Complexity.COMPLEX


def load_work_request(path: str | Path) -> WorkRequest:
    """Read ``path`` (``.json`` or YAML) and validate it."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise ValidationError(f"cannot read work request {source}: {exc}") from exc
    try:
        if source.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ValidationError(f"cannot parse work request {source}: {exc}") from exc
    if isinstance(payload, list):
        payload = {"features": payload}
    if not isinstance(payload, Mapping):
        raise ValidationError("work request must be a mapping with a 'features' list")
    return parse_work_request(payload, default_name=source.stem)


def parse_work_request(
    payload: Mapping[str, Any], *, default_name: str = "work-request"
) -> WorkRequest:
    violations: list[ValidationError] = []

    raw_name = payload.get("name", default_name)
    name = raw_name.strip() if isinstance(raw_name, str) and raw_name.strip() else default_name

    complexity: Complexity | None = None
    raw_complexity = payload.get("complexity")
    if raw_complexity is not None:
        try:
            complexity = Complexity(str(raw_complexity).strip().lower())
        except ValueError:
            allowed = ", ".join(item.value for item in Complexity)
            violations.append(
                ValidationError(f"complexity {raw_complexity!r} must be one of: {allowed}")
            )

    raw_features = payload.get("features")
    features: list[Feature] = []
    if not isinstance(raw_features, Sequence) or isinstance(raw_features, (str, bytes)):
        violations.append(ValidationError("'features' must be a list"))
    elif not raw_features:
        violations.append(ValidationError("'features' must not be empty"))
    else:
        for index, raw_feature in enumerate(raw_features):
            feature = _parse_feature(raw_feature, index, violations)
            if feature is not None:
                features.append(feature)

    violations.extend(collect_graph_violations(features))
    if violations:
        raise violations[0] if len(violations) == 1 else ValidationError.combine(violations)

    graph = build_dependency_graph(features)
    plan = schedule_waves(graph)
    resolved_complexity = complexity or infer_complexity(len(features), len(plan))
    digest = digest_text(
        canonical_json(
            {
                "name": name,
                "features": [
                    {
                        "name": feature.name,
                        "roles": [role.value for role in feature.roles],
                        "dependencies": list(feature.dependencies),
                    }
                    for feature in features
                ],
            }
        )
    )
    return WorkRequest(
        name=name,
        features=tuple(features),
        graph=graph,
        plan=plan,
        complexity=resolved_complexity,
        digest=digest,
    )


def _parse_feature(
    raw: object, index: int, violations: list[ValidationError]
) -> Feature | None:
    where = f"features[{index}]"
    if not isinstance(raw, Mapping):
        violations.append(ValidationError(f"{where} must be a mapping"))
        return None

    raw_name = raw.get("name")
    if not isinstance(raw_name, str) or not raw_name.strip():
        violations.append(ValidationError(f"{where}.name must be a non-empty string"))
        return None
    name = raw_name.strip()
    where = f"feature {name!r}"

    unknown_keys = sorted(str(key) for key in raw if key not in _FEATURE_KEYS)
    if unknown_keys:
        violations.append(ValidationError(f"{where} has unknown keys: {', '.join(unknown_keys)}"))

    ok = True
    roles = _parse_roles(raw.get("roles"), name, f"{where}.roles", violations, required=True)
    role_order = _parse_roles(
        raw.get("role_order"), name, f"{where}.role_order", violations, required=False
    )
    if roles is None or role_order is None:
        ok = False
    elif stray := [role.value for role in role_order if role not in roles]:
        violations.append(
            ValidationError(f"{where}.role_order names roles not assigned: {', '.join(stray)}")
        )
        ok = False

    raw_deps = raw.get("dependencies", raw.get("depends_on", ()))
    dependencies: list[str] = []
    if raw_deps is None:
        raw_deps = ()
    if not isinstance(raw_deps, Sequence) or isinstance(raw_deps, (str, bytes)):
        violations.append(ValidationError(f"{where}.dependencies must be a list of names"))
        ok = False
    else:
        for dep in raw_deps:
            if not isinstance(dep, str) or not dep.strip():
                violations.append(
                    ValidationError(f"{where}.dependencies entries must be non-empty strings")
                )
                ok = False
                continue
            dependencies.append(dep.strip())

    priority = raw.get("priority", 0)
    if isinstance(priority, bool) or not isinstance(priority, int):
        violations.append(ValidationError(f"{where}.priority must be an integer"))
        ok = False

    description = raw.get("description", "")
    if not isinstance(description, str):
        violations.append(ValidationError(f"{where}.description must be a string"))
        ok = False

    if not ok or roles is None or role_order is None:
        return None
    return Feature(
        name=name,
        description=description.strip(),
        roles=roles,
        dependencies=tuple(dependencies),
        priority=priority,
        role_order=role_order,
    )


def _parse_roles(
    raw: object,
    feature: str,
    where: str,
    violations: list[ValidationError],
    *,
    required: bool,
) -> tuple[RoleId, ...] | None:
    if raw is None:
        if required:
            violations.append(ValidationError(f"{where} must list at least one role"))
            return None
        return ()
    if isinstance(raw, str):
        raw = [raw]
    if not isinstance(raw, Sequence) or isinstance(raw, bytes):
        violations.append(ValidationError(f"{where} must be a list of role names"))
        return None
    if required and not raw:
        violations.append(ValidationError(f"{where} must list at least one role"))
        return None
    resolved: list[RoleId] = []
    failed = False
    for item in raw:
        try:
            resolved.append(parse_role(item))
        except ValueError:
            violations.append(UnknownRole(feature, str(item)))
            failed = True
    if failed:
        return None
    return tuple(dict.fromkeys(resolved))


__all__ = [
    "Complexity",
    "WorkRequest",
    "infer_complexity",
    "load_work_request",
    "parse_work_request",
]
