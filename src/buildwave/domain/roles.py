"""
Closed worker-role registry.

Roles are a fixed enumeration with a declared capability set. Work requests
naming anything outside the registry are rejected during validation, so the
dispatcher never sees an unknown role.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from enum import StrEnum
from types import MappingProxyType
from typing import Final


class RoleId(StrEnum):
    ARCHITECT = "architect"
    BACKEND = "backend"
    FRONTEND = "frontend"
    DATABASE = "database"
    TESTER = "tester"
    UI_TESTER = "ui_tester"
    REVIEWER = "reviewer"
    DESIGNER = "designer"
    INTEGRATOR = "integrator"
    BUGFIXER = "bugfixer"


class Capability(StrEnum):
    BUILD = "build"
    SCHEMA = "schema"
    UI = "ui"
    TEST = "test"
    REVIEW = "review"
    VISUAL = "visual"
    INTEGRATE = "integrate"
    FIX = "fix"


ROLE_CAPABILITIES: Final[Mapping[RoleId, frozenset[Capability]]] = MappingProxyType(
    {
        RoleId.ARCHITECT: frozenset({Capability.REVIEW, Capability.INTEGRATE}),
        RoleId.BACKEND: frozenset({Capability.BUILD, Capability.FIX}),
        RoleId.FRONTEND: frozenset({Capability.BUILD, Capability.UI, Capability.FIX}),
        RoleId.DATABASE: frozenset({Capability.SCHEMA, Capability.BUILD}),
        RoleId.TESTER: frozenset({Capability.TEST}),
        RoleId.UI_TESTER: frozenset({Capability.TEST, Capability.UI}),
        RoleId.REVIEWER: frozenset({Capability.REVIEW}),
        RoleId.DESIGNER: frozenset({Capability.VISUAL, Capability.UI}),
        RoleId.INTEGRATOR: frozenset({Capability.INTEGRATE, Capability.FIX}),
        RoleId.BUGFIXER: frozenset({Capability.FIX}),
    }
)

_ALIASES: Final[Mapping[str, RoleId]] = MappingProxyType(
    {
        "qa": RoleId.TESTER,
        "test_engineer": RoleId.TESTER,
        "ui_test": RoleId.UI_TESTER,
        "dba": RoleId.DATABASE,
        "fixer": RoleId.BUGFIXER,
    }
)


def normalize_role_token(value: str) -> str:
    parts = value.strip().lower().replace("-", " ").replace("_", " ").split()
    return "_".join(parts)


def parse_role(value: RoleId | str) -> RoleId:
    """Resolve ``value`` to a registered role or raise ``ValueError``."""
    if isinstance(value, RoleId):
        return value
    if not isinstance(value, str):
        raise ValueError(f"role must be a string, got {type(value).__name__}")
    token = normalize_role_token(value)
    if token in _ALIASES:
        return _ALIASES[token]
    try:
        return RoleId(token)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in RoleId)
        raise ValueError(f"unknown role {value!r}; expected one of: {allowed}") from exc


def capabilities_of(role: RoleId) -> frozenset[Capability]:
    return ROLE_CAPABILITIES[role]


def roles_with(capability: Capability, among: Iterable[RoleId] | None = None) -> tuple[RoleId, ...]:
    """Roles holding ``capability``, restricted to ``among`` when given."""
    pool = tuple(RoleId) if among is None else tuple(dict.fromkeys(among))
    return tuple(role for role in pool if capability in ROLE_CAPABILITIES[role])


__all__ = [
    "Capability",
    "ROLE_CAPABILITIES",
    "RoleId",
    "capabilities_of",
    "normalize_role_token",
    "parse_role",
    "roles_with",
]
