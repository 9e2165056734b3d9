"""Unit tests for deterministic identifiers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from buildwave.domain.ids import (
    branch_name,
    generate_run_id,
    normalize_description,
    pattern_id,
    slugify,
    validate_run_id,
)
from buildwave.domain.models import WorkScope
from buildwave.domain.roles import RoleId


def test_run_id_format_is_stable() -> None:
    moment = datetime(2026, 3, 4, 5, 6, 7, tzinfo=UTC)

    run_id = generate_run_id(moment, token="abc123")

    assert run_id == "run-20260304T050607Z-abc123"
    assert validate_run_id(run_id) == run_id
    with pytest.raises(ValueError):
        validate_run_id("run-nope")


def test_branch_names_separate_attempts_and_scopes() -> None:
    first = branch_name("Login Form", RoleId.FRONTEND, 1)
    second = branch_name("Login Form", RoleId.FRONTEND, 2)
    fix = branch_name("Login Form", RoleId.BUGFIXER, 1, scope=WorkScope.TARGETED_BUGFIX)

    assert first == "work/login-form/frontend/a1"
    assert second.endswith("/a2")
    assert fix.startswith("fix/")
    assert len({first, second, fix}) == 3
    with pytest.raises(ValueError):
        branch_name("x", RoleId.BACKEND, 0)


def test_slugify_never_returns_empty() -> None:
    assert slugify("!!!").startswith("x")
    assert len(slugify("a" * 200)) <= 48


def test_pattern_ids_merge_equivalent_descriptions() -> None:
    assert normalize_description("  Missing  NULL check!") == "missing null check"
    assert pattern_id(RoleId.BACKEND, "Missing null check") == pattern_id(
        RoleId.BACKEND, "missing   null check."
    )
    assert pattern_id(RoleId.BACKEND, "x") != pattern_id(RoleId.FRONTEND, "x")
