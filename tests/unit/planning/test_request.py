"""Unit tests for work-request ingestion."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from buildwave.domain.errors import CyclicDependency, UnknownRole, ValidationError
from buildwave.domain.roles import RoleId
from buildwave.planning.request import Complexity, load_work_request, parse_work_request

if TYPE_CHECKING:
    from pathlib import Path

_REQUEST_YAML = """\
name: storefront
features:
  - name: catalog-api
    roles: [backend, database]
    role_order: [database, backend]
  - name: catalog-ui
    roles: [frontend, ui-tester]
    depends_on: [catalog-api]
  - name: checkout
    roles: [backend, qa]
    dependencies: [catalog-api]
    priority: 2
"""


def test_load_yaml_request(tmp_path: Path) -> None:
    path = tmp_path / "request.yaml"
    path.write_text(_REQUEST_YAML, encoding="utf-8")

    request = load_work_request(path)

    assert request.name == "storefront"
    assert request.plan.as_lists() == [["catalog-api"], ["catalog-ui", "checkout"]]
    assert request.feature("catalog-ui").roles == (RoleId.FRONTEND, RoleId.UI_TESTER)
    assert request.feature("checkout").roles == (RoleId.BACKEND, RoleId.TESTER)
    assert request.feature("catalog-api").ordered_roles() == (RoleId.DATABASE, RoleId.BACKEND)
    assert request.complexity is Complexity.SIMPLE


def test_json_list_payload_uses_file_stem_as_name(tmp_path: Path) -> None:
    path = tmp_path / "nightly.json"
    path.write_text(json.dumps([{"name": "one", "roles": ["backend"]}]), encoding="utf-8")

    request = load_work_request(path)

    assert request.name == "nightly"
    assert [feature.name for feature in request.features] == ["one"]


def test_digest_ignores_description_but_tracks_structure() -> None:
    base = {"name": "r", "features": [{"name": "a", "roles": ["backend"]}]}
    described = {
        "name": "r",
        "features": [{"name": "a", "roles": ["backend"], "description": "words"}],
    }
    widened = {"name": "r", "features": [{"name": "a", "roles": ["backend", "tester"]}]}

    assert parse_work_request(base).digest == parse_work_request(described).digest
    assert parse_work_request(base).digest != parse_work_request(widened).digest


def test_every_violation_is_reported_at_once() -> None:
    payload = {
        "complexity": "galactic",
        "features": [
            {"name": "a", "roles": ["wizard"]},
            {"name": "b", "roles": [], "dependencies": ["missing"]},
            {"name": "c", "roles": ["backend"], "colour": "red"},
        ],
    }

    with pytest.raises(ValidationError) as error:
        parse_work_request(payload)

    rendered = "\n".join(error.value.violations)
    assert "galactic" in rendered
    assert "wizard" in rendered
    assert "b'.roles must list at least one role" in rendered
    assert "colour" in rendered
    assert any(isinstance(item, UnknownRole) for item in error.value.errors)


def test_single_cycle_violation_is_raised_directly() -> None:
    payload = {
        "features": [
            {"name": "a", "roles": ["backend"], "dependencies": ["b"]},
            {"name": "b", "roles": ["backend"], "dependencies": ["a"]},
        ]
    }

    with pytest.raises(CyclicDependency) as error:
        parse_work_request(payload)

    assert set(error.value.members) == {"a", "b"}


def test_role_order_must_name_assigned_roles() -> None:
    payload = {
        "features": [{"name": "a", "roles": ["backend"], "role_order": ["tester", "backend"]}]
    }

    with pytest.raises(ValidationError, match="role_order names roles not assigned"):
        parse_work_request(payload)


def test_unparseable_file_is_a_validation_error(tmp_path: Path) -> None:
    path = tmp_path / "broken.yaml"
    path.write_text("features: [unclosed", encoding="utf-8")

    with pytest.raises(ValidationError, match="cannot parse"):
        load_work_request(path)


def test_declared_complexity_overrides_inference() -> None:
    payload = {"complexity": "Complex", "features": [{"name": "a", "roles": ["backend"]}]}

    assert parse_work_request(payload).complexity is Complexity.COMPLEX
