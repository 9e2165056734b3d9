"""Unit tests for config loading precedence and validation."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from buildwave.config.loader import ConfigLoadError, dump_effective_config, load_config
from buildwave.config.schema import ConfigValidationError, default_config, phase_budgets
from buildwave.constants import PHASE_FEATURE_BUILD, PHASE_INTERACTIVE_UI_TESTING

if TYPE_CHECKING:
    from pathlib import Path


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "buildwave.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults_apply_without_a_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)

    config = load_config(environ={})

    assert config["git"]["backend"] == "git"
    assert config["verification"]["smoke_stage"] == "runtime"
    assert phase_budgets(config)[PHASE_FEATURE_BUILD] == 3
    assert config["paths"]["state_dir"].startswith(tmp_path.resolve().as_posix())


def test_cli_beats_env_beats_file(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[observability]
log_level = "DEBUG"

[workers]
max_concurrency = 2
timeout_seconds = 60

[budgets]
interactive_ui_testing = 4
""",
    )
    environ = {
        "BUILDWAVE_OBSERVABILITY__LOG_LEVEL": "WARNING",
        "BUILDWAVE_WORKERS__MAX_CONCURRENCY": "6",
        "BUILDWAVE_WORKERS__COMMANDS__BACKEND": "agent --role backend",
    }

    config = load_config(
        path, environ=environ, cli_overrides={"observability.log_level": "ERROR"}
    )

    assert config["observability"]["log_level"] == "ERROR"
    assert config["workers"]["max_concurrency"] == 6
    assert config["workers"]["timeout_seconds"] == 60.0
    assert config["workers"]["commands"] == {"backend": "agent --role backend"}
    assert phase_budgets(config)[PHASE_INTERACTIVE_UI_TESTING] == 4


def test_relative_paths_resolve_against_config_location(tmp_path: Path) -> None:
    nested = tmp_path / "project"
    nested.mkdir()
    path = nested / "buildwave.toml"
    path.write_text('[paths]\nstate_dir = "run-state"\n', encoding="utf-8")

    config = load_config(path, environ={})

    assert config["paths"]["state_dir"] == (nested.resolve() / "run-state").as_posix()


def test_missing_explicit_file_is_a_load_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="not found"):
        load_config(tmp_path / "absent.toml", environ={})


def test_invalid_toml_is_a_load_error(tmp_path: Path) -> None:
    path = _write(tmp_path, "[git\nbackend = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(path, environ={})


def test_bad_env_value_names_the_variable(tmp_path: Path) -> None:
    path = _write(tmp_path, "")

    with pytest.raises(ConfigLoadError, match="BUILDWAVE_WORKERS__MAX_CONCURRENCY"):
        load_config(path, environ={"BUILDWAVE_WORKERS__MAX_CONCURRENCY": "many"})


def test_validation_reports_every_issue(tmp_path: Path) -> None:
    path = _write(
        tmp_path,
        """
[git]
backend = "svn"

[verification]
smoke_stage = "vibes"

[budgets]
feature_build = 0

[learning]
backend = "cloud"
""",
    )

    with pytest.raises(ConfigValidationError) as error:
        load_config(path, environ={})

    paths = {issue.path for issue in error.value.issues}
    assert {
        "git.backend",
        "verification.smoke_stage",
        "budgets.feature_build",
        "learning.backend",
    } <= paths


def test_unknown_keys_are_rejected(tmp_path: Path) -> None:
    path = _write(tmp_path, "[workers]\nthreads = 4\n")

    with pytest.raises(ConfigValidationError, match="workers.threads"):
        load_config(path, environ={})


def test_effective_config_dump_is_deterministic(tmp_path: Path) -> None:
    path = _write(tmp_path, "")
    config = load_config(path, environ={})

    dumped = dump_effective_config(config)

    assert json.loads(dumped) == config
    assert dumped == dump_effective_config(json.loads(dumped))


def test_default_config_is_a_copy() -> None:
    first = default_config()
    first["workers"]["commands"]["backend"] = "x"

    assert default_config()["workers"]["commands"] == {}
