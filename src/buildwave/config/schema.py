"""
buildwave: configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Report every issue found, never only the first.
- Keep merge helpers deterministic so CLI > env > file > defaults layering is reproducible.
"""

from __future__ import annotations

import copy
import math
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from buildwave.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_FIX_BRANCH_PREFIX,
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_MAIN_BRANCH,
    DEFAULT_PHASE_BUDGETS,
    DEFAULT_WORK_BRANCH_PREFIX,
    LEARNING_DIR,
    LOG_DIR,
    STATE_DIR,
)
from buildwave.domain.roles import RoleId

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

STAGE_NAMES: Final[tuple[str, ...]] = (
    "runtime",
    "data_integrity",
    "interactive_ui",
    "visual",
    "quality_score",
)

DIMENSION_WEIGHTS: Final[Mapping[str, float]] = {
    "functionality": 0.20,
    "test_coverage": 0.15,
    "ui_coverage": 0.10,
    "visual_correctness": 0.10,
    "data_flow_integrity": 0.10,
    "naming_style": 0.05,
    "integration_correctness": 0.10,
    "code_quality": 0.10,
    "schema_safety": 0.05,
    "accessibility": 0.05,
}

# Config keys are TOML-friendly; phases keep their canonical names elsewhere.
BUDGET_KEYS: Final[Mapping[str, str]] = {
    phase.lower().replace("-", "_"): phase for phase in DEFAULT_PHASE_BUDGETS
}

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "repo_root"),
    ("paths", "state_dir"),
    ("learning", "local_path"),
    ("learning", "shared_path"),
    ("observability", "log_dir"),
)

LearningBackend = Literal["local", "shared", "none"]


class MetaConfig(TypedDict):
    schema_version: int


class GitConfig(TypedDict):
    backend: Literal["git", "memory"]
    main_branch: str
    integration_branch: str
    work_branch_prefix: str
    fix_branch_prefix: str
    merge_strategy: Literal["no-ff", "ff"]


class WorkersConfig(TypedDict):
    timeout_seconds: float
    max_concurrency: int
    commands: dict[str, str]


class VerificationConfig(TypedDict):
    timeout_seconds: float
    smoke_stage: str
    smoke_timeout_seconds: float
    commands: dict[str, str]


class CoverageMinima(TypedDict):
    simple: float
    moderate: float
    complex: float


class QualityConfig(TypedDict):
    weights: dict[str, float]
    default_p50: float
    default_p75: float
    final_threshold: float
    coverage_minima: CoverageMinima


class LearningConfig(TypedDict):
    backend: LearningBackend
    local_path: str
    shared_path: str


class PathsConfig(TypedDict):
    repo_root: str
    state_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_console: bool
    redact_secrets: bool


class BuildwaveConfig(TypedDict):
    meta: MetaConfig
    budgets: dict[str, int]
    git: GitConfig
    workers: WorkersConfig
    verification: VerificationConfig
    quality: QualityConfig
    learning: LearningConfig
    paths: PathsConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[BuildwaveConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "budgets": {key: DEFAULT_PHASE_BUDGETS[phase] for key, phase in BUDGET_KEYS.items()},
    "git": {
        "backend": "git",
        "main_branch": DEFAULT_MAIN_BRANCH,
        "integration_branch": DEFAULT_INTEGRATION_BRANCH,
        "work_branch_prefix": DEFAULT_WORK_BRANCH_PREFIX,
        "fix_branch_prefix": DEFAULT_FIX_BRANCH_PREFIX,
        "merge_strategy": "no-ff",
    },
    "workers": {
        "timeout_seconds": 1800.0,
        "max_concurrency": 0,
        "commands": {},
    },
    "verification": {
        "timeout_seconds": 900.0,
        "smoke_stage": "runtime",
        "smoke_timeout_seconds": 120.0,
        "commands": {},
    },
    "quality": {
        "weights": dict(DIMENSION_WEIGHTS),
        "default_p50": 0.85,
        "default_p75": 0.90,
        "final_threshold": 0.98,
        "coverage_minima": {"simple": 0.60, "moderate": 0.70, "complex": 0.80},
    },
    "learning": {
        "backend": "local",
        "local_path": f"{LEARNING_DIR}/store.json",
        "shared_path": f"{LEARNING_DIR}/shared.sqlite3",
    },
    "paths": {
        "repo_root": ".",
        "state_dir": str(STATE_DIR),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": str(LOG_DIR),
        "log_to_console": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return not self.issues and self.config is not None


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> dict[str, Any]:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(dict(DEFAULT_CONFIG))


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a complete config and return every issue with its field path."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTION_VALIDATORS), "", issues)
    out: dict[str, Any] = {}
    for key, validator in _SECTION_VALIDATORS.items():
        if key not in root:
            issues.add(key, "missing required field")
            continue
        section = _as_object(root[key], key, issues)
        if section is not None:
            out[key] = validator(section, key, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def phase_budgets(config: Mapping[str, Any]) -> dict[str, int]:
    """Configured budgets keyed by canonical phase name."""

    budgets = config.get("budgets", {})
    return {
        phase: int(budgets.get(key, DEFAULT_PHASE_BUDGETS[phase]))
        for key, phase in BUDGET_KEYS.items()
    }


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    version = _as_int(
        payload.get("schema_version"), _join(path, "schema_version"), issues, minimum=1
    )
    if version is not None and version != ConfigSchemaVersion:
        issues.add(
            _join(path, "schema_version"),
            f"schema version {version} is not supported (expected {ConfigSchemaVersion})",
        )
    return {"schema_version": version}


def _validate_budgets(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(BUDGET_KEYS), path, issues)
    out: dict[str, Any] = {}
    for key in BUDGET_KEYS:
        if key not in payload:
            issues.add(_join(path, key), "missing required field")
            continue
        parsed = _as_int(payload[key], _join(path, key), issues, minimum=1)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_git(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["git"]), path, issues)
    out: dict[str, Any] = {}
    out["backend"] = _as_enum(
        payload.get("backend"), _join(path, "backend"), issues, allowed_values=("git", "memory")
    )
    out["merge_strategy"] = _as_enum(
        payload.get("merge_strategy"),
        _join(path, "merge_strategy"),
        issues,
        allowed_values=("no-ff", "ff"),
    )
    for key in ("main_branch", "integration_branch", "work_branch_prefix", "fix_branch_prefix"):
        value = _as_str(payload.get(key), _join(path, key), issues)
        if value is not None and (" " in value or ".." in value):
            issues.add(_join(path, key), "must be a valid git ref fragment")
            value = None
        out[key] = value
    for prefix_key in ("work_branch_prefix", "fix_branch_prefix"):
        if out.get(prefix_key) == out.get("integration_branch"):
            issues.add(_join(path, prefix_key), "must differ from integration_branch")
    if out.get("work_branch_prefix") is not None and out.get("work_branch_prefix") == out.get(
        "fix_branch_prefix"
    ):
        issues.add(_join(path, "fix_branch_prefix"), "must differ from work_branch_prefix")
    return out


def _validate_workers(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["workers"]), path, issues)
    out: dict[str, Any] = {
        "timeout_seconds": _as_positive_float(
            payload.get("timeout_seconds"), _join(path, "timeout_seconds"), issues
        ),
        "max_concurrency": _as_int(
            payload.get("max_concurrency"), _join(path, "max_concurrency"), issues, minimum=0
        ),
    }
    allowed_roles = tuple(role.value for role in RoleId)
    out["commands"] = _validate_command_table(
        payload.get("commands", {}), _join(path, "commands"), issues, allowed=allowed_roles
    )
    return out


def _validate_verification(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["verification"]), path, issues)
    return {
        "timeout_seconds": _as_positive_float(
            payload.get("timeout_seconds"), _join(path, "timeout_seconds"), issues
        ),
        "smoke_stage": _as_enum(
            payload.get("smoke_stage"),
            _join(path, "smoke_stage"),
            issues,
            allowed_values=STAGE_NAMES,
        ),
        "smoke_timeout_seconds": _as_positive_float(
            payload.get("smoke_timeout_seconds"), _join(path, "smoke_timeout_seconds"), issues
        ),
        "commands": _validate_command_table(
            payload.get("commands", {}), _join(path, "commands"), issues, allowed=STAGE_NAMES
        ),
    }


def _validate_quality(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["quality"]), path, issues)
    out: dict[str, Any] = {}

    weights_path = _join(path, "weights")
    weights = _as_object(payload.get("weights", {}), weights_path, issues) or {}
    _reject_unknown_keys(weights, set(DIMENSION_WEIGHTS), weights_path, issues)
    parsed_weights: dict[str, float] = {}
    for name in DIMENSION_WEIGHTS:
        if name not in weights:
            issues.add(_join(weights_path, name), "missing required field")
            continue
        value = _as_float(weights[name], _join(weights_path, name), issues, minimum=0.0)
        if value is not None:
            parsed_weights[name] = value
    if parsed_weights and sum(parsed_weights.values()) <= 0:
        issues.add(weights_path, "weights must not all be zero")
    out["weights"] = parsed_weights

    for key in ("default_p50", "default_p75", "final_threshold"):
        out[key] = _as_unit(payload.get(key), _join(path, key), issues)
    if (
        out["default_p50"] is not None
        and out["default_p75"] is not None
        and out["default_p75"] < out["default_p50"]
    ):
        issues.add(_join(path, "default_p75"), "must be >= default_p50")

    minima_path = _join(path, "coverage_minima")
    minima = _as_object(payload.get("coverage_minima", {}), minima_path, issues) or {}
    _reject_unknown_keys(minima, {"simple", "moderate", "complex"}, minima_path, issues)
    out["coverage_minima"] = {
        key: _as_unit(minima.get(key), _join(minima_path, key), issues)
        for key in ("simple", "moderate", "complex")
    }
    return out


def _validate_learning(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["learning"]), path, issues)
    return {
        "backend": _as_enum(
            payload.get("backend"),
            _join(path, "backend"),
            issues,
            allowed_values=("local", "shared", "none"),
        ),
        "local_path": _as_path_text(payload.get("local_path"), _join(path, "local_path"), issues),
        "shared_path": _as_path_text(
            payload.get("shared_path"), _join(path, "shared_path"), issues
        ),
    }


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["paths"]), path, issues)
    return {
        key: _as_path_text(payload.get(key), _join(path, key), issues)
        for key in DEFAULT_CONFIG["paths"]
    }


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(DEFAULT_CONFIG["observability"]), path, issues)
    level = payload.get("log_level")
    return {
        "log_level": _as_enum(
            level.upper() if isinstance(level, str) else level,
            _join(path, "log_level"),
            issues,
            allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"),
        ),
        "log_dir": _as_path_text(payload.get("log_dir"), _join(path, "log_dir"), issues),
        "log_to_console": _as_bool(
            payload.get("log_to_console"), _join(path, "log_to_console"), issues
        ),
        "redact_secrets": _as_bool(
            payload.get("redact_secrets"), _join(path, "redact_secrets"), issues
        ),
    }


_Validator = Callable[[Mapping[str, object], str, _IssueCollector], dict[str, Any]]

_SECTION_VALIDATORS: Final[dict[str, _Validator]] = {
    "meta": _validate_meta,
    "budgets": _validate_budgets,
    "git": _validate_git,
    "workers": _validate_workers,
    "verification": _validate_verification,
    "quality": _validate_quality,
    "learning": _validate_learning,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _validate_command_table(
    value: object, path: str, issues: _IssueCollector, *, allowed: Sequence[str]
) -> dict[str, str]:
    table = _as_object(value, path, issues)
    if table is None:
        return {}
    _reject_unknown_keys(table, set(allowed), path, issues)
    out: dict[str, str] = {}
    for key in sorted(table):
        if key not in allowed:
            continue
        command = _as_str(table[key], _join(path, key), issues)
        if command is not None:
            out[key] = command
    return out


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_positive_float(value: object, path: str, issues: _IssueCollector) -> float | None:
    parsed = _as_float(value, path, issues, minimum=0.0)
    if parsed is not None and parsed <= 0:
        issues.add(path, "must be > 0")
        return None
    return parsed


def _as_unit(value: object, path: str, issues: _IssueCollector) -> float | None:
    return _as_float(value, path, issues, minimum=0.0, maximum=1.0)


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


__all__ = [
    "BUDGET_KEYS",
    "DEFAULT_CONFIG",
    "DIMENSION_WEIGHTS",
    "PATH_FIELDS",
    "STAGE_NAMES",
    "BuildwaveConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "phase_budgets",
    "validate_config",
]
