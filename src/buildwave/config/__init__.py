"""
buildwave config package public API.

Loads ``buildwave.toml`` plus ``BUILDWAVE_SECTION__KEY`` env overrides and fails fast
with structured validation or load errors.
"""

from buildwave.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from buildwave.config.schema import (
    DEFAULT_CONFIG,
    DIMENSION_WEIGHTS,
    PATH_FIELDS,
    STAGE_NAMES,
    BuildwaveConfig,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    assert_valid_config,
    default_config,
    merge_config,
    phase_budgets,
    validate_config,
)

__all__ = [
    "BuildwaveConfig",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "DIMENSION_WEIGHTS",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "STAGE_NAMES",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "normalize_paths",
    "phase_budgets",
    "validate_config",
]
