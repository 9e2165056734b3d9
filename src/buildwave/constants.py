"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Git branch names.
DEFAULT_MAIN_BRANCH: Final[str] = "main"
DEFAULT_INTEGRATION_BRANCH: Final[str] = "integration"
DEFAULT_WORK_BRANCH_PREFIX: Final[str] = "work/"
DEFAULT_FIX_BRANCH_PREFIX: Final[str] = "fix/"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_STATE_SCHEMA_VERSION: Final[int] = 1
LEARNING_STORE_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to the config file directory unless overridden).
STATE_DIR: Final[PurePosixPath] = PurePosixPath(".buildwave/state")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".buildwave/logs")
LEARNING_DIR: Final[PurePosixPath] = PurePosixPath(".buildwave/learning")

# Retry phases and their default budgets.
PHASE_FEATURE_BUILD: Final[str] = "feature-build"
PHASE_RUNTIME_VERIFICATION: Final[str] = "runtime-verification"
PHASE_INTERACTIVE_UI_TESTING: Final[str] = "interactive-UI-testing"
PHASE_QUALITY_SCORE_FIX: Final[str] = "quality-score-fix"
PHASE_TARGETED_BUGFIX: Final[str] = "targeted-bugfix"

DEFAULT_PHASE_BUDGETS: Final[dict[str, int]] = {
    PHASE_FEATURE_BUILD: 3,
    PHASE_RUNTIME_VERIFICATION: 5,
    PHASE_INTERACTIVE_UI_TESTING: 5,
    PHASE_QUALITY_SCORE_FIX: 3,
    PHASE_TARGETED_BUGFIX: 3,
}

# Pattern confidence tiers.
CONFIDENCE_SUGGEST_MIN: Final[int] = 50
CONFIDENCE_APPLY_MIN: Final[int] = 80

LOW_CONFIDENCE_NOTE: Final[str] = "low confidence — default used"

__all__ = [
    "CONFIDENCE_APPLY_MIN",
    "CONFIDENCE_SUGGEST_MIN",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_FIX_BRANCH_PREFIX",
    "DEFAULT_INTEGRATION_BRANCH",
    "DEFAULT_MAIN_BRANCH",
    "DEFAULT_PHASE_BUDGETS",
    "DEFAULT_WORK_BRANCH_PREFIX",
    "LEARNING_DIR",
    "LEARNING_STORE_SCHEMA_VERSION",
    "LOG_DIR",
    "LOW_CONFIDENCE_NOTE",
    "PHASE_FEATURE_BUILD",
    "PHASE_INTERACTIVE_UI_TESTING",
    "PHASE_QUALITY_SCORE_FIX",
    "PHASE_RUNTIME_VERIFICATION",
    "PHASE_TARGETED_BUGFIX",
    "RUN_STATE_SCHEMA_VERSION",
    "STATE_DIR",
]
