"""Domain types shared across planes; free of IO side effects."""

from buildwave.domain.errors import (
    BudgetExhausted,
    BuildwaveError,
    CyclicDependency,
    DuplicateFeature,
    EscalationPending,
    StoreUnavailable,
    UnknownDependency,
    UnknownRole,
    ValidationError,
    VerificationFailure,
    WorkerFailure,
)
from buildwave.domain.models import (
    AttemptLog,
    CompletedWork,
    Contradiction,
    Decision,
    DimensionScore,
    EscalationRecord,
    Feature,
    FeatureStatus,
    FixInstruction,
    Pattern,
    QualityScore,
    Resolution,
    ResolutionOption,
    RunOutcome,
    RunStatus,
    StageOutcome,
    VerificationRun,
    Wave,
    WorkerResult,
    WorkerStatus,
    WorkItem,
    WorkScope,
)
from buildwave.domain.roles import Capability, RoleId, parse_role

__all__ = [
    "AttemptLog",
    "BudgetExhausted",
    "BuildwaveError",
    "Capability",
    "CompletedWork",
    "Contradiction",
    "CyclicDependency",
    "Decision",
    "DimensionScore",
    "DuplicateFeature",
    "EscalationPending",
    "EscalationRecord",
    "Feature",
    "FeatureStatus",
    "FixInstruction",
    "Pattern",
    "QualityScore",
    "Resolution",
    "ResolutionOption",
    "RoleId",
    "RunOutcome",
    "RunStatus",
    "StageOutcome",
    "StoreUnavailable",
    "UnknownDependency",
    "UnknownRole",
    "ValidationError",
    "VerificationFailure",
    "VerificationRun",
    "Wave",
    "WorkItem",
    "WorkScope",
    "WorkerFailure",
    "WorkerResult",
    "WorkerStatus",
    "parse_role",
]
