"""Verification plane: stage adapters and the ordered verification pipeline."""

from buildwave.verification_plane.pipeline import (
    DEFAULT_STAGE_IDS_IN_ORDER,
    STAGE_RETRY_PHASES,
    PipelineResult,
    VerificationPipeline,
    stage_roles,
)
from buildwave.verification_plane.stages import (
    CallableStage,
    CommandStage,
    Stage,
    StaticStage,
    normalize_stage_output,
)

__all__ = [
    "DEFAULT_STAGE_IDS_IN_ORDER",
    "STAGE_RETRY_PHASES",
    "CallableStage",
    "CommandStage",
    "PipelineResult",
    "Stage",
    "StaticStage",
    "VerificationPipeline",
    "normalize_stage_output",
    "stage_roles",
]
