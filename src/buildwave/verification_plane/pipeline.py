"""
Verification pipeline over the integration line.

Normative behavior
- Stage order is fixed: runtime, data_integrity, interactive_ui, visual, quality_score.
- Stages run sequentially against one integration reference.
- A blocking failure short-circuits: remaining stages are recorded as ``skipped`` and the
  result is an instant fail.
- Non-blocking failures accumulate and the pipeline continues so the quality scorer sees
  every prior result.
- Per-stage timeouts and cancellation tokens are enforced; a timeout or a stage crash is
  a non-blocking failure with diagnostics.
- After a targeted bugfix only the affected stage re-runs (``rerun``), under the retry
  phase returned by ``retry_phase``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Any, Final

import structlog

from buildwave.config.schema import STAGE_NAMES
from buildwave.constants import (
    PHASE_INTERACTIVE_UI_TESTING,
    PHASE_QUALITY_SCORE_FIX,
    PHASE_RUNTIME_VERIFICATION,
    PHASE_TARGETED_BUGFIX,
)
from buildwave.domain.models import StageOutcome, VerificationRun
from buildwave.domain.roles import Capability, RoleId, roles_with
from buildwave.utils.concurrency import CancellationToken, run_with_timeout
from buildwave.verification_plane.stages import Stage

RUNTIME_STAGE_ID: Final[str] = "runtime"
DATA_INTEGRITY_STAGE_ID: Final[str] = "data_integrity"
INTERACTIVE_UI_STAGE_ID: Final[str] = "interactive_ui"
VISUAL_STAGE_ID: Final[str] = "visual"
QUALITY_SCORE_STAGE_ID: Final[str] = "quality_score"

DEFAULT_STAGE_IDS_IN_ORDER: Final[tuple[str, ...]] = tuple(STAGE_NAMES)

STAGE_RETRY_PHASES: Final[Mapping[str, str]] = {
    RUNTIME_STAGE_ID: PHASE_RUNTIME_VERIFICATION,
    DATA_INTEGRITY_STAGE_ID: PHASE_TARGETED_BUGFIX,
    INTERACTIVE_UI_STAGE_ID: PHASE_INTERACTIVE_UI_TESTING,
    VISUAL_STAGE_ID: PHASE_TARGETED_BUGFIX,
    QUALITY_SCORE_STAGE_ID: PHASE_QUALITY_SCORE_FIX,
}

STAGE_CAPABILITIES: Final[Mapping[str, tuple[Capability, ...]]] = {
    RUNTIME_STAGE_ID: (Capability.BUILD, Capability.FIX),
    DATA_INTEGRITY_STAGE_ID: (Capability.SCHEMA, Capability.BUILD),
    INTERACTIVE_UI_STAGE_ID: (Capability.UI,),
    VISUAL_STAGE_ID: (Capability.VISUAL, Capability.UI),
    QUALITY_SCORE_STAGE_ID: (Capability.REVIEW, Capability.FIX),
}


def stage_roles(stage: str, available: Iterable[RoleId] = ()) -> tuple[RoleId, ...]:
    """Roles responsible for fixing ``stage``, preferring roles already in the request."""
    pool = tuple(dict.fromkeys(available))
    capabilities = STAGE_CAPABILITIES.get(stage, (Capability.FIX,))
    if pool:
        for capability in capabilities:
            holders = roles_with(capability, among=pool)
            if holders:
                return holders[:1]
    for capability in capabilities:
        holders = roles_with(capability)
        if holders:
            return holders[:1]
    return (RoleId.BUGFIXER,)


@dataclass(frozen=True, slots=True)
class PipelineResult:
    integration_ref: str
    runs: tuple[VerificationRun, ...]
    blocked_at: str | None = None

    @property
    def passed(self) -> bool:
        return self.blocked_at is None and all(
            run.result is not StageOutcome.FAIL for run in self.runs
        )

    @property
    def instant_fail(self) -> bool:
        return self.blocked_at is not None

    @property
    def failures(self) -> tuple[VerificationRun, ...]:
        return tuple(run for run in self.runs if run.failed)

    @property
    def skipped(self) -> tuple[str, ...]:
        return tuple(run.stage for run in self.runs if run.result is StageOutcome.SKIPPED)

    def run_for(self, stage: str) -> VerificationRun | None:
        return next((run for run in self.runs if run.stage == stage), None)

    def with_run(self, replacement: VerificationRun) -> PipelineResult:
        """Copy with one stage result replaced by a re-run."""
        runs = tuple(
            replacement if run.stage == replacement.stage else run for run in self.runs
        )
        blocked_at = self.blocked_at
        if blocked_at == replacement.stage and not replacement.blocking:
            blocked_at = None
        elif replacement.blocking:
            blocked_at = replacement.stage
        return PipelineResult(
            integration_ref=replacement.input_ref, runs=runs, blocked_at=blocked_at
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "integration_ref": self.integration_ref,
            "blocked_at": self.blocked_at,
            "runs": [run.to_dict() for run in self.runs],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> PipelineResult:
        return cls(
            integration_ref=str(payload["integration_ref"]),
            runs=tuple(VerificationRun.from_dict(item) for item in payload.get("runs", ())),
            blocked_at=payload.get("blocked_at"),
        )


class VerificationPipeline:
    def __init__(
        self,
        stages: Mapping[str, Stage],
        *,
        timeout_seconds: float = 900.0,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        unknown = sorted(set(stages) - set(DEFAULT_STAGE_IDS_IN_ORDER))
        if unknown:
            raise ValueError(f"unknown verification stages: {', '.join(unknown)}")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._stages = dict(stages)
        self._timeout_seconds = timeout_seconds
        self._cancel_token = cancel_token or CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def stage_ids(self) -> tuple[str, ...]:
        return tuple(stage for stage in DEFAULT_STAGE_IDS_IN_ORDER if stage in self._stages)

    def stage(self, stage_id: str) -> Stage:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"verification stage {stage_id!r} is not configured") from None

    @staticmethod
    def retry_phase(stage_id: str) -> str:
        return STAGE_RETRY_PHASES[stage_id]

    async def run(self, integration_ref: str) -> PipelineResult:
        runs: list[VerificationRun] = []
        blocked_at: str | None = None
        for stage_id in DEFAULT_STAGE_IDS_IN_ORDER:
            if blocked_at is not None:
                runs.append(self._skipped(stage_id, integration_ref, f"blocked by {blocked_at}"))
                continue
            if stage_id not in self._stages:
                runs.append(self._skipped(stage_id, integration_ref, "stage not configured"))
                continue
            outcome = await self._execute(stage_id, integration_ref, attempt=1)
            runs.append(outcome)
            if outcome.blocking:
                blocked_at = stage_id
                self._logger.warning(
                    "verification_blocked",
                    stage=stage_id,
                    integration_ref=integration_ref,
                    diagnostics=list(outcome.diagnostics),
                )
        result = PipelineResult(
            integration_ref=integration_ref, runs=tuple(runs), blocked_at=blocked_at
        )
        self._logger.info(
            "verification_completed",
            integration_ref=integration_ref,
            passed=result.passed,
            failed_stages=[run.stage for run in result.failures],
            skipped_stages=list(result.skipped),
        )
        return result

    async def rerun(self, stage_id: str, integration_ref: str, *, attempt: int) -> VerificationRun:
        """Re-run exactly one stage; the rest of the pipeline is untouched."""
        self.stage(stage_id)
        return await self._execute(stage_id, integration_ref, attempt=attempt)

    async def run_remaining(self, result: PipelineResult) -> PipelineResult:
        """Run the stages a cleared block had skipped, in order, on the same reference."""
        current = result
        for stage_id in DEFAULT_STAGE_IDS_IN_ORDER:
            if current.blocked_at is not None:
                break
            previous = current.run_for(stage_id)
            if previous is None or previous.result is not StageOutcome.SKIPPED:
                continue
            if stage_id not in self._stages:
                continue
            outcome = await self._execute(stage_id, current.integration_ref, attempt=1)
            current = current.with_run(outcome)
        return current

    async def _execute(
        self, stage_id: str, integration_ref: str, *, attempt: int
    ) -> VerificationRun:
        self._cancel_token.raise_if_cancelled()
        stage = self._stages[stage_id]
        try:
            outcome = await run_with_timeout(
                stage.run(integration_ref), self._timeout_seconds, self._cancel_token
            )
        except TimeoutError:
            outcome = VerificationRun(
                stage=stage_id,
                input_ref=integration_ref,
                result=StageOutcome.FAIL,
                diagnostics=(f"stage timed out after {self._timeout_seconds:.3f}s",),
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            outcome = VerificationRun(
                stage=stage_id,
                input_ref=integration_ref,
                result=StageOutcome.FAIL,
                diagnostics=(f"{type(exc).__name__}: {exc}",),
            )
        if outcome.attempt != attempt:
            outcome = replace(outcome, attempt=attempt)
        self._logger.info(
            "verification_stage_finished",
            stage=stage_id,
            result=outcome.result.value,
            blocking=outcome.blocking,
            attempt=attempt,
        )
        return outcome

    @staticmethod
    def _skipped(stage_id: str, integration_ref: str, reason: str) -> VerificationRun:
        return VerificationRun(
            stage=stage_id,
            input_ref=integration_ref,
            result=StageOutcome.SKIPPED,
            diagnostics=(reason,),
        )


__all__ = [
    "DEFAULT_STAGE_IDS_IN_ORDER",
    "PipelineResult",
    "STAGE_CAPABILITIES",
    "STAGE_RETRY_PHASES",
    "VerificationPipeline",
    "stage_roles",
]
