"""
Weighted quality scoring, threshold policy and fix-set planning.

Purpose
- Turn verification results into a ``QualityScore`` with a ship/iterate decision.

Functional requirements
- Dimension values come from stage ``metrics`` named after the dimension; a stage's
  pass/fail result is the fallback for the dimensions that stage owns.
- Instant-fail gates (test coverage below the complexity minimum, any blocking
  finding) force ``overall`` to exactly 0.0 with a specific reason.
- Threshold: iteration 0 uses the p50 benchmark, iteration 1 the p75 benchmark,
  later iterations the fixed final threshold. Missing benchmarks fall back to configured
  defaults and mark the score ``low_confidence``.
- ``iterate`` carries a minimal fix-set: only failing dimensions, each mapped to the
  roles responsible for it.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Final

from buildwave.config.schema import DIMENSION_WEIGHTS
from buildwave.constants import LOW_CONFIDENCE_NOTE
from buildwave.domain.models import (
    Decision,
    DimensionScore,
    FixInstruction,
    QualityScore,
    StageOutcome,
    VerificationRun,
)
from buildwave.domain.roles import Capability, RoleId, roles_with
from buildwave.knowledge_plane.benchmarks import Aggregates
from buildwave.planning.request import Complexity

TEST_COVERAGE: Final[str] = "test_coverage"
VISUAL_STAGE: Final[str] = "visual"

DIMENSION_STAGE: Final[Mapping[str, str]] = {
    "functionality": "runtime",
    "test_coverage": "quality_score",
    "ui_coverage": "interactive_ui",
    "visual_correctness": "visual",
    "data_flow_integrity": "data_integrity",
    "naming_style": "quality_score",
    "integration_correctness": "quality_score",
    "code_quality": "quality_score",
    "schema_safety": "data_integrity",
    "accessibility": "interactive_ui",
}

# Tried in order; the first capability held by any available role decides ownership.
DIMENSION_CAPABILITIES: Final[Mapping[str, tuple[Capability, ...]]] = {
    "functionality": (Capability.BUILD,),
    "test_coverage": (Capability.TEST,),
    "ui_coverage": (Capability.UI, Capability.TEST),
    "visual_correctness": (Capability.VISUAL, Capability.UI),
    "data_flow_integrity": (Capability.SCHEMA, Capability.BUILD),
    "naming_style": (Capability.REVIEW, Capability.BUILD),
    "integration_correctness": (Capability.INTEGRATE, Capability.BUILD),
    "code_quality": (Capability.REVIEW, Capability.FIX),
    "schema_safety": (Capability.SCHEMA,),
    "accessibility": (Capability.UI, Capability.VISUAL),
}

_FIX_HINTS: Final[Mapping[str, str]] = {
    "functionality": "fix the failing runtime behaviour",
    "test_coverage": "add tests for uncovered code paths",
    "ui_coverage": "exercise the untested interactive flows",
    "visual_correctness": "correct the reported visual regressions",
    "data_flow_integrity": "repair the broken data flows",
    "naming_style": "align names with the project conventions",
    "integration_correctness": "fix the cross-feature integration defects",
    "code_quality": "resolve the reported code quality findings",
    "schema_safety": "make the schema changes safe and reversible",
    "accessibility": "resolve the reported accessibility violations",
}


@dataclass(frozen=True, slots=True)
class QualityPolicy:
    """Weights and thresholds, normally built from the ``[quality]`` config section."""

    weights: Mapping[str, float] = field(default_factory=lambda: dict(DIMENSION_WEIGHTS))
    default_p50: float = 0.85
    default_p75: float = 0.90
    final_threshold: float = 0.98
    coverage_minima: Mapping[str, float] = field(
        default_factory=lambda: {"simple": 0.60, "moderate": 0.70, "complex": 0.80}
    )

    def __post_init__(self) -> None:
        unknown = sorted(set(self.weights) - set(DIMENSION_WEIGHTS))
        if unknown:
            raise ValueError(f"unknown quality dimensions: {', '.join(unknown)}")
        if any(weight < 0 for weight in self.weights.values()):
            raise ValueError("quality weights must be >= 0")
        if sum(self.weights.values()) <= 0:
            raise ValueError("quality weights must not all be zero")

    @classmethod
    def from_config(cls, quality: Mapping[str, object]) -> QualityPolicy:
        return cls(
            weights=dict(quality.get("weights") or DIMENSION_WEIGHTS),  # type: ignore[arg-type]
            default_p50=float(quality.get("default_p50", 0.85)),  # type: ignore[arg-type]
            default_p75=float(quality.get("default_p75", 0.90)),  # type: ignore[arg-type]
            final_threshold=float(quality.get("final_threshold", 0.98)),  # type: ignore[arg-type]
            coverage_minima=dict(quality.get("coverage_minima") or {}),  # type: ignore[arg-type]
        )

    def normalized_weights(self) -> dict[str, float]:
        total = sum(self.weights.get(name, 0.0) for name in DIMENSION_WEIGHTS)
        return {name: self.weights.get(name, 0.0) / total for name in DIMENSION_WEIGHTS}

    def coverage_minimum(self, complexity: Complexity) -> float:
        defaults = {"simple": 0.60, "moderate": 0.70, "complex": 0.80}
        return float(self.coverage_minima.get(complexity.value, defaults[complexity.value]))

    def threshold(self, iteration: int, benchmarks: Aggregates | None) -> tuple[float, bool]:
        """Threshold for ``iteration`` and whether it is a low-confidence default."""
        if iteration < 0:
            raise ValueError("iteration must be >= 0")
        if iteration >= 2:
            return self.final_threshold, False
        has_history = benchmarks is not None and benchmarks.has_benchmarks
        if iteration == 0:
            if has_history and benchmarks is not None and benchmarks.p50 is not None:
                return benchmarks.p50, False
            return self.default_p50, True
        if has_history and benchmarks is not None and benchmarks.p75 is not None:
            return benchmarks.p75, False
        return self.default_p75, True


def responsible_roles(dimension: str, available: Iterable[RoleId] = ()) -> tuple[RoleId, ...]:
    """Roles that own ``dimension``, preferring roles the work request actually uses."""
    pool = tuple(dict.fromkeys(available))
    for capability in DIMENSION_CAPABILITIES.get(dimension, ()):
        holders = roles_with(capability, among=pool) if pool else ()
        if holders:
            return holders
    for capability in DIMENSION_CAPABILITIES.get(dimension, ()):
        holders = roles_with(capability)
        if holders:
            return holders[:1]
    return (RoleId.BUGFIXER,)


def dimension_values(runs: Sequence[VerificationRun]) -> dict[str, float | None]:
    """Per-dimension value in [0, 1]; ``None`` when no stage produced evidence."""
    latest: dict[str, VerificationRun] = {}
    metrics: dict[str, float] = {}
    for run in runs:
        latest[run.stage] = run
        for name, value in run.metrics.items():
            if name in DIMENSION_WEIGHTS:
                metrics[name] = min(max(value, 0.0), 1.0)

    values: dict[str, float | None] = {}
    for name in DIMENSION_WEIGHTS:
        if name in metrics:
            values[name] = metrics[name]
            continue
        stage_run = latest.get(DIMENSION_STAGE[name])
        if stage_run is None or stage_run.result is StageOutcome.SKIPPED:
            values[name] = None
        else:
            values[name] = 1.0 if stage_run.passed else 0.0
    return values


class QualityScorer:
    def __init__(self, policy: QualityPolicy | None = None) -> None:
        self._policy = policy or QualityPolicy()

    @property
    def policy(self) -> QualityPolicy:
        return self._policy

    def score(
        self,
        runs: Sequence[VerificationRun],
        *,
        iteration: int,
        complexity: Complexity,
        benchmarks: Aggregates | None = None,
        available_roles: Iterable[RoleId] = (),
    ) -> QualityScore:
        roles = tuple(available_roles)
        weights = self._policy.normalized_weights()
        threshold, low_confidence = self._policy.threshold(iteration, benchmarks)
        values = dimension_values(runs)

        instant_fail: dict[str, str] = {}
        coverage = values.get(TEST_COVERAGE)
        minimum = self._policy.coverage_minimum(complexity)
        if coverage is not None and coverage < minimum:
            instant_fail[TEST_COVERAGE] = (
                f"test_coverage {coverage:.2f} is below the {complexity.value} minimum "
                f"{minimum:.2f}"
            )
        for run in runs:
            if not run.blocking:
                continue
            dimension = next(
                (name for name, stage in DIMENSION_STAGE.items() if stage == run.stage),
                None,
            )
            detail = "; ".join(run.diagnostics) or "no diagnostics"
            if run.stage == VISUAL_STAGE:
                reason = f"blocking visual finding: {detail}"
            else:
                reason = f"blocking {run.stage} failure: {detail}"
            instant_fail.setdefault(dimension or run.stage, reason)

        # Dimensions without evidence drop out and the remaining weights are renormalized.
        evidenced = sum(weight for name, weight in weights.items() if values[name] is not None)
        dimensions: dict[str, DimensionScore] = {}
        for name, weight in weights.items():
            value = values[name]
            share = weight / evidenced if value is not None and evidenced > 0 else 0.0
            dimensions[name] = DimensionScore(
                weight=round(share, 6),
                value=0.0 if value is None else value,
                instant_fail=name in instant_fail,
            )

        notes: list[str] = []
        if low_confidence:
            notes.append(LOW_CONFIDENCE_NOTE)
        missing = [name for name, value in values.items() if value is None]
        if missing:
            notes.append(f"no evidence for: {', '.join(missing)}")

        if instant_fail:
            overall = 0.0
            reason: str | None = "; ".join(instant_fail.values())
        else:
            overall = round(sum(item.weight * item.value for item in dimensions.values()), 6)
            reason = None

        if overall >= threshold and not instant_fail:
            return QualityScore(
                dimensions=dimensions,
                overall=overall,
                threshold=threshold,
                decision=Decision.SHIP,
                iteration=iteration,
                low_confidence=low_confidence,
                notes=tuple(notes),
            )

        fix_set = self._fix_set(dimensions, threshold, instant_fail, roles, complexity)
        return QualityScore(
            dimensions=dimensions,
            overall=overall,
            threshold=threshold,
            decision=Decision.ITERATE,
            iteration=iteration,
            instant_fail_reason=reason,
            fix_set=fix_set,
            low_confidence=low_confidence,
            notes=tuple(notes),
        )

    def ship_with_notes(self, score: QualityScore) -> QualityScore:
        """Final conversion once the quality-fix budget is spent: outstanding fixes become notes."""
        outstanding = tuple(
            f"{item.dimension}: {item.instruction} (owner: "
            f"{', '.join(role.value for role in item.roles)})"
            for item in score.fix_set
        )
        return replace(
            score,
            decision=Decision.SHIP_WITH_NOTES,
            notes=(*score.notes, *outstanding),
        )

    def _fix_set(
        self,
        dimensions: Mapping[str, DimensionScore],
        threshold: float,
        instant_fail: Mapping[str, str],
        roles: Sequence[RoleId],
        complexity: Complexity,
    ) -> tuple[FixInstruction, ...]:
        fixes: list[FixInstruction] = []
        for name, item in dimensions.items():
            if name not in instant_fail and (item.weight == 0 or item.value >= threshold):
                continue
            target = threshold
            if name == TEST_COVERAGE and name in instant_fail:
                target = max(threshold, self._policy.coverage_minimum(complexity))
            instruction = (
                f"{_FIX_HINTS[name]}; raise {name} from {item.value:.2f} to at least {target:.2f}"
            )
            fixes.append(
                FixInstruction(
                    dimension=name,
                    roles=responsible_roles(name, roles),
                    instruction=instruction,
                    current_value=item.value,
                    target_value=round(target, 6),
                )
            )
        return tuple(fixes)


__all__ = [
    "DIMENSION_CAPABILITIES",
    "DIMENSION_STAGE",
    "QualityPolicy",
    "QualityScorer",
    "dimension_values",
    "responsible_roles",
]
