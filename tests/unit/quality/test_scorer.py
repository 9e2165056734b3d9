"""Unit tests for quality scoring and the threshold policy."""

from __future__ import annotations

import pytest

from buildwave.config.schema import STAGE_NAMES
from buildwave.domain.models import Decision, StageOutcome, VerificationRun
from buildwave.domain.roles import RoleId
from buildwave.knowledge_plane.benchmarks import Aggregates
from buildwave.planning.request import Complexity
from buildwave.quality.scorer import (
    DIMENSION_STAGE,
    QualityPolicy,
    QualityScorer,
    dimension_values,
    responsible_roles,
)

_BENCHMARKS = Aggregates(p50=0.92, p75=0.95, sample_size=5)


def _runs(value: float, **overrides: float) -> list[VerificationRun]:
    runs = []
    for stage in STAGE_NAMES:
        metrics = {
            dimension: overrides.get(dimension, value)
            for dimension, owner in DIMENSION_STAGE.items()
            if owner == stage
        }
        runs.append(
            VerificationRun(
                stage=stage, input_ref="head", result=StageOutcome.PASS, metrics=metrics
            )
        )
    return runs


def test_coverage_below_minimum_is_an_instant_fail() -> None:
    score = QualityScorer().score(
        _runs(1.0, test_coverage=0.45),
        iteration=0,
        complexity=Complexity.MODERATE,
        benchmarks=_BENCHMARKS,
    )

    assert score.overall == 0.0
    assert score.decision is Decision.ITERATE
    assert score.instant_fail_reason is not None
    assert "test_coverage 0.45" in score.instant_fail_reason
    assert score.dimensions["test_coverage"].instant_fail
    coverage_fix = next(item for item in score.fix_set if item.dimension == "test_coverage")
    assert coverage_fix.target_value == pytest.approx(0.92)


def test_score_above_p50_ships_on_first_iteration() -> None:
    score = QualityScorer().score(
        _runs(0.93), iteration=0, complexity=Complexity.SIMPLE, benchmarks=_BENCHMARKS
    )

    assert score.overall == pytest.approx(0.93)
    assert score.threshold == 0.92
    assert score.decision is Decision.SHIP
    assert not score.low_confidence
    assert score.fix_set == ()


def test_same_score_below_p75_iterates_on_second_iteration() -> None:
    score = QualityScorer().score(
        _runs(0.93, functionality=0.99, code_quality=0.99),
        iteration=1,
        complexity=Complexity.SIMPLE,
        benchmarks=_BENCHMARKS,
        available_roles=(RoleId.BACKEND, RoleId.TESTER),
    )

    assert score.threshold == 0.95
    assert score.decision is Decision.ITERATE
    assert score.instant_fail_reason is None
    assert "functionality" not in score.failing_dimensions
    assert "code_quality" not in score.failing_dimensions
    assert "test_coverage" in score.failing_dimensions
    coverage_fix = next(item for item in score.fix_set if item.dimension == "test_coverage")
    assert coverage_fix.roles == (RoleId.TESTER,)


def test_later_iterations_use_final_threshold() -> None:
    policy = QualityPolicy()

    assert policy.threshold(2, _BENCHMARKS) == (0.98, False)
    assert policy.threshold(7, None) == (0.98, False)


def test_missing_benchmarks_fall_back_to_defaults_with_low_confidence() -> None:
    sparse = Aggregates(p50=None, p75=None, sample_size=2)

    score = QualityScorer().score(
        _runs(0.86), iteration=0, complexity=Complexity.SIMPLE, benchmarks=sparse
    )

    assert score.threshold == 0.85
    assert score.low_confidence
    assert score.decision is Decision.SHIP
    assert any("low confidence" in note.lower() for note in score.notes)


def test_blocking_visual_finding_is_an_instant_fail() -> None:
    runs = _runs(1.0)
    runs[STAGE_NAMES.index("visual")] = VerificationRun(
        stage="visual",
        input_ref="head",
        result=StageOutcome.FAIL,
        blocking=True,
        diagnostics=("checkout button overlaps total",),
    )

    score = QualityScorer().score(runs, iteration=0, complexity=Complexity.SIMPLE)

    assert score.overall == 0.0
    assert "blocking visual finding: checkout button overlaps total" in (
        score.instant_fail_reason or ""
    )
    assert score.dimensions["visual_correctness"].instant_fail


def test_dimensions_without_evidence_are_excluded_and_reweighted() -> None:
    runs = [
        VerificationRun(stage="runtime", input_ref="head", result=StageOutcome.PASS),
        VerificationRun(stage="visual", input_ref="head", result=StageOutcome.SKIPPED),
    ]

    values = dimension_values(runs)
    score = QualityScorer().score(runs, iteration=0, complexity=Complexity.SIMPLE)

    assert values["functionality"] == 1.0
    assert values["visual_correctness"] is None
    assert score.dimensions["functionality"].weight == pytest.approx(1.0)
    assert score.overall == pytest.approx(1.0)
    assert any(note.startswith("no evidence for:") for note in score.notes)


def test_ship_with_notes_lists_outstanding_fixes() -> None:
    scorer = QualityScorer()
    score = scorer.score(
        _runs(0.5), iteration=3, complexity=Complexity.SIMPLE, benchmarks=_BENCHMARKS
    )

    shipped = scorer.ship_with_notes(score)

    assert shipped.decision is Decision.SHIP_WITH_NOTES
    assert len(shipped.notes) >= len(score.fix_set)
    assert any("owner:" in note for note in shipped.notes)


def test_responsible_roles_prefer_request_roles() -> None:
    assert responsible_roles("visual_correctness", (RoleId.FRONTEND,)) == (RoleId.FRONTEND,)
    assert responsible_roles("visual_correctness") == (RoleId.DESIGNER,)
    assert responsible_roles("schema_safety", (RoleId.BACKEND,)) == (RoleId.DATABASE,)


def test_policy_rejects_unknown_dimensions() -> None:
    with pytest.raises(ValueError, match="unknown quality dimensions"):
        QualityPolicy(weights={"vibes": 1.0})
