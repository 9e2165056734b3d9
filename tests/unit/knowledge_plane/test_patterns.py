"""Unit tests for pattern confidence and false-memory handling."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from buildwave.domain.roles import RoleId
from buildwave.knowledge_plane.patterns import (
    ConfidenceTier,
    compute_confidence,
    confidence_tier,
    is_prune_candidate,
    observe,
    with_confidence,
)

_NOW = datetime(2026, 6, 1, tzinfo=UTC)


def test_rare_stale_error_pattern_scores_35() -> None:
    assert compute_confidence(1, 200, "TypeError", False) == 35


@pytest.mark.parametrize(
    ("frequency", "age_days", "outcome", "flag", "expected"),
    [
        (5, 10, "added index on orders.customer_id", False, 100),
        (3, 90, "ok", False, 100),
        (2, 10, "ok", False, 80),
        (5, 91, "ok", False, 85),
        (5, 10, "cannot read property 'id' of undefined", False, 70),
        (1, 200, "KeyError", True, 0),
    ],
)
def test_confidence_penalties(
    frequency: int, age_days: float, outcome: str, flag: bool, expected: int
) -> None:
    assert compute_confidence(frequency, age_days, outcome, flag) == expected


def test_tiers() -> None:
    assert confidence_tier(80) is ConfidenceTier.APPLY
    assert confidence_tier(79) is ConfidenceTier.SUGGEST
    assert confidence_tier(50) is ConfidenceTier.SUGGEST
    assert confidence_tier(49) is ConfidenceTier.WITHHOLD


def test_agreeing_observations_raise_frequency() -> None:
    first = observe(
        None, role=RoleId.BACKEND, description="Retry flaky DB", outcome="ok", success=True,
        now=_NOW,
    )
    second = observe(
        first, role=RoleId.BACKEND, description="retry flaky db", outcome="ok", success=True,
        now=_NOW + timedelta(days=1),
    )
    third = observe(
        second, role=RoleId.BACKEND, description="retry flaky db", outcome="ok", success=True,
        now=_NOW + timedelta(days=2),
    )

    assert first.confidence == 80
    assert third.frequency == 3
    assert third.confidence == 100
    assert third.id == first.id


def test_contradiction_flags_false_memory_and_keeps_newest_outcome() -> None:
    pattern = observe(
        None, role=RoleId.FRONTEND, description="inline styles", outcome="ok", success=True,
        now=_NOW,
    )
    for day in range(1, 4):
        pattern = observe(
            pattern, role=RoleId.FRONTEND, description="inline styles", outcome="ok",
            success=True, now=_NOW + timedelta(days=day),
        )
    assert pattern.frequency == 4

    flipped = observe(
        pattern, role=RoleId.FRONTEND, description="inline styles", outcome="visual regression",
        success=False, now=_NOW + timedelta(days=5),
    )

    assert flipped.false_memory_flag
    assert flipped.frequency == 2
    assert flipped.outcome == "visual regression"
    assert flipped.success is False
    assert len(flipped.contradictions) == 1
    assert flipped.contradictions[0].previous_outcome == "ok"
    assert flipped.confidence == 100 - 20 - 50
    assert is_prune_candidate(flipped)


def test_confidence_is_recomputed_on_read() -> None:
    pattern = observe(
        None, role=RoleId.BACKEND, description="x", outcome="ok", success=True, now=_NOW
    )

    later = with_confidence(pattern, _NOW + timedelta(days=120))

    assert later.confidence == pattern.confidence - 15
