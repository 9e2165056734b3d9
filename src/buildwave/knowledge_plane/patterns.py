"""
Pattern confidence scoring and false-memory handling.

Confidence starts at 100 and loses points for weak evidence:

- fewer than 3 observations: -20
- older than 90 days: -15
- the recorded outcome reads like a programming error: -30
- flagged as a false memory: -50

The result is floored at 0. Tiers: >= 80 applied automatically, >= 50 suggested,
anything lower withheld. ``compute_confidence`` has no side effects so it is safe to
call on every read.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import replace
from datetime import datetime
from enum import StrEnum
from typing import Final

from buildwave.constants import CONFIDENCE_APPLY_MIN, CONFIDENCE_SUGGEST_MIN
from buildwave.domain.ids import pattern_id
from buildwave.domain.models import Contradiction, Pattern, utc_now
from buildwave.domain.roles import RoleId

BASE_CONFIDENCE: Final[int] = 100
LOW_FREQUENCY_THRESHOLD: Final[int] = 3
LOW_FREQUENCY_PENALTY: Final[int] = 20
STALE_AGE_DAYS: Final[int] = 90
STALE_PENALTY: Final[int] = 15
ERROR_OUTCOME_PENALTY: Final[int] = 30
FALSE_MEMORY_PENALTY: Final[int] = 50
CONTRADICTION_FREQUENCY_DROP: Final[int] = 2

PROGRAMMING_ERROR_LEXICON: Final[tuple[str, ...]] = (
    "TypeError",
    "ValueError",
    "KeyError",
    "AttributeError",
    "NameError",
    "IndexError",
    "NullPointerException",
    "undefined is not a function",
    "SyntaxError",
    "ImportError",
    "ModuleNotFoundError",
    "ReferenceError",
    "segfault",
    "stack overflow",
    "cannot read property",
)
_LEXICON_FOLDED: Final[tuple[str, ...]] = tuple(
    term.casefold() for term in PROGRAMMING_ERROR_LEXICON
)


class ConfidenceTier(StrEnum):
    APPLY = "apply"
    SUGGEST = "suggest"
    WITHHOLD = "withhold"


def mentions_programming_error(outcome: str) -> bool:
    folded = outcome.casefold()
    return any(term in folded for term in _LEXICON_FOLDED)


def compute_confidence(
    frequency: int, age_days: float, outcome: str, false_memory_flag: bool
) -> int:
    score = BASE_CONFIDENCE
    if frequency < LOW_FREQUENCY_THRESHOLD:
        score -= LOW_FREQUENCY_PENALTY
    if age_days > STALE_AGE_DAYS:
        score -= STALE_PENALTY
    if mentions_programming_error(outcome):
        score -= ERROR_OUTCOME_PENALTY
    if false_memory_flag:
        score -= FALSE_MEMORY_PENALTY
    return max(score, 0)


def confidence_tier(confidence: int) -> ConfidenceTier:
    if confidence >= CONFIDENCE_APPLY_MIN:
        return ConfidenceTier.APPLY
    if confidence >= CONFIDENCE_SUGGEST_MIN:
        return ConfidenceTier.SUGGEST
    return ConfidenceTier.WITHHOLD


def age_in_days(pattern: Pattern, now: datetime | None = None) -> float:
    """Days since the pattern was last confirmed."""
    moment = now or utc_now()
    return max((moment - pattern.updated_at).total_seconds(), 0.0) / 86_400


def with_confidence(pattern: Pattern, now: datetime | None = None) -> Pattern:
    """Copy of ``pattern`` with ``confidence`` recomputed for ``now``."""
    confidence = compute_confidence(
        pattern.frequency,
        age_in_days(pattern, now),
        pattern.outcome,
        pattern.false_memory_flag,
    )
    if confidence == pattern.confidence:
        return pattern
    return replace(pattern, confidence=confidence)


def observe(
    existing: Pattern | None,
    *,
    role: RoleId,
    description: str,
    outcome: str,
    success: bool,
    now: datetime | None = None,
) -> Pattern:
    """Fold one observation into the stored pattern for the same description.

    Agreeing observations raise the frequency. A contradicting observation lowers it
    by two (floored at 0), flags the pattern as a false memory and keeps the newest
    outcome, so the last writer wins.
    """
    moment = now or utc_now()
    if existing is None:
        created = Pattern(
            id=pattern_id(role, description),
            source_role=role,
            description=description.strip(),
            outcome=outcome,
            success=success,
            frequency=1,
            created_at=moment,
            updated_at=moment,
        )
        return with_confidence(created, moment)

    if existing.success == success:
        merged = replace(
            existing,
            outcome=outcome or existing.outcome,
            frequency=existing.frequency + 1,
            updated_at=moment,
        )
        return with_confidence(merged, moment)

    contradiction = Contradiction(
        previous_outcome=existing.outcome,
        previous_success=existing.success,
        new_outcome=outcome,
        new_success=success,
        at=moment,
    )
    flagged = replace(
        existing,
        outcome=outcome,
        success=success,
        frequency=max(existing.frequency - CONTRADICTION_FREQUENCY_DROP, 0),
        updated_at=moment,
        false_memory_flag=True,
        contradictions=(*existing.contradictions, contradiction),
    )
    return with_confidence(flagged, moment)


def is_prune_candidate(pattern: Pattern) -> bool:
    return pattern.false_memory_flag and pattern.frequency < LOW_FREQUENCY_THRESHOLD


def prune_candidates(patterns: Iterable[Pattern]) -> tuple[Pattern, ...]:
    return tuple(pattern for pattern in patterns if is_prune_candidate(pattern))


__all__ = [
    "PROGRAMMING_ERROR_LEXICON",
    "ConfidenceTier",
    "age_in_days",
    "compute_confidence",
    "confidence_tier",
    "is_prune_candidate",
    "mentions_programming_error",
    "observe",
    "prune_candidates",
    "with_confidence",
]
