"""Pattern memory, run history and benchmarks on top of any ``LearningStore``."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import structlog

from buildwave.domain.ids import pattern_id
from buildwave.domain.models import Pattern, RunOutcome, utc_now
from buildwave.domain.roles import RoleId
from buildwave.knowledge_plane.benchmarks import Aggregates, compute_aggregates
from buildwave.knowledge_plane.learning_store import (
    BENCHMARK_KEY,
    PATTERN_PREFIX,
    ROLE_PREFIX,
    RUN_PREFIX,
    LearningStore,
    Record,
)
from buildwave.knowledge_plane.patterns import (
    ConfidenceTier,
    confidence_tier,
    is_prune_candidate,
    observe,
    with_confidence,
)


@dataclass(frozen=True, slots=True)
class RoleHints:
    """Patterns attached to a work item: ``defaults`` apply automatically, ``warnings`` advise."""

    defaults: tuple[Pattern, ...] = ()
    warnings: tuple[Pattern, ...] = ()

    def render(self) -> tuple[str, ...]:
        lines = [
            f"default: {pattern.description} -> {pattern.outcome}" for pattern in self.defaults
        ]
        lines.extend(
            f"warning: {pattern.description} -> {pattern.outcome}" for pattern in self.warnings
        )
        return tuple(lines)


def pattern_key(role: RoleId, description: str) -> str:
    return f"{PATTERN_PREFIX}{role.value}/{pattern_id(role, description)}"


class KnowledgeBase:
    def __init__(self, store: LearningStore, *, logger: Any | None = None) -> None:
        self._store = store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def store(self) -> LearningStore:
        return self._store

    def record_pattern(
        self,
        role: RoleId,
        description: str,
        outcome: str,
        *,
        success: bool,
        now: datetime | None = None,
    ) -> Pattern:
        """Store one observation, merging into any pattern with the same normalized text."""
        moment = now or utc_now()
        key = pattern_key(role, description)

        def merge(current: Record | None) -> Record:
            existing = Pattern.from_dict(current) if current is not None else None
            return observe(
                existing,
                role=role,
                description=description,
                outcome=outcome,
                success=success,
                now=moment,
            ).to_dict()

        stored = self._store.update(key, merge)
        pattern = Pattern.from_dict(stored or {})
        if pattern.false_memory_flag and pattern.contradictions:
            latest = pattern.contradictions[-1]
            if latest.at == moment:
                self._logger.warning(
                    "pattern_contradicted",
                    pattern_id=pattern.id,
                    role=role.value,
                    frequency=pattern.frequency,
                )
        return pattern

    def patterns(
        self,
        role: RoleId | None = None,
        *,
        now: datetime | None = None,
        min_frequency: int | None = None,
    ) -> list[Pattern]:
        """Stored patterns with confidence recomputed for ``now``, highest first."""
        prefix = f"{PATTERN_PREFIX}{role.value}/" if role is not None else PATTERN_PREFIX
        moment = now or utc_now()
        loaded = [
            with_confidence(Pattern.from_dict(record), moment)
            for _, record in self._store.query(prefix, min_frequency=min_frequency)
        ]
        loaded.sort(key=lambda pattern: (-pattern.confidence, pattern.id))
        return loaded

    def hints_for(self, roles: Iterable[RoleId], *, now: datetime | None = None) -> RoleHints:
        defaults: list[Pattern] = []
        warnings: list[Pattern] = []
        for role in dict.fromkeys(roles):
            for pattern in self.patterns(role, now=now):
                tier = confidence_tier(pattern.confidence)
                if tier is ConfidenceTier.APPLY:
                    defaults.append(pattern)
                elif tier is ConfidenceTier.SUGGEST:
                    warnings.append(pattern)
        return RoleHints(defaults=tuple(defaults), warnings=tuple(warnings))

    def prune(self) -> list[Pattern]:
        """Delete flagged patterns observed fewer than three times; returns what was removed."""
        removed: list[Pattern] = []
        for key, record in self._store.query(PATTERN_PREFIX):
            pattern = Pattern.from_dict(record)
            if is_prune_candidate(pattern) and self._store.delete(key):
                removed.append(pattern)
        if removed:
            self._logger.info("patterns_pruned", count=len(removed))
        return removed

    def record_run(self, outcome: RunOutcome) -> Aggregates | None:
        """Persist a completed run, then recompute aggregates from the full history."""
        payload = outcome.to_dict()
        payload["updated_at"] = payload["finished_at"]
        self._store.put(f"{RUN_PREFIX}{outcome.run_id}", payload)
        for role, results in sorted(outcome.role_results.items()):
            successes = sum(1 for item in results if item)
            self._store.put(
                f"{ROLE_PREFIX}{role}/{outcome.run_id}",
                {
                    "role": role,
                    "run_id": outcome.run_id,
                    "successes": successes,
                    "failures": len(results) - successes,
                    "updated_at": payload["finished_at"],
                },
            )
        return self.recompute_aggregates()

    def recompute_aggregates(self, *, now: datetime | None = None) -> Aggregates | None:
        if not self._store.supports_aggregates:
            self._logger.warning("aggregates_skipped", reason="learning store degraded")
            return None
        outcomes = [RunOutcome.from_dict(record) for _, record in self._store.query(RUN_PREFIX)]
        roles = [record for _, record in self._store.query(ROLE_PREFIX)]
        aggregates = compute_aggregates(outcomes, roles, now=now)
        self._store.put(BENCHMARK_KEY, aggregates.to_dict())
        self._logger.info(
            "aggregates_recomputed",
            sample_size=aggregates.sample_size,
            p50=aggregates.p50,
            p75=aggregates.p75,
        )
        return aggregates

    def benchmarks(self) -> Aggregates | None:
        """Stored aggregates, or ``None`` while degraded or before any history exists."""
        if not self._store.supports_aggregates:
            return None
        record = self._store.get(BENCHMARK_KEY)
        if record is None:
            return None
        return Aggregates.from_dict(record)

    def runs(self, *, limit: int | None = None) -> list[RunOutcome]:
        return [
            RunOutcome.from_dict(record)
            for _, record in self._store.query(RUN_PREFIX, limit=limit)
        ]


__all__ = ["KnowledgeBase", "RoleHints", "pattern_key"]
