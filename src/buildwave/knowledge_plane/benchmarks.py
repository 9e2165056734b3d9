"""Aggregate benchmarks recomputed from the full run history.

Aggregates are never updated incrementally: every call to ``compute_aggregates`` sees
the complete set of run outcomes and role records.
"""

from __future__ import annotations

import math
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Final

from buildwave.domain.models import RunOutcome, RunStatus, isoformat, parse_datetime, utc_now

MIN_BENCHMARK_SAMPLES: Final[int] = 3
_SCORED_STATUSES: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.SHIPPED, RunStatus.SHIPPED_WITH_NOTES}
)


def percentile(values: Sequence[float], pct: float) -> float:
    """Linear-interpolated percentile of ``values`` (``pct`` in [0, 100])."""
    if not values:
        raise ValueError("percentile of empty sequence")
    if not 0.0 <= pct <= 100.0:
        raise ValueError("pct must be within [0, 100]")
    ordered = sorted(values)
    rank = (len(ordered) - 1) * pct / 100.0
    lower = math.floor(rank)
    upper = math.ceil(rank)
    if lower == upper:
        return ordered[lower]
    fraction = rank - lower
    return ordered[lower] + (ordered[upper] - ordered[lower]) * fraction


@dataclass(frozen=True, slots=True)
class Aggregates:
    p50: float | None
    p75: float | None
    sample_size: int
    failure_dimensions: Mapping[str, int] = field(default_factory=dict)
    role_success_rates: Mapping[str, float] = field(default_factory=dict)
    computed_at: datetime = field(default_factory=utc_now)

    @property
    def has_benchmarks(self) -> bool:
        return self.p50 is not None and self.p75 is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "p50": self.p50,
            "p75": self.p75,
            "sample_size": self.sample_size,
            "failure_dimensions": dict(sorted(self.failure_dimensions.items())),
            "role_success_rates": dict(sorted(self.role_success_rates.items())),
            "computed_at": isoformat(self.computed_at),
            "updated_at": isoformat(self.computed_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Aggregates:
        p50 = payload.get("p50")
        p75 = payload.get("p75")
        return cls(
            p50=float(p50) if p50 is not None else None,
            p75=float(p75) if p75 is not None else None,
            sample_size=int(payload.get("sample_size", 0)),
            failure_dimensions={
                str(key): int(value)
                for key, value in dict(payload.get("failure_dimensions") or {}).items()
            },
            role_success_rates={
                str(key): float(value)
                for key, value in dict(payload.get("role_success_rates") or {}).items()
            },
            computed_at=parse_datetime(payload.get("computed_at"), "computed_at"),
        )


def compute_aggregates(
    outcomes: Iterable[RunOutcome],
    role_records: Iterable[Mapping[str, Any]] = (),
    *,
    now: datetime | None = None,
) -> Aggregates:
    """Benchmarks over shipped runs, failure counts by dimension, per-role success rates."""
    history = list(outcomes)
    scores = [
        outcome.overall_score
        for outcome in history
        if outcome.status in _SCORED_STATUSES and outcome.overall_score is not None
    ]
    p50: float | None = None
    p75: float | None = None
    if len(scores) >= MIN_BENCHMARK_SAMPLES:
        p50 = round(percentile(scores, 50), 6)
        p75 = round(percentile(scores, 75), 6)

    failures: Counter[str] = Counter()
    for outcome in history:
        failures.update(outcome.failed_dimensions)

    successes: Counter[str] = Counter()
    totals: Counter[str] = Counter()
    for record in role_records:
        role = str(record.get("role", ""))
        if not role:
            continue
        ok = int(record.get("successes", 0))
        failed = int(record.get("failures", 0))
        successes[role] += ok
        totals[role] += ok + failed
    rates = {
        role: round(successes[role] / totals[role], 6) for role in sorted(totals) if totals[role]
    }

    return Aggregates(
        p50=p50,
        p75=p75,
        sample_size=len(scores),
        failure_dimensions=dict(sorted(failures.items())),
        role_success_rates=rates,
        computed_at=now or utc_now(),
    )


__all__ = ["MIN_BENCHMARK_SAMPLES", "Aggregates", "compute_aggregates", "percentile"]
