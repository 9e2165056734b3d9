"""Dataclass domain models with validation and canonical serialization."""

from __future__ import annotations

import json
import math
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from buildwave.domain.roles import RoleId, parse_role

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class FeatureStatus(StrEnum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    IN_PROGRESS = "in_progress"
    MERGED = "merged"
    FAILED = "failed"


_FEATURE_TRANSITIONS: dict[FeatureStatus, frozenset[FeatureStatus]] = {
    FeatureStatus.PENDING: frozenset({FeatureStatus.DISPATCHED, FeatureStatus.FAILED}),
    FeatureStatus.DISPATCHED: frozenset(
        {FeatureStatus.IN_PROGRESS, FeatureStatus.PENDING, FeatureStatus.FAILED}
    ),
    FeatureStatus.IN_PROGRESS: frozenset(
        {FeatureStatus.MERGED, FeatureStatus.DISPATCHED, FeatureStatus.FAILED}
    ),
    # Merged state only changes through an explicit bugfix merge, which keeps it merged.
    FeatureStatus.MERGED: frozenset({FeatureStatus.MERGED}),
    FeatureStatus.FAILED: frozenset({FeatureStatus.DISPATCHED}),
}


class WorkScope(StrEnum):
    FEATURE_BUILD = "feature_build"
    TARGETED_BUGFIX = "targeted_bugfix"


class WorkerStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


class StageOutcome(StrEnum):
    PASS = "pass"
    FAIL = "fail"
    SKIPPED = "skipped"


class Decision(StrEnum):
    SHIP = "ship"
    ITERATE = "iterate"
    SHIP_WITH_NOTES = "ship_with_notes"


class ResolutionOption(StrEnum):
    RETRY_WITH_GUIDANCE = "retry_with_guidance"
    MANUAL_FIX_CONTINUE = "manual_fix_continue"
    ACCEPT_AND_SKIP = "accept_and_skip"
    ABORT = "abort"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def _require_text(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string")
    parsed = value.strip()
    if not parsed:
        raise ValueError(f"{field_name} cannot be empty")
    return parsed


def _parse_datetime(value: object, field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        raise ValueError(f"{field_name} must be an ISO-8601 string")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _iso(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def canonical_json(value: JSONValue) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class Feature:
    """Declared unit of work. ``status`` is advanced by the dispatcher and coordinator."""

    name: str
    description: str = ""
    roles: tuple[RoleId, ...] = ()
    dependencies: tuple[str, ...] = ()
    priority: int = 0
    role_order: tuple[RoleId, ...] = ()
    status: FeatureStatus = FeatureStatus.PENDING

    def __post_init__(self) -> None:
        self.name = _require_text(self.name, "Feature.name")
        self.roles = tuple(dict.fromkeys(parse_role(role) for role in self.roles))
        self.dependencies = tuple(dict.fromkeys(dep.strip() for dep in self.dependencies))
        self.role_order = tuple(dict.fromkeys(parse_role(role) for role in self.role_order))
        self.status = FeatureStatus(self.status)
        if isinstance(self.priority, bool) or not isinstance(self.priority, int):
            raise ValueError("Feature.priority must be an integer")

    @property
    def sequential_roles(self) -> bool:
        return bool(self.role_order)

    def ordered_roles(self) -> tuple[RoleId, ...]:
        """Roles in execution order: declared ``role_order`` first, then the rest."""
        if not self.role_order:
            return self.roles
        ordered = [role for role in self.role_order if role in self.roles]
        ordered.extend(role for role in self.roles if role not in ordered)
        return tuple(ordered)

    def transition(self, target: FeatureStatus) -> None:
        if target not in _FEATURE_TRANSITIONS[self.status]:
            raise ValueError(
                f"feature {self.name!r} cannot move from {self.status.value} to {target.value}"
            )
        self.status = target

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "name": self.name,
            "description": self.description,
            "roles": [role.value for role in self.roles],
            "dependencies": list(self.dependencies),
            "priority": self.priority,
            "role_order": [role.value for role in self.role_order],
            "status": self.status.value,
        }


@dataclass(frozen=True, slots=True)
class Wave:
    """Features schedulable together once every earlier wave is merged."""

    index: int
    features: tuple[str, ...]

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError("Wave.index must be >= 0")
        if not self.features:
            raise ValueError("Wave.features must not be empty")


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class WorkItem:
    """One (feature, role) unit of work on its own isolation branch."""

    feature: str
    role: RoleId
    branch_name: str
    attempt_count: int = 1
    scope: WorkScope = WorkScope.FEATURE_BUILD
    prior_diagnostics: tuple[str, ...] = ()
    base_ref: str | None = None
    guidance: str | None = None
    hints: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "feature", _require_text(self.feature, "WorkItem.feature"))
        object.__setattr__(self, "role", parse_role(self.role))
        object.__setattr__(
            self, "branch_name", _require_text(self.branch_name, "WorkItem.branch_name")
        )
        if self.attempt_count <= 0:
            raise ValueError("WorkItem.attempt_count must be > 0")
        object.__setattr__(self, "scope", WorkScope(self.scope))

    @property
    def key(self) -> str:
        return f"{self.feature}:{self.role.value}:{self.scope.value}"

    def next_attempt(self, *, branch_name: str, diagnostics: str) -> WorkItem:
        return replace(
            self,
            branch_name=branch_name,
            attempt_count=self.attempt_count + 1,
            prior_diagnostics=(*self.prior_diagnostics, diagnostics),
        )

    def to_request(self) -> dict[str, JSONValue]:
        """Dispatcher -> worker payload."""
        payload: dict[str, JSONValue] = {
            "feature_name": self.feature,
            "role": self.role.value,
            "branch_ref": self.branch_name,
            "attempt_count": self.attempt_count,
            "scope": self.scope.value,
        }
        if self.prior_diagnostics:
            payload["prior_diagnostics"] = list(self.prior_diagnostics)
        if self.base_ref is not None:
            payload["base_ref"] = self.base_ref
        if self.guidance:
            payload["guidance"] = self.guidance
        if self.hints:
            payload["hints"] = list(self.hints)
        return payload


@dataclass(frozen=True, slots=True)
class WorkerResult:
    """Worker -> dispatcher completion signal."""

    status: WorkerStatus
    branch_ref: str | None = None
    diagnostics: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", WorkerStatus(self.status))
        if self.status is WorkerStatus.SUCCESS and not self.branch_ref:
            raise ValueError("successful WorkerResult requires branch_ref")

    @property
    def ok(self) -> bool:
        return self.status is WorkerStatus.SUCCESS

    @classmethod
    def success(cls, branch_ref: str, diagnostics: str | None = None) -> WorkerResult:
        return cls(status=WorkerStatus.SUCCESS, branch_ref=branch_ref, diagnostics=diagnostics)

    @classmethod
    def failure(cls, diagnostics: str) -> WorkerResult:
        return cls(status=WorkerStatus.FAILURE, diagnostics=diagnostics or "worker failed")

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> WorkerResult:
        status = payload.get("status")
        if not isinstance(status, str):
            raise ValueError("worker result 'status' must be a string")
        branch_ref = payload.get("branch_ref")
        diagnostics = payload.get("diagnostics")
        return cls(
            status=WorkerStatus(status.strip().lower()),
            branch_ref=branch_ref if isinstance(branch_ref, str) else None,
            diagnostics=str(diagnostics) if diagnostics is not None else None,
        )


@dataclass(frozen=True, slots=True)
class CompletedWork:
    """A successful work item handed from the dispatcher to the integration coordinator."""

    item: WorkItem
    branch_ref: str
    completed_seq: int = 0


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class VerificationRun:
    """One stage execution against an integration reference."""

    stage: str
    input_ref: str
    result: StageOutcome
    blocking: bool = False
    diagnostics: tuple[str, ...] = ()
    metrics: Mapping[str, float] = field(default_factory=dict)
    attempt: int = 1

    def __post_init__(self) -> None:
        object.__setattr__(self, "stage", _require_text(self.stage, "VerificationRun.stage"))
        object.__setattr__(self, "result", StageOutcome(self.result))
        if self.blocking and self.result is StageOutcome.PASS:
            raise ValueError("a passing VerificationRun cannot be blocking")
        normalized_metrics: dict[str, float] = {}
        for key, value in dict(self.metrics).items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"VerificationRun.metrics[{key!r}] must be numeric")
            if not math.isfinite(float(value)):
                raise ValueError(f"VerificationRun.metrics[{key!r}] must be finite")
            normalized_metrics[str(key)] = float(value)
        object.__setattr__(self, "metrics", normalized_metrics)
        object.__setattr__(self, "diagnostics", tuple(self.diagnostics))

    @property
    def passed(self) -> bool:
        return self.result is StageOutcome.PASS

    @property
    def failed(self) -> bool:
        return self.result is StageOutcome.FAIL

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage": self.stage,
            "input_ref": self.input_ref,
            "result": self.result.value,
            "blocking": self.blocking,
            "diagnostics": list(self.diagnostics),
            "metrics": dict(self.metrics),
            "attempt": self.attempt,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> VerificationRun:
        return cls(
            stage=str(payload["stage"]),
            input_ref=str(payload.get("input_ref", "")),
            result=StageOutcome(str(payload["result"])),
            blocking=bool(payload.get("blocking", False)),
            diagnostics=tuple(str(item) for item in payload.get("diagnostics", ())),
            metrics=dict(payload.get("metrics") or {}),
            attempt=int(payload.get("attempt", 1)),
        )


# ---------------------------------------------------------------------------
# Quality
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DimensionScore:
    weight: float
    value: float
    instant_fail: bool = False

    def __post_init__(self) -> None:
        if self.weight < 0:
            raise ValueError("DimensionScore.weight must be >= 0")
        if not 0.0 <= self.value <= 1.0:
            raise ValueError("DimensionScore.value must be within [0, 1]")


@dataclass(frozen=True, slots=True)
class FixInstruction:
    dimension: str
    roles: tuple[RoleId, ...]
    instruction: str
    current_value: float
    target_value: float

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "dimension": self.dimension,
            "roles": [role.value for role in self.roles],
            "instruction": self.instruction,
            "current_value": self.current_value,
            "target_value": self.target_value,
        }


@dataclass(frozen=True, slots=True)
class QualityScore:
    dimensions: Mapping[str, DimensionScore]
    overall: float
    threshold: float
    decision: Decision
    iteration: int = 0
    instant_fail_reason: str | None = None
    fix_set: tuple[FixInstruction, ...] = ()
    low_confidence: bool = False
    notes: tuple[str, ...] = ()

    @property
    def failing_dimensions(self) -> tuple[str, ...]:
        return tuple(item.dimension for item in self.fix_set)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "dimensions": {
                name: {
                    "weight": score.weight,
                    "value": score.value,
                    "instant_fail": score.instant_fail,
                }
                for name, score in sorted(self.dimensions.items())
            },
            "overall": self.overall,
            "threshold": self.threshold,
            "decision": self.decision.value,
            "iteration": self.iteration,
            "instant_fail_reason": self.instant_fail_reason,
            "fix_set": [item.to_dict() for item in self.fix_set],
            "low_confidence": self.low_confidence,
            "notes": list(self.notes),
        }


# ---------------------------------------------------------------------------
# Retry / escalation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class AttemptLog:
    attempt: int
    succeeded: bool
    diagnostics: str
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "attempt": self.attempt,
            "succeeded": self.succeeded,
            "diagnostics": self.diagnostics,
            "at": _iso(self.at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> AttemptLog:
        return cls(
            attempt=int(payload["attempt"]),
            succeeded=bool(payload["succeeded"]),
            diagnostics=str(payload.get("diagnostics", "")),
            at=_parse_datetime(payload.get("at", _iso(utc_now())), "AttemptLog.at"),
        )


@dataclass(frozen=True, slots=True)
class Resolution:
    option: ResolutionOption
    guidance: str | None = None
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, JSONValue]:
        return {"option": self.option.value, "guidance": self.guidance, "at": _iso(self.at)}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Resolution:
        guidance = payload.get("guidance")
        return cls(
            option=ResolutionOption(str(payload["option"])),
            guidance=str(guidance) if guidance is not None else None,
            at=_parse_datetime(payload.get("at", _iso(utc_now())), "Resolution.at"),
        )


@dataclass(frozen=True, slots=True)
class EscalationRecord:
    """Hard stop produced when a retry budget is exhausted."""

    phase: str
    subject: str
    attempts_log: tuple[AttemptLog, ...]
    last_diagnostics: str
    resolution_options: tuple[ResolutionOption, ...] = tuple(ResolutionOption)
    created_at: datetime = field(default_factory=utc_now)
    resolution: Resolution | None = None

    @property
    def resolved(self) -> bool:
        return self.resolution is not None

    def resolve(self, resolution: Resolution) -> EscalationRecord:
        if self.resolution is not None:
            raise ValueError(f"escalation for {self.phase}/{self.subject} is already resolved")
        if resolution.option not in self.resolution_options:
            raise ValueError(f"option {resolution.option.value!r} is not offered")
        return replace(self, resolution=resolution)

    def render(self) -> str:
        lines = [
            f"escalation: phase {self.phase!r} exhausted its retry budget for {self.subject!r}",
            f"last error: {self.last_diagnostics}",
            "attempts:",
        ]
        for entry in self.attempts_log:
            outcome = "ok" if entry.succeeded else "failed"
            lines.append(f"  #{entry.attempt} {outcome}: {entry.diagnostics}")
        options = ", ".join(option.value for option in self.resolution_options)
        lines.append(f"options: {options}")
        return "\n".join(lines)

    def surface(self) -> dict[str, JSONValue]:
        """Escalation payload presented for a human decision."""
        return {
            "phase": self.phase,
            "subject": self.subject,
            "attempts": [entry.to_dict() for entry in self.attempts_log],
            "last_error": self.last_diagnostics,
            "options": [option.value for option in self.resolution_options],
        }

    def to_dict(self) -> dict[str, JSONValue]:
        payload = self.surface()
        payload["created_at"] = _iso(self.created_at)
        payload["resolution"] = self.resolution.to_dict() if self.resolution else None
        return payload

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> EscalationRecord:
        resolution_raw = payload.get("resolution")
        return cls(
            phase=_require_text(payload.get("phase"), "EscalationRecord.phase"),
            subject=_require_text(payload.get("subject"), "EscalationRecord.subject"),
            attempts_log=tuple(AttemptLog.from_dict(item) for item in payload.get("attempts", ())),
            last_diagnostics=str(payload.get("last_error", "")),
            resolution_options=tuple(
                ResolutionOption(str(item))
                for item in payload.get("options", [option.value for option in ResolutionOption])
            ),
            created_at=_parse_datetime(
                payload.get("created_at", _iso(utc_now())), "EscalationRecord.created_at"
            ),
            resolution=Resolution.from_dict(resolution_raw) if resolution_raw else None,
        )


# ---------------------------------------------------------------------------
# Learning
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Contradiction:
    previous_outcome: str
    previous_success: bool
    new_outcome: str
    new_success: bool
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "previous_outcome": self.previous_outcome,
            "previous_success": self.previous_success,
            "new_outcome": self.new_outcome,
            "new_success": self.new_success,
            "at": _iso(self.at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Contradiction:
        return cls(
            previous_outcome=str(payload.get("previous_outcome", "")),
            previous_success=bool(payload.get("previous_success")),
            new_outcome=str(payload.get("new_outcome", "")),
            new_success=bool(payload.get("new_success")),
            at=_parse_datetime(payload.get("at", _iso(utc_now())), "Contradiction.at"),
        )


@dataclass(frozen=True, slots=True)
class Pattern:
    """Recorded observation; ``confidence`` is recomputed on every read."""

    id: str
    source_role: RoleId
    description: str
    outcome: str
    success: bool
    frequency: int = 1
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    confidence: int = 0
    false_memory_flag: bool = False
    contradictions: tuple[Contradiction, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_role", parse_role(self.source_role))
        if self.frequency < 0:
            raise ValueError("Pattern.frequency must be >= 0")
        if not 0 <= self.confidence <= 100:
            raise ValueError("Pattern.confidence must be within [0, 100]")

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "source_role": self.source_role.value,
            "description": self.description,
            "outcome": self.outcome,
            "success": self.success,
            "frequency": self.frequency,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "confidence": self.confidence,
            "false_memory_flag": self.false_memory_flag,
            "contradictions": [item.to_dict() for item in self.contradictions],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Pattern:
        return cls(
            id=_require_text(payload.get("id"), "Pattern.id"),
            source_role=parse_role(str(payload.get("source_role", ""))),
            description=str(payload.get("description", "")),
            outcome=str(payload.get("outcome", "")),
            success=bool(payload.get("success")),
            frequency=int(payload.get("frequency", 1)),
            created_at=_parse_datetime(payload.get("created_at"), "Pattern.created_at"),
            updated_at=_parse_datetime(payload.get("updated_at"), "Pattern.updated_at"),
            confidence=int(payload.get("confidence", 0)),
            false_memory_flag=bool(payload.get("false_memory_flag", False)),
            contradictions=tuple(
                Contradiction.from_dict(item) for item in payload.get("contradictions", ())
            ),
        )


class RunStatus(StrEnum):
    SHIPPED = "shipped"
    SHIPPED_WITH_NOTES = "shipped_with_notes"
    ESCALATED = "escalated"
    ABORTED = "aborted"
    INSTANT_FAIL = "instant_fail"


@dataclass(frozen=True, slots=True)
class RunOutcome:
    run_id: str
    request_digest: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime
    overall_score: float | None = None
    iterations: int = 0
    escalations: tuple[str, ...] = ()
    failed_dimensions: tuple[str, ...] = ()
    role_results: Mapping[str, Sequence[bool]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "run_id": self.run_id,
            "request_digest": self.request_digest,
            "status": self.status.value,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "overall_score": self.overall_score,
            "iterations": self.iterations,
            "escalations": list(self.escalations),
            "failed_dimensions": list(self.failed_dimensions),
            "role_results": {
                role: [bool(item) for item in results]
                for role, results in sorted(self.role_results.items())
            },
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RunOutcome:
        score = payload.get("overall_score")
        raw_roles = payload.get("role_results") or {}
        return cls(
            run_id=_require_text(payload.get("run_id"), "RunOutcome.run_id"),
            request_digest=str(payload.get("request_digest", "")),
            status=RunStatus(str(payload.get("status"))),
            started_at=_parse_datetime(payload.get("started_at"), "RunOutcome.started_at"),
            finished_at=_parse_datetime(payload.get("finished_at"), "RunOutcome.finished_at"),
            overall_score=float(score) if score is not None else None,
            iterations=int(payload.get("iterations", 0)),
            escalations=tuple(str(item) for item in payload.get("escalations", ())),
            failed_dimensions=tuple(str(item) for item in payload.get("failed_dimensions", ())),
            role_results={
                str(role): tuple(bool(item) for item in results)
                for role, results in dict(raw_roles).items()
            },
        )


def isoformat(value: datetime) -> str:
    return _iso(value)


def parse_datetime(value: object, field_name: str = "timestamp") -> datetime:
    return _parse_datetime(value, field_name)


__all__ = [
    "AttemptLog",
    "CompletedWork",
    "Contradiction",
    "Decision",
    "DimensionScore",
    "EscalationRecord",
    "Feature",
    "FeatureStatus",
    "FixInstruction",
    "JSONValue",
    "Pattern",
    "QualityScore",
    "Resolution",
    "ResolutionOption",
    "RunOutcome",
    "RunStatus",
    "StageOutcome",
    "VerificationRun",
    "Wave",
    "WorkItem",
    "WorkScope",
    "WorkerResult",
    "WorkerStatus",
    "canonical_json",
    "isoformat",
    "parse_datetime",
    "utc_now",
]
