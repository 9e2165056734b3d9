"""Persisted snapshot of a run so ``status`` and ``resume`` work across processes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

from buildwave.constants import RUN_STATE_SCHEMA_VERSION
from buildwave.domain.models import EscalationRecord, isoformat, parse_datetime, utc_now
from buildwave.utils.fs import read_json, write_json

RUN_STATE_FILENAME = "run_state.json"


class RunPhase(StrEnum):
    BUILD = "build"
    VERIFY = "verify"
    QUALITY = "quality"
    ESCALATED = "escalated"
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass(slots=True)
class RunState:
    run_id: str
    request_path: str
    request_digest: str
    dry_run: bool = False
    phase: RunPhase = RunPhase.BUILD
    resume_phase: RunPhase | None = None
    started_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    features: dict[str, str] = field(default_factory=dict)
    dispatch: dict[str, Any] = field(default_factory=dict)
    integration: dict[str, Any] = field(default_factory=dict)
    budgets: dict[str, Any] = field(default_factory=dict)
    verification: dict[str, Any] | None = None
    accepted_stages: list[str] = field(default_factory=list)
    quality_accepted: bool = False
    iteration: int = 0
    last_score: dict[str, Any] | None = None
    escalation: EscalationRecord | None = None
    escalation_history: list[str] = field(default_factory=list)
    outcome: dict[str, Any] | None = None

    @property
    def open_escalation(self) -> EscalationRecord | None:
        if self.escalation is None or self.escalation.resolved:
            return None
        return self.escalation

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": RUN_STATE_SCHEMA_VERSION,
            "run_id": self.run_id,
            "request_path": self.request_path,
            "request_digest": self.request_digest,
            "dry_run": self.dry_run,
            "phase": self.phase.value,
            "resume_phase": self.resume_phase.value if self.resume_phase else None,
            "started_at": isoformat(self.started_at),
            "updated_at": isoformat(self.updated_at),
            "features": dict(self.features),
            "dispatch": self.dispatch,
            "integration": self.integration,
            "budgets": self.budgets,
            "verification": self.verification,
            "accepted_stages": list(self.accepted_stages),
            "quality_accepted": self.quality_accepted,
            "iteration": self.iteration,
            "last_score": self.last_score,
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "escalation_history": list(self.escalation_history),
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RunState:
        version = payload.get("schema_version")
        if version != RUN_STATE_SCHEMA_VERSION:
            raise ValueError(f"unsupported run state schema version: {version!r}")
        escalation = payload.get("escalation")
        resume_phase = payload.get("resume_phase")
        return cls(
            run_id=str(payload["run_id"]),
            request_path=str(payload["request_path"]),
            request_digest=str(payload.get("request_digest", "")),
            dry_run=bool(payload.get("dry_run", False)),
            phase=RunPhase(str(payload.get("phase", RunPhase.BUILD.value))),
            resume_phase=RunPhase(str(resume_phase)) if resume_phase else None,
            started_at=parse_datetime(payload["started_at"]),
            updated_at=parse_datetime(payload.get("updated_at", payload["started_at"])),
            features=dict(payload.get("features", {})),
            dispatch=dict(payload.get("dispatch", {})),
            integration=dict(payload.get("integration", {})),
            budgets=dict(payload.get("budgets", {})),
            verification=payload.get("verification"),
            accepted_stages=list(payload.get("accepted_stages", ())),
            quality_accepted=bool(payload.get("quality_accepted", False)),
            iteration=int(payload.get("iteration", 0)),
            last_score=payload.get("last_score"),
            escalation=EscalationRecord.from_dict(escalation) if escalation else None,
            escalation_history=list(payload.get("escalation_history", ())),
            outcome=payload.get("outcome"),
        )


class RunStateStore:
    """One JSON snapshot per state directory, replaced atomically on every save."""

    def __init__(self, state_dir: str | Path) -> None:
        self._path = Path(state_dir) / RUN_STATE_FILENAME

    @property
    def path(self) -> Path:
        return self._path

    def save(self, state: RunState) -> None:
        state.updated_at = utc_now()
        write_json(self._path, state.to_dict())

    def load(self) -> RunState | None:
        payload = read_json(self._path)
        if payload is None:
            return None
        return RunState.from_dict(payload)

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


__all__ = ["RUN_STATE_FILENAME", "RunPhase", "RunState", "RunStateStore"]
