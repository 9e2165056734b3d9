"""
Retry budgets and escalation.

Each (phase, subject) pair owns an explicit state machine::

    idle -> attempting -> succeeded | retrying | escalated
    retrying -> attempting
    escalated -> (resolve) -> idle | succeeded

Every attempt consumes one unit of the budget. The failure that uses the last unit
moves the budget to ``escalated`` and produces an ``EscalationRecord`` holding every
prior attempt. An escalation is only ever left through ``resolve()`` with a human
decision; nothing resolves it automatically.

The manager owns all retry narration (``retry_attempt_failed``,
``retry_budget_escalated``, ``escalation_resolved``) via ``structlog``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

import structlog

from buildwave.constants import DEFAULT_PHASE_BUDGETS
from buildwave.domain.errors import BudgetExhausted, EscalationPending
from buildwave.domain.models import (
    AttemptLog,
    EscalationRecord,
    Resolution,
    ResolutionOption,
)


class BudgetState(StrEnum):
    IDLE = "idle"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    RETRYING = "retrying"
    ESCALATED = "escalated"


_BEGIN_FROM = frozenset({BudgetState.IDLE, BudgetState.RETRYING, BudgetState.SUCCEEDED})


@dataclass(slots=True)
class RetryBudget:
    """Attempt counter and state for one (phase, subject)."""

    phase: str
    subject: str
    max_attempts: int
    attempts_used: int = 0
    state: BudgetState = BudgetState.IDLE
    attempts_log: list[AttemptLog] = field(default_factory=list)
    escalation: EscalationRecord | None = None
    guidance: str | None = None

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if not 0 <= self.attempts_used <= self.max_attempts:
            raise ValueError("attempts_used must be within [0, max_attempts]")
        self.state = BudgetState(self.state)

    @property
    def remaining(self) -> int:
        return self.max_attempts - self.attempts_used

    @property
    def exhausted(self) -> bool:
        return self.state is BudgetState.ESCALATED

    def begin(self) -> int:
        """Start the next attempt and return its 1-based number."""
        if self.state is BudgetState.ESCALATED:
            raise EscalationPending(
                f"{self.phase}/{self.subject} is escalated and needs a resolution"
            )
        if self.state not in _BEGIN_FROM:
            raise ValueError(f"cannot begin an attempt from state {self.state.value}")
        if self.attempts_used >= self.max_attempts:
            raise ValueError(f"{self.phase}/{self.subject} has no attempts left")
        self.attempts_used += 1
        self.state = BudgetState.ATTEMPTING
        return self.attempts_used

    def succeed(self, diagnostics: str = "") -> None:
        self._require(BudgetState.ATTEMPTING)
        self.attempts_log.append(
            AttemptLog(attempt=self.attempts_used, succeeded=True, diagnostics=diagnostics)
        )
        self.state = BudgetState.SUCCEEDED

    def fail(self, diagnostics: str) -> EscalationRecord | None:
        """Record a failed attempt; returns the escalation when the budget is spent."""
        self._require(BudgetState.ATTEMPTING)
        self.attempts_log.append(
            AttemptLog(attempt=self.attempts_used, succeeded=False, diagnostics=diagnostics)
        )
        if self.attempts_used < self.max_attempts:
            self.state = BudgetState.RETRYING
            return None
        self.state = BudgetState.ESCALATED
        self.escalation = EscalationRecord(
            phase=self.phase,
            subject=self.subject,
            attempts_log=tuple(self.attempts_log),
            last_diagnostics=diagnostics,
        )
        return self.escalation

    def resolve(self, resolution: Resolution) -> EscalationRecord:
        if self.state is not BudgetState.ESCALATED or self.escalation is None:
            raise ValueError(f"{self.phase}/{self.subject} has no open escalation")
        resolved = self.escalation.resolve(resolution)
        self.escalation = resolved
        if resolution.option is ResolutionOption.ABORT:
            return resolved
        if resolution.option is ResolutionOption.ACCEPT_AND_SKIP:
            self.state = BudgetState.SUCCEEDED
        else:
            self.state = BudgetState.IDLE
            self.attempts_used = 0
            self.guidance = resolution.guidance
        return resolved

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "subject": self.subject,
            "max_attempts": self.max_attempts,
            "attempts_used": self.attempts_used,
            "state": self.state.value,
            "attempts_log": [entry.to_dict() for entry in self.attempts_log],
            "escalation": self.escalation.to_dict() if self.escalation else None,
            "guidance": self.guidance,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> RetryBudget:
        escalation = payload.get("escalation")
        return cls(
            phase=str(payload["phase"]),
            subject=str(payload["subject"]),
            max_attempts=int(payload["max_attempts"]),
            attempts_used=int(payload.get("attempts_used", 0)),
            state=BudgetState(str(payload.get("state", BudgetState.IDLE.value))),
            attempts_log=[AttemptLog.from_dict(item) for item in payload.get("attempts_log", ())],
            escalation=EscalationRecord.from_dict(escalation) if escalation else None,
            guidance=payload.get("guidance"),
        )

    def _require(self, expected: BudgetState) -> None:
        if self.state is not expected:
            raise ValueError(
                f"{self.phase}/{self.subject} expected state {expected.value}, "
                f"found {self.state.value}"
            )


class RetryEscalationManager:
    """Owns every retry budget of a run, keyed by (phase, subject)."""

    def __init__(
        self,
        budgets: Mapping[str, int] | None = None,
        *,
        logger: Any | None = None,
    ) -> None:
        limits = dict(DEFAULT_PHASE_BUDGETS)
        limits.update(budgets or {})
        for phase, limit in limits.items():
            if limit <= 0:
                raise ValueError(f"budget for {phase!r} must be > 0")
        self._limits = limits
        self._budgets: dict[tuple[str, str], RetryBudget] = {}
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def limits(self) -> Mapping[str, int]:
        return dict(self._limits)

    def budget(self, phase: str, subject: str) -> RetryBudget:
        key = (phase, subject)
        budget = self._budgets.get(key)
        if budget is None:
            if phase not in self._limits:
                raise KeyError(f"unknown retry phase {phase!r}")
            budget = RetryBudget(phase=phase, subject=subject, max_attempts=self._limits[phase])
            self._budgets[key] = budget
        return budget

    def begin_attempt(self, phase: str, subject: str) -> int:
        return self.budget(phase, subject).begin()

    def record_success(self, phase: str, subject: str, diagnostics: str = "") -> None:
        self.budget(phase, subject).succeed(diagnostics)

    def record_failure(self, phase: str, subject: str, diagnostics: str) -> RetryBudget:
        """Record a failed attempt; raises ``BudgetExhausted`` once the budget is spent."""
        budget = self.budget(phase, subject)
        escalation = budget.fail(diagnostics)
        if escalation is None:
            self._logger.info(
                "retry_attempt_failed",
                phase=phase,
                subject=subject,
                attempt=budget.attempts_used,
                max_attempts=budget.max_attempts,
                diagnostics=diagnostics,
            )
            return budget
        self._logger.warning(
            "retry_budget_escalated",
            phase=phase,
            subject=subject,
            attempts=budget.attempts_used,
            last_error=diagnostics,
        )
        raise BudgetExhausted(escalation)

    def guidance(self, phase: str, subject: str) -> str | None:
        return self.budget(phase, subject).guidance

    def open_escalations(self) -> list[EscalationRecord]:
        return [
            budget.escalation
            for budget in self._budgets.values()
            if budget.escalation is not None and not budget.escalation.resolved
        ]

    def resolve(
        self,
        phase: str,
        subject: str,
        option: ResolutionOption | str,
        guidance: str | None = None,
    ) -> EscalationRecord:
        resolution = Resolution(option=ResolutionOption(option), guidance=guidance)
        resolved = self.budget(phase, subject).resolve(resolution)
        self._logger.info(
            "escalation_resolved",
            phase=phase,
            subject=subject,
            option=resolution.option.value,
            guidance=guidance,
        )
        return resolved

    def reset(self) -> None:
        """Fresh top-level run: every counter starts from zero."""
        self._budgets.clear()

    def state(self) -> dict[str, Any]:
        return {
            "limits": dict(sorted(self._limits.items())),
            "budgets": [
                budget.to_dict()
                for _, budget in sorted(self._budgets.items(), key=lambda item: item[0])
            ],
        }

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        self._budgets = {}
        for item in snapshot.get("budgets", ()):
            budget = RetryBudget.from_dict(item)
            self._budgets[(budget.phase, budget.subject)] = budget


__all__ = ["BudgetState", "RetryBudget", "RetryEscalationManager"]
