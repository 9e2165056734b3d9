"""Unit tests for retry budgets and escalation handling."""

from __future__ import annotations

from typing import Any

import pytest

from buildwave.constants import PHASE_FEATURE_BUILD, PHASE_RUNTIME_VERIFICATION
from buildwave.control_plane.budgets import BudgetState, RetryBudget, RetryEscalationManager
from buildwave.domain.errors import BudgetExhausted, EscalationPending
from buildwave.domain.models import ResolutionOption


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def info(self, event: str, **fields: Any) -> None:
        self.events.append(("info", event, fields))

    def warning(self, event: str, **fields: Any) -> None:
        self.events.append(("warning", event, fields))


def _fail(manager: RetryEscalationManager, phase: str, subject: str, message: str) -> None:
    manager.begin_attempt(phase, subject)
    manager.record_failure(phase, subject, message)


def test_budget_of_five_escalates_only_on_the_fifth_failure() -> None:
    logger = _RecordingLogger()
    manager = RetryEscalationManager({PHASE_RUNTIME_VERIFICATION: 5}, logger=logger)

    for attempt in range(1, 4):
        _fail(manager, PHASE_RUNTIME_VERIFICATION, "runtime", f"crash {attempt}")
    budget = manager.budget(PHASE_RUNTIME_VERIFICATION, "runtime")
    assert budget.state is BudgetState.RETRYING
    assert budget.remaining == 2
    assert manager.open_escalations() == []

    _fail(manager, PHASE_RUNTIME_VERIFICATION, "runtime", "crash 4")
    manager.begin_attempt(PHASE_RUNTIME_VERIFICATION, "runtime")
    with pytest.raises(BudgetExhausted) as error:
        manager.record_failure(PHASE_RUNTIME_VERIFICATION, "runtime", "crash 5")

    escalation = error.value.escalation
    assert escalation.phase == PHASE_RUNTIME_VERIFICATION
    assert [entry.attempt for entry in escalation.attempts_log] == [1, 2, 3, 4, 5]
    assert escalation.last_diagnostics == "crash 5"
    assert set(escalation.resolution_options) == set(ResolutionOption)
    assert [event for _, event, _ in logger.events].count("retry_attempt_failed") == 4
    assert logger.events[-1][:2] == ("warning", "retry_budget_escalated")


def test_escalated_budget_refuses_new_attempts() -> None:
    manager = RetryEscalationManager({PHASE_FEATURE_BUILD: 1}, logger=_RecordingLogger())

    with pytest.raises(BudgetExhausted):
        _fail(manager, PHASE_FEATURE_BUILD, "api:backend", "boom")

    with pytest.raises(EscalationPending):
        manager.begin_attempt(PHASE_FEATURE_BUILD, "api:backend")


def test_retry_with_guidance_resets_the_counter() -> None:
    manager = RetryEscalationManager({PHASE_FEATURE_BUILD: 2}, logger=_RecordingLogger())
    _fail(manager, PHASE_FEATURE_BUILD, "api:backend", "one")
    with pytest.raises(BudgetExhausted):
        _fail(manager, PHASE_FEATURE_BUILD, "api:backend", "two")

    resolved = manager.resolve(
        PHASE_FEATURE_BUILD, "api:backend", ResolutionOption.RETRY_WITH_GUIDANCE, "use v2 API"
    )

    budget = manager.budget(PHASE_FEATURE_BUILD, "api:backend")
    assert resolved.resolution is not None
    assert budget.state is BudgetState.IDLE
    assert budget.remaining == 2
    assert manager.guidance(PHASE_FEATURE_BUILD, "api:backend") == "use v2 API"
    assert manager.begin_attempt(PHASE_FEATURE_BUILD, "api:backend") == 1


def test_accept_and_skip_marks_succeeded_and_abort_stays_escalated() -> None:
    manager = RetryEscalationManager({PHASE_FEATURE_BUILD: 1}, logger=_RecordingLogger())
    for subject in ("a:backend", "b:backend"):
        with pytest.raises(BudgetExhausted):
            _fail(manager, PHASE_FEATURE_BUILD, subject, "boom")

    manager.resolve(PHASE_FEATURE_BUILD, "a:backend", "accept_and_skip")
    manager.resolve(PHASE_FEATURE_BUILD, "b:backend", ResolutionOption.ABORT)

    assert manager.budget(PHASE_FEATURE_BUILD, "a:backend").state is BudgetState.SUCCEEDED
    assert manager.budget(PHASE_FEATURE_BUILD, "b:backend").state is BudgetState.ESCALATED
    assert manager.open_escalations() == []
    with pytest.raises(ValueError, match="already resolved"):
        manager.resolve(PHASE_FEATURE_BUILD, "b:backend", ResolutionOption.ABORT)


def test_resolving_without_escalation_is_rejected() -> None:
    manager = RetryEscalationManager(logger=_RecordingLogger())

    with pytest.raises(ValueError, match="no open escalation"):
        manager.resolve(PHASE_FEATURE_BUILD, "x:backend", ResolutionOption.ABORT)


def test_budgets_are_independent_per_subject_and_reset_per_run() -> None:
    manager = RetryEscalationManager({PHASE_FEATURE_BUILD: 3}, logger=_RecordingLogger())
    _fail(manager, PHASE_FEATURE_BUILD, "a:backend", "x")
    _fail(manager, PHASE_FEATURE_BUILD, "a:backend", "x")

    assert manager.budget(PHASE_FEATURE_BUILD, "b:backend").remaining == 3
    manager.reset()
    assert manager.budget(PHASE_FEATURE_BUILD, "a:backend").remaining == 3


def test_state_snapshot_restores_counters_and_escalations() -> None:
    manager = RetryEscalationManager({PHASE_FEATURE_BUILD: 2}, logger=_RecordingLogger())
    _fail(manager, PHASE_FEATURE_BUILD, "a:backend", "x")
    with pytest.raises(BudgetExhausted):
        _fail(manager, PHASE_FEATURE_BUILD, "b:backend", "y")
        _fail(manager, PHASE_FEATURE_BUILD, "b:backend", "z")

    restored = RetryEscalationManager({PHASE_FEATURE_BUILD: 2}, logger=_RecordingLogger())
    restored.restore(manager.state())

    assert restored.budget(PHASE_FEATURE_BUILD, "a:backend").attempts_used == 1
    assert len(restored.open_escalations()) == 1
    assert restored.open_escalations()[0].subject == "b:backend"


def test_budget_validation() -> None:
    with pytest.raises(ValueError):
        RetryBudget(phase="p", subject="s", max_attempts=0)
    with pytest.raises(ValueError):
        RetryEscalationManager({PHASE_FEATURE_BUILD: 0})
    with pytest.raises(KeyError):
        RetryEscalationManager().budget("nonexistent", "s")
