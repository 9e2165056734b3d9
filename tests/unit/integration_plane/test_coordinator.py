"""Unit tests for merge ordering, smoke rollback and targeted bugfixes."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from buildwave.constants import PHASE_TARGETED_BUGFIX
from buildwave.control_plane.budgets import BudgetState, RetryEscalationManager
from buildwave.domain.errors import BudgetExhausted, WorkerFailure
from buildwave.domain.models import Feature, StageOutcome, VerificationRun
from buildwave.integration_plane.backends import InMemoryIntegrationBackend
from buildwave.integration_plane.coordinator import FeatureDelivery, IntegrationCoordinator
from buildwave.planning.dependency_graph import build_dependency_graph
from buildwave.planning.waves import schedule_waves


def _plan():
    features = [
        Feature(name="A", roles=("backend",)),
        Feature(name="B", roles=("backend",)),
        Feature(name="C", roles=("backend",), dependencies=("A", "B")),
    ]
    return schedule_waves(build_dependency_graph(features))


class _Bugfixes:
    def __init__(self, *, fail: bool = False) -> None:
        self.calls: list[tuple[str, int, tuple[str, ...], str]] = []
        self.fail = fail

    async def __call__(
        self, subject: str, attempt: int, diagnostics: tuple[str, ...], base_ref: str
    ) -> str:
        self.calls.append((subject, attempt, diagnostics, base_ref))
        if self.fail:
            raise WorkerFailure(
                feature=subject, role="bugfixer", attempt=attempt, diagnostics="no fix found"
            )
        return f"fix-{subject}-{attempt}"


def _coordinator(backend: InMemoryIntegrationBackend, **kwargs: Any) -> IntegrationCoordinator:
    kwargs.setdefault("budgets", RetryEscalationManager())
    kwargs.setdefault("bugfix_runner", _Bugfixes())
    return IntegrationCoordinator(backend, _plan(), **kwargs)


@pytest.mark.asyncio
async def test_out_of_order_completion_merges_in_plan_order() -> None:
    backend = InMemoryIntegrationBackend()
    merged_callbacks: list[str] = []
    coordinator = _coordinator(backend, on_merged=merged_callbacks.append)
    await coordinator.start()

    assert await coordinator.submit(FeatureDelivery("B", ("ref-B",))) == ()
    assert coordinator.pending == ("B",)
    assert await coordinator.submit(FeatureDelivery("A", ("ref-A",))) == ("A", "B")
    assert await coordinator.submit(FeatureDelivery("C", ("ref-C1", "ref-C2"))) == ("C",)

    assert backend.merged_sources == ["ref-A", "ref-B", "ref-C1", "ref-C2"]
    assert coordinator.merged == ("A", "B", "C")
    assert merged_callbacks == ["A", "B", "C"]
    assert coordinator.last_good_head == backend.head()
    assert [entry.subject for entry in coordinator.journal] == ["A", "B", "C"]


@pytest.mark.asyncio
async def test_smoke_failure_rolls_back_and_bugfix_lands() -> None:
    backend = InMemoryIntegrationBackend()
    bugfixes = _Bugfixes()

    def smoke(head: str) -> VerificationRun:
        broken = backend.merged_sources[-1:] == ["ref-B"]
        return VerificationRun(
            stage="runtime",
            input_ref=head,
            result=StageOutcome.FAIL if broken else StageOutcome.PASS,
            diagnostics=("GET /cart returned 500",) if broken else (),
        )

    budgets = RetryEscalationManager()
    coordinator = _coordinator(backend, budgets=budgets, bugfix_runner=bugfixes, smoke_check=smoke)
    await coordinator.start()
    await coordinator.submit(FeatureDelivery("A", ("ref-A",)))
    head_after_a = backend.head()

    merged = await coordinator.submit(FeatureDelivery("B", ("ref-B",)))

    assert merged == ("B",)
    assert backend.merged_sources == ["ref-A", "ref-B", "fix-B-1"]
    assert backend.resets and backend.resets[0][1] == head_after_a
    assert bugfixes.calls == [("B", 1, ("GET /cart returned 500",), head_after_a)]
    kinds = [(entry.kind, entry.subject, entry.smoke_passed) for entry in coordinator.journal]
    assert kinds == [("feature", "A", True), ("feature", "B", False), ("bugfix", "B", True)]
    assert coordinator.journal[1].rolled_back
    assert budgets.budget(PHASE_TARGETED_BUGFIX, "B").state is BudgetState.SUCCEEDED


@pytest.mark.asyncio
async def test_exhausted_bugfix_budget_blocks_the_line() -> None:
    backend = InMemoryIntegrationBackend(conflicts={"ref-A"})
    bugfixes = _Bugfixes(fail=True)
    coordinator = _coordinator(backend, bugfix_runner=bugfixes)
    root = await coordinator.start()
    await coordinator.submit(FeatureDelivery("B", ("ref-B",)))

    with pytest.raises(BudgetExhausted) as error:
        await coordinator.submit(FeatureDelivery("A", ("ref-A",)))

    assert error.value.escalation.subject == "A"
    assert len(bugfixes.calls) == 3
    assert coordinator.blocked == "A"
    assert coordinator.merged == ()
    assert backend.head() == root
    assert "merge of 'ref-A' failed" in coordinator.journal[0].diagnostics

    assert await coordinator.skip("A") == ("B",)
    assert coordinator.is_settled("A")
    assert coordinator.blocked is None
    assert coordinator.waived == {"C": ("A",)}
    assert coordinator.snapshot()["waived"] == {"C": ["A"]}


@pytest.mark.asyncio
async def test_resume_blocked_retries_with_a_fresh_budget() -> None:
    backend = InMemoryIntegrationBackend(conflicts={"ref-A"})
    bugfixes = _Bugfixes(fail=True)
    budgets = RetryEscalationManager({PHASE_TARGETED_BUGFIX: 1})
    coordinator = _coordinator(backend, budgets=budgets, bugfix_runner=bugfixes)
    await coordinator.start()
    with pytest.raises(BudgetExhausted):
        await coordinator.submit(FeatureDelivery("A", ("ref-A",)))

    budgets.resolve(PHASE_TARGETED_BUGFIX, "A", "manual_fix_continue")
    backend.conflicts.clear()
    bugfixes.fail = False

    assert await coordinator.resume_blocked() == ()
    assert coordinator.merged == ("A",)
    assert backend.merged_sources == ["ref-A"]


@pytest.mark.asyncio
async def test_bugfix_lands_with_every_role_branch() -> None:
    backend = InMemoryIntegrationBackend()
    bugfixes = _Bugfixes()
    smoke_calls: list[str] = []

    def smoke(head: str) -> bool:
        smoke_calls.append(head)
        return len(smoke_calls) > 1

    coordinator = _coordinator(backend, bugfix_runner=bugfixes, smoke_check=smoke)
    root = await coordinator.start()

    assert await coordinator.submit(FeatureDelivery("A", ("ref-A-api", "ref-A-ui"))) == ("A",)

    assert backend.merged_sources == ["ref-A-api", "ref-A-ui", "fix-A-1"]
    assert bugfixes.calls == [("A", 1, ("smoke check failed",), root)]
    assert coordinator.journal[-1].sources == ("ref-A-api", "ref-A-ui", "fix-A-1")


@pytest.mark.asyncio
async def test_bugfix_attempt_numbers_continue_after_resume() -> None:
    backend = InMemoryIntegrationBackend()
    bugfixes = _Bugfixes()
    budgets = RetryEscalationManager({PHASE_TARGETED_BUGFIX: 1})
    coordinator = _coordinator(
        backend, budgets=budgets, bugfix_runner=bugfixes, smoke_check=lambda head: False
    )
    await coordinator.start()
    with pytest.raises(BudgetExhausted):
        await coordinator.submit(FeatureDelivery("A", ("ref-A",)))

    budgets.resolve(PHASE_TARGETED_BUGFIX, "A", "retry_with_guidance", "seed the catalog")
    with pytest.raises(BudgetExhausted):
        await coordinator.resume_blocked()

    assert [call[1] for call in bugfixes.calls] == [1, 2]
    fix_sources = [entry.sources[-1] for entry in coordinator.journal if entry.kind == "bugfix"]
    assert fix_sources == ["fix-A-1", "fix-A-2"]


@pytest.mark.asyncio
async def test_smoke_timeout_counts_as_failure() -> None:
    backend = InMemoryIntegrationBackend()
    calls: list[str] = []

    async def smoke(head: str) -> bool:
        calls.append(head)
        if len(calls) == 1:
            await asyncio.sleep(5)
        return True

    coordinator = _coordinator(backend, smoke_check=smoke, smoke_timeout_seconds=0.05)
    await coordinator.start()

    await coordinator.submit(FeatureDelivery("A", ("ref-A",)))

    assert "timed out" in coordinator.journal[0].diagnostics
    assert coordinator.journal[1].kind == "bugfix"
    assert coordinator.merged == ("A",)


@pytest.mark.asyncio
async def test_snapshot_restore_and_unverified_head_reset() -> None:
    backend = InMemoryIntegrationBackend()
    coordinator = _coordinator(backend)
    await coordinator.start()
    await coordinator.submit(FeatureDelivery("A", ("ref-A",)))
    await coordinator.submit(FeatureDelivery("C", ("ref-C",)))
    snapshot = coordinator.snapshot()
    good = backend.head()
    backend.merge("stray", message="unverified")

    restored = _coordinator(backend)
    restored.restore(snapshot)
    assert await restored.start() == good

    assert backend.head() == good
    assert restored.merged == ("A",)
    assert restored.pending == ("C",)
    assert await restored.submit(FeatureDelivery("B", ("ref-B",))) == ("B", "C")


@pytest.mark.asyncio
async def test_submissions_are_validated() -> None:
    coordinator = _coordinator(InMemoryIntegrationBackend())
    await coordinator.start()
    await coordinator.submit(FeatureDelivery("A", ("ref-A",)))

    with pytest.raises(KeyError):
        await coordinator.submit(FeatureDelivery("Z", ("ref-Z",)))
    with pytest.raises(ValueError, match="already integrated"):
        await coordinator.submit(FeatureDelivery("A", ("ref-A2",)))
    with pytest.raises(ValueError):
        FeatureDelivery("A", ())
