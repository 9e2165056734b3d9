"""End-to-end runs through the controller with in-memory collaborators."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from buildwave.control_plane.budgets import RetryEscalationManager
from buildwave.control_plane.controller import RunController
from buildwave.control_plane.run_state import RunPhase, RunStateStore
from buildwave.domain.errors import BuildwaveError, ValidationError
from buildwave.domain.models import (
    Decision,
    ResolutionOption,
    RunStatus,
    StageOutcome,
    WorkerResult,
    WorkItem,
)
from buildwave.integration_plane import InMemoryIntegrationBackend
from buildwave.knowledge_plane import KnowledgeBase
from buildwave.knowledge_plane.learning_store import InMemoryLearningStore
from buildwave.planning.request import WorkRequest, parse_work_request
from buildwave.synthesis_plane import CallableWorker, WorkerRouter
from buildwave.verification_plane import CallableStage, StaticStage
from buildwave.verification_plane.pipeline import DEFAULT_STAGE_IDS_IN_ORDER

pytestmark = pytest.mark.integration


def _request() -> WorkRequest:
    return parse_work_request(
        {
            "name": "storefront",
            "features": [
                {"name": "A", "description": "catalog api", "roles": ["backend"]},
                {"name": "B", "description": "cart page", "roles": ["frontend"]},
                {
                    "name": "C",
                    "description": "checkout flow tests",
                    "roles": ["tester"],
                    "dependencies": ["A", "B"],
                },
            ],
        }
    )


def _ok(item: WorkItem) -> WorkerResult:
    return WorkerResult.success(item.branch_name)


def _controller(
    tmp_path: Path,
    *,
    worker: Any = _ok,
    stages: dict[str, Any] | None = None,
    backend: InMemoryIntegrationBackend | None = None,
    knowledge: KnowledgeBase | None = None,
    budgets: dict[str, int] | None = None,
    request: WorkRequest | None = None,
    **kwargs: Any,
) -> RunController:
    return RunController(
        request or _request(),
        backend=backend or InMemoryIntegrationBackend(),
        workers=WorkerRouter(default=CallableWorker(worker)),
        stages=stages or {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER},
        knowledge=knowledge or KnowledgeBase(InMemoryLearningStore()),
        budgets=RetryEscalationManager(budgets),
        state_store=RunStateStore(tmp_path / "state"),
        run_id="run-20260101T000000Z-abc123",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_clean_run_ships_and_records_outcome(tmp_path: Path) -> None:
    knowledge = KnowledgeBase(InMemoryLearningStore())
    controller = _controller(tmp_path, knowledge=knowledge)

    result = await controller.run()

    assert result.status is RunStatus.SHIPPED
    assert result.exit_code == 0
    assert result.merged == ("A", "B", "C")
    assert result.score is not None and result.score.overall == pytest.approx(1.0)
    persisted = RunStateStore(tmp_path / "state").load()
    assert persisted is not None
    assert persisted.phase is RunPhase.COMPLETED
    assert persisted.features == {"A": "merged", "B": "merged", "C": "merged"}
    [outcome] = knowledge.runs()
    assert outcome.status is RunStatus.SHIPPED
    assert list(outcome.role_results["tester"]) == [True]


@pytest.mark.asyncio
async def test_exhausted_build_escalates_then_resumes_with_guidance(tmp_path: Path) -> None:
    backend = InMemoryIntegrationBackend()
    seen: list[str | None] = []

    def flaky_cart(item: WorkItem) -> WorkerResult:
        if item.feature != "B":
            return WorkerResult.success(item.branch_name)
        seen.append(item.guidance)
        if item.guidance is None:
            return WorkerResult.failure("cart total is off by one cent")
        return WorkerResult.success(item.branch_name)

    first = _controller(tmp_path, worker=flaky_cart, backend=backend)
    escalated = await first.run()

    assert escalated.status is RunStatus.ESCALATED
    assert escalated.exit_code == 1
    assert escalated.escalation is not None
    assert (escalated.escalation.phase, escalated.escalation.subject) == (
        "feature-build",
        "B:frontend",
    )
    assert len(escalated.escalation.attempts_log) == 3
    assert "B" not in escalated.merged and "C" not in escalated.merged

    # A new process picks the run up from the persisted snapshot.
    state = RunStateStore(tmp_path / "state").load()
    assert state is not None and state.phase is RunPhase.ESCALATED
    second = _controller(tmp_path, worker=flaky_cart, backend=backend)
    second.restore(state)
    result = await second.resume(ResolutionOption.RETRY_WITH_GUIDANCE, "use decimal totals")

    assert result.status is RunStatus.SHIPPED
    assert result.merged == ("A", "B", "C")
    assert seen == [None, None, None, "use decimal totals"]


@pytest.mark.asyncio
async def test_accept_and_skip_settles_feature_without_merging(tmp_path: Path) -> None:
    def broken_cart(item: WorkItem) -> WorkerResult:
        if item.feature == "B":
            return WorkerResult.failure("build failed")
        return WorkerResult.success(item.branch_name)

    controller = _controller(tmp_path, worker=broken_cart)
    assert (await controller.run()).status is RunStatus.ESCALATED

    result = await controller.resume("accept_and_skip")

    assert result.status is RunStatus.SHIPPED
    assert result.merged == ("A", "C")
    assert controller.coordinator.is_settled("B")
    assert "C integrated without skipped dependency B" in result.notes
    assert controller.coordinator.waived == {"C": ("B",)}


@pytest.mark.asyncio
async def test_abort_records_aborted_run(tmp_path: Path) -> None:
    knowledge = KnowledgeBase(InMemoryLearningStore())

    def always_fails(item: WorkItem) -> WorkerResult:
        return WorkerResult.failure("compiler crashed")

    controller = _controller(tmp_path, worker=always_fails, knowledge=knowledge)
    await controller.run()

    result = await controller.resume(ResolutionOption.ABORT)

    assert result.status is RunStatus.ABORTED
    assert controller.state.phase is RunPhase.ABORTED
    assert [run.status for run in knowledge.runs()] == [RunStatus.ABORTED]
    with pytest.raises(BuildwaveError, match="no open escalation"):
        await controller.resume(ResolutionOption.ABORT)


@pytest.mark.asyncio
async def test_failing_stage_is_repaired_by_targeted_bugfix(tmp_path: Path) -> None:
    backend = InMemoryIntegrationBackend()

    def runtime(ref: str) -> dict[str, Any]:
        fixed = any(source.startswith("fix/") for source in backend.merged_sources)
        if fixed:
            return {"result": "pass"}
        return {"result": "fail", "diagnostics": ["GET /cart returned 500"]}

    stages: dict[str, Any] = {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER}
    stages["runtime"] = CallableStage("runtime", runtime)
    controller = _controller(tmp_path, stages=stages, backend=backend, smoke_stage=None)

    result = await controller.run()

    assert result.status is RunStatus.SHIPPED
    verification = controller.verification
    assert verification is not None
    runtime_run = verification.run_for("runtime")
    assert runtime_run is not None
    assert runtime_run.result is StageOutcome.PASS
    assert runtime_run.attempt == 2
    budget = controller.budgets.budget("runtime-verification", "verification:runtime")
    assert [entry.succeeded for entry in budget.attempts_log] == [True]


@pytest.mark.asyncio
async def test_spent_quality_budget_ships_with_notes(tmp_path: Path) -> None:
    mediocre = {
        name: 0.65
        for name in (
            "functionality",
            "test_coverage",
            "ui_coverage",
            "visual_correctness",
            "data_flow_integrity",
            "naming_style",
            "integration_correctness",
            "code_quality",
            "schema_safety",
            "accessibility",
        )
    }
    stages: dict[str, Any] = {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER}
    stages["quality_score"] = StaticStage("quality_score", metrics=mediocre)
    knowledge = KnowledgeBase(InMemoryLearningStore())
    controller = _controller(
        tmp_path,
        stages=stages,
        knowledge=knowledge,
        budgets={"quality-score-fix": 2},
    )

    result = await controller.run()

    assert result.status is RunStatus.SHIPPED_WITH_NOTES
    assert result.exit_code == 0
    assert result.score is not None
    assert result.score.decision is Decision.SHIP_WITH_NOTES
    assert result.iterations == 2
    assert any(note.startswith("code_quality: ") for note in result.notes)
    assert stages["quality_score"].calls == 2
    assert knowledge.patterns()


@pytest.mark.asyncio
async def test_resume_rejects_changed_request(tmp_path: Path) -> None:
    controller = _controller(tmp_path)
    await controller.run()
    state = controller.state
    state.request_digest = "0" * 64

    with pytest.raises(ValidationError, match="changed since run"):
        _controller(tmp_path).restore(state)


def _two_role_request() -> WorkRequest:
    return parse_work_request(
        {
            "name": "storefront",
            "features": [
                {"name": "A", "description": "catalog", "roles": ["backend", "frontend"]},
            ],
        }
    )


@pytest.mark.asyncio
async def test_smoke_bugfix_keeps_every_role_branch(tmp_path: Path) -> None:
    backend = InMemoryIntegrationBackend()
    calls: list[str] = []

    def runtime(ref: str) -> dict[str, Any]:
        calls.append(ref)
        if len(calls) == 1:
            return {"result": "fail", "diagnostics": ["GET /catalog returned 500"]}
        return {"result": "pass"}

    stages: dict[str, Any] = {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER}
    stages["runtime"] = CallableStage("runtime", runtime)
    controller = _controller(
        tmp_path, backend=backend, stages=stages, request=_two_role_request()
    )

    result = await controller.run()

    assert result.status is RunStatus.SHIPPED
    assert {"work/a/backend/a1", "work/a/frontend/a1"} <= set(backend.merged_sources)
    assert backend.merged_sources[-1] == "fix/a/bugfixer/a1"
    assert backend.branches["fix/a/bugfixer/a1"] == "mem-root"


@pytest.mark.asyncio
async def test_bugfix_branches_stay_distinct_across_resume(tmp_path: Path) -> None:
    backend = InMemoryIntegrationBackend()

    def runtime(ref: str) -> dict[str, Any]:
        return {"result": "fail", "diagnostics": ["GET /catalog returned 500"]}

    stages: dict[str, Any] = {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER}
    stages["runtime"] = CallableStage("runtime", runtime)
    controller = _controller(
        tmp_path,
        backend=backend,
        stages=stages,
        request=_two_role_request(),
        budgets={"targeted-bugfix": 1},
    )
    assert (await controller.run()).status is RunStatus.ESCALATED

    result = await controller.resume(ResolutionOption.RETRY_WITH_GUIDANCE, "check the seed data")

    assert result.status is RunStatus.ESCALATED
    fixes = sorted(name for name in backend.branches if name.startswith("fix/"))
    assert fixes == ["fix/a/bugfixer/a1", "fix/a/bugfixer/a2"]
