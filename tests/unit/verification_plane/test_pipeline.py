"""Unit tests for the staged verification pipeline."""

from __future__ import annotations

import asyncio
import sys

import pytest

from buildwave.constants import PHASE_INTERACTIVE_UI_TESTING, PHASE_RUNTIME_VERIFICATION
from buildwave.domain.models import StageOutcome
from buildwave.domain.roles import RoleId
from buildwave.verification_plane.pipeline import (
    DEFAULT_STAGE_IDS_IN_ORDER,
    PipelineResult,
    VerificationPipeline,
    stage_roles,
)
from buildwave.verification_plane.stages import (
    CallableStage,
    CommandStage,
    StaticStage,
    normalize_stage_output,
)


def _passing() -> dict[str, StaticStage]:
    return {name: StaticStage(name) for name in DEFAULT_STAGE_IDS_IN_ORDER}


@pytest.mark.asyncio
async def test_stages_run_in_fixed_order() -> None:
    order: list[str] = []

    def _stage(name: str) -> CallableStage:
        def check(ref: str) -> bool:
            order.append(name)
            return True

        return CallableStage(name, check)

    pipeline = VerificationPipeline(
        {name: _stage(name) for name in reversed(DEFAULT_STAGE_IDS_IN_ORDER)}
    )

    result = await pipeline.run("head-1")

    assert order == list(DEFAULT_STAGE_IDS_IN_ORDER)
    assert result.passed
    assert all(run.input_ref == "head-1" for run in result.runs)


@pytest.mark.asyncio
async def test_blocking_failure_skips_remaining_stages() -> None:
    stages = _passing()
    stages["interactive_ui"] = StaticStage(
        "interactive_ui",
        result=StageOutcome.FAIL,
        blocking=True,
        diagnostics=("checkout form cannot be submitted",),
    )

    result = await VerificationPipeline(stages).run("head-1")

    assert result.instant_fail
    assert result.blocked_at == "interactive_ui"
    assert result.skipped == ("visual", "quality_score")
    assert stages["visual"].calls == 0
    assert stages["quality_score"].calls == 0


@pytest.mark.asyncio
async def test_non_blocking_failures_accumulate() -> None:
    stages = _passing()
    stages["runtime"] = StaticStage("runtime", result=StageOutcome.FAIL, diagnostics=("500",))
    stages["visual"] = StaticStage("visual", result=StageOutcome.FAIL)

    result = await VerificationPipeline(stages).run("head-1")

    assert not result.passed
    assert not result.instant_fail
    assert [run.stage for run in result.failures] == ["runtime", "visual"]
    assert stages["quality_score"].calls == 1


@pytest.mark.asyncio
async def test_timeout_and_crash_are_non_blocking_failures() -> None:
    async def hang(ref: str) -> bool:
        await asyncio.sleep(5)
        return True

    def crash(ref: str) -> bool:
        raise RuntimeError("browser exited")

    pipeline = VerificationPipeline(
        {"runtime": CallableStage("runtime", hang), "visual": CallableStage("visual", crash)},
        timeout_seconds=0.05,
    )

    result = await pipeline.run("head-1")

    runtime = result.run_for("runtime")
    visual = result.run_for("visual")
    assert runtime is not None and "timed out" in runtime.diagnostics[0]
    assert visual is not None and visual.diagnostics == ("RuntimeError: browser exited",)
    assert not result.instant_fail
    assert result.run_for("data_integrity").result is StageOutcome.SKIPPED


@pytest.mark.asyncio
async def test_rerun_touches_only_the_affected_stage() -> None:
    stages = _passing()
    stages["runtime"] = StaticStage("runtime", result=StageOutcome.FAIL)
    pipeline = VerificationPipeline(stages)
    result = await pipeline.run("head-1")

    stages["runtime"].result = StageOutcome.PASS
    rerun = await pipeline.rerun("runtime", "head-2", attempt=2)
    updated = result.with_run(rerun)

    assert rerun.attempt == 2
    assert stages["runtime"].calls == 2
    assert stages["visual"].calls == 1
    assert updated.passed
    assert updated.integration_ref == "head-2"


@pytest.mark.asyncio
async def test_run_remaining_after_block_is_cleared() -> None:
    stages = _passing()
    stages["runtime"] = StaticStage("runtime", result=StageOutcome.FAIL, blocking=True)
    pipeline = VerificationPipeline(stages)
    blocked = await pipeline.run("head-1")

    stages["runtime"].blocking = False
    stages["runtime"].result = StageOutcome.PASS
    cleared = blocked.with_run(await pipeline.rerun("runtime", "head-1", attempt=2))
    completed = await pipeline.run_remaining(cleared)

    assert completed.passed
    assert completed.skipped == ()
    assert all(stage.calls == 1 for name, stage in stages.items() if name != "runtime")
    assert PipelineResult.from_dict(completed.to_dict()) == completed


@pytest.mark.asyncio
async def test_command_stage_reads_json_payload() -> None:
    script = (
        "import json, os, sys; "
        "print(json.dumps({'blocking': True, 'diagnostics': [os.environ['BUILDWAVE_STAGE']], "
        "'metrics': {'accessibility': 0.4, 'note': 'x'}})); sys.exit(1)"
    )
    stage = CommandStage("interactive_ui", [sys.executable, "-c", script], timeout_seconds=30)

    run = await stage.run("head-9")

    assert run.failed and run.blocking
    assert run.diagnostics == ("interactive_ui",)
    assert run.metrics == {"accessibility": 0.4}


def test_stage_output_normalization() -> None:
    mapped = normalize_stage_output(
        "visual", "h", {"result": "FAIL", "blocking": True, "diagnostics": "overlap"}
    )

    assert mapped.blocking and mapped.diagnostics == ("overlap",)
    with pytest.raises(TypeError):
        normalize_stage_output("visual", "h", 3.5)


def test_retry_phases_and_owners() -> None:
    assert VerificationPipeline.retry_phase("runtime") == PHASE_RUNTIME_VERIFICATION
    assert VerificationPipeline.retry_phase("interactive_ui") == PHASE_INTERACTIVE_UI_TESTING
    assert stage_roles("visual", (RoleId.BACKEND, RoleId.FRONTEND)) == (RoleId.FRONTEND,)
    assert stage_roles("data_integrity") == (RoleId.DATABASE,)
    with pytest.raises(ValueError, match="unknown verification stages"):
        VerificationPipeline({"lint": StaticStage("lint")})
