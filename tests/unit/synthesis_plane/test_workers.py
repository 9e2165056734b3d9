"""Unit tests for worker adapters."""

from __future__ import annotations

import json
import sys

import pytest

from buildwave.domain.models import WorkerResult, WorkItem
from buildwave.domain.roles import RoleId
from buildwave.synthesis_plane.workers import (
    CallableWorker,
    CommandWorker,
    WorkerRouter,
    worker_environment,
)

_ITEM = WorkItem(
    feature="cart",
    role="backend",
    branch_name="work/cart/backend/a2",
    attempt_count=2,
    prior_diagnostics=("boom",),
    base_ref="integration",
)


def test_environment_carries_item_fields() -> None:
    env = worker_environment(_ITEM)

    assert env["BUILDWAVE_FEATURE"] == "cart"
    assert env["BUILDWAVE_BRANCH"] == "work/cart/backend/a2"
    assert env["BUILDWAVE_ATTEMPT"] == "2"
    assert json.loads(env["BUILDWAVE_PRIOR_DIAGNOSTICS"]) == ["boom"]
    assert env["BUILDWAVE_BASE_REF"] == "integration"
    assert "BUILDWAVE_GUIDANCE" not in env


@pytest.mark.asyncio
async def test_command_worker_reads_json_result() -> None:
    script = (
        "import json, os; "
        "ref = os.environ['BUILDWAVE_BRANCH'] + '@1'; "
        "print(json.dumps({'status': 'success', 'branch_ref': ref}))"
    )
    worker = CommandWorker([sys.executable, "-c", script], timeout_seconds=30)

    result = await worker.run(_ITEM)

    assert result.ok
    assert result.branch_ref == "work/cart/backend/a2@1"


@pytest.mark.asyncio
async def test_command_worker_exit_code_without_payload() -> None:
    ok = CommandWorker([sys.executable, "-c", "pass"], timeout_seconds=30)
    failing = CommandWorker(
        [sys.executable, "-c", "import sys; sys.stderr.write('lint failed'); sys.exit(2)"],
        timeout_seconds=30,
    )

    assert (await ok.run(_ITEM)).branch_ref == "work/cart/backend/a2"
    failed = await failing.run(_ITEM)
    assert not failed.ok
    assert failed.diagnostics == "exit code 2: lint failed"


@pytest.mark.asyncio
async def test_callable_worker_rejects_wrong_return_type() -> None:
    worker = CallableWorker(lambda item: "done")

    with pytest.raises(TypeError):
        await worker.run(_ITEM)


def test_router_reports_missing_roles() -> None:
    router = WorkerRouter({"backend": CallableWorker(lambda item: WorkerResult.failure("x"))})

    assert router.missing((RoleId.BACKEND, RoleId.TESTER)) == (RoleId.TESTER,)
    with pytest.raises(LookupError):
        router.for_role(RoleId.TESTER)
