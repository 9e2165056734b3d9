"""
Worker adapters.

Workers are external; the dispatcher only sees ``WorkItem`` in and ``WorkerResult`` out
and never interprets what was built.

``CommandWorker`` contract
- Environment: ``BUILDWAVE_FEATURE``, ``BUILDWAVE_ROLE``, ``BUILDWAVE_BRANCH``,
  ``BUILDWAVE_ATTEMPT``, ``BUILDWAVE_PRIOR_DIAGNOSTICS`` (JSON list), plus
  ``BUILDWAVE_SCOPE``, ``BUILDWAVE_BASE_REF``, ``BUILDWAVE_GUIDANCE`` and
  ``BUILDWAVE_HINTS`` when present.
- stdout may end with a JSON object ``{"status", "branch_ref", "diagnostics"}``.
  Without one, exit code 0 is a success on the item's own branch.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Protocol, TypeAlias, runtime_checkable

from buildwave.domain.models import WorkerResult, WorkItem
from buildwave.domain.roles import RoleId, parse_role
from buildwave.utils.process import run_command

WorkerCallable: TypeAlias = Callable[[WorkItem], "WorkerResult | Awaitable[WorkerResult]"]


@runtime_checkable
class Worker(Protocol):
    async def run(self, item: WorkItem) -> WorkerResult: ...


class CallableWorker:
    """Wraps a sync or async callable; used by tests and embedding applications."""

    def __init__(self, func: WorkerCallable) -> None:
        self._func = func

    async def run(self, item: WorkItem) -> WorkerResult:
        candidate = self._func(item)
        result = await candidate if inspect.isawaitable(candidate) else candidate
        if not isinstance(result, WorkerResult):
            raise TypeError(f"worker returned {type(result).__name__}, expected WorkerResult")
        return result


class DryRunWorker:
    """Always succeeds on the item's branch without doing anything."""

    async def run(self, item: WorkItem) -> WorkerResult:
        return WorkerResult.success(item.branch_name, diagnostics="dry run")


class CommandWorker:
    def __init__(
        self,
        command: str | Sequence[str],
        *,
        timeout_seconds: float | None = None,
        cwd: str | None = None,
    ) -> None:
        self._command = command
        self._timeout_seconds = timeout_seconds
        self._cwd = cwd

    async def run(self, item: WorkItem) -> WorkerResult:
        result = await run_command(
            self._command,
            timeout_seconds=self._timeout_seconds,
            cwd=self._cwd,
            env=worker_environment(item),
        )
        payload = result.json_payload()
        if "status" in payload:
            parsed = WorkerResult.from_dict(payload)
            if parsed.ok and not result.ok:
                return WorkerResult.failure(result.describe_failure())
            return parsed
        if result.ok:
            return WorkerResult.success(item.branch_name)
        return WorkerResult.failure(result.describe_failure())


def worker_environment(item: WorkItem) -> dict[str, str]:
    env = {
        "BUILDWAVE_FEATURE": item.feature,
        "BUILDWAVE_ROLE": item.role.value,
        "BUILDWAVE_BRANCH": item.branch_name,
        "BUILDWAVE_ATTEMPT": str(item.attempt_count),
        "BUILDWAVE_PRIOR_DIAGNOSTICS": json.dumps(list(item.prior_diagnostics)),
        "BUILDWAVE_SCOPE": item.scope.value,
    }
    if item.base_ref is not None:
        env["BUILDWAVE_BASE_REF"] = item.base_ref
    if item.guidance:
        env["BUILDWAVE_GUIDANCE"] = item.guidance
    if item.hints:
        env["BUILDWAVE_HINTS"] = json.dumps(list(item.hints))
    return env


class WorkerRouter:
    """Role -> worker lookup with an optional fallback for unmapped roles."""

    def __init__(
        self,
        workers: Mapping[RoleId | str, Worker] | None = None,
        *,
        default: Worker | None = None,
    ) -> None:
        self._workers = {parse_role(role): worker for role, worker in (workers or {}).items()}
        self._default = default

    def for_role(self, role: RoleId) -> Worker:
        worker = self._workers.get(role, self._default)
        if worker is None:
            raise LookupError(f"no worker configured for role {role.value!r}")
        return worker

    def missing(self, roles: Sequence[RoleId]) -> tuple[RoleId, ...]:
        if self._default is not None:
            return ()
        return tuple(role for role in dict.fromkeys(roles) if role not in self._workers)


__all__ = [
    "CallableWorker",
    "CommandWorker",
    "DryRunWorker",
    "Worker",
    "WorkerCallable",
    "WorkerRouter",
    "worker_environment",
]
