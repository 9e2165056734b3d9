"""
Worker dispatcher.

Purpose
- Turn a wave of features into work items, one per (feature, role), and hand them to
  workers concurrently.

Functional requirements
- Every feature of a wave is issued in one batch of asyncio tasks; nothing in a wave is
  serialized unless a feature declares ``role_order``, in which case its roles run in
  that order and each receives the previous role's branch as its base.
- Isolation branches are named deterministically from feature, role and attempt.
- Failures are retried under the ``feature-build`` budget of that (feature, role) with
  the prior diagnostics attached. Exhaustion suspends the dispatcher: in-flight items
  finish, no new items are issued, and ``BudgetExhausted`` propagates.
- Patterns with enough confidence are attached to each item as hints.
- Issue/completion events are recorded so the batch behaviour is observable.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, TypeAlias

import structlog

from buildwave.constants import (
    DEFAULT_FIX_BRANCH_PREFIX,
    DEFAULT_WORK_BRANCH_PREFIX,
    PHASE_FEATURE_BUILD,
)
from buildwave.domain.errors import BudgetExhausted, EscalationPending, WorkerFailure
from buildwave.domain.ids import branch_name
from buildwave.domain.models import (
    CompletedWork,
    Feature,
    FeatureStatus,
    WorkerResult,
    WorkItem,
    WorkScope,
    isoformat,
    utc_now,
)
from buildwave.domain.roles import RoleId
from buildwave.integration_plane.backends import IntegrationBackend
from buildwave.integration_plane.coordinator import FeatureDelivery
from buildwave.synthesis_plane.workers import WorkerRouter
from buildwave.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    SuspensionGate,
    run_with_timeout,
)

if TYPE_CHECKING:
    from buildwave.control_plane.budgets import RetryEscalationManager
    from buildwave.knowledge_plane.knowledge_base import KnowledgeBase

EventKind: TypeAlias = Literal["issued", "completed", "failed"]
DeliveryHandler: TypeAlias = Callable[[FeatureDelivery], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class DispatchEvent:
    kind: EventKind
    feature: str
    role: RoleId
    attempt: int
    branch: str
    scope: WorkScope
    at: datetime = field(default_factory=utc_now)
    monotonic: float = field(default_factory=time.monotonic)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "feature": self.feature,
            "role": self.role.value,
            "attempt": self.attempt,
            "branch": self.branch,
            "scope": self.scope.value,
            "at": isoformat(self.at),
        }


def build_subject(feature: str, role: RoleId) -> str:
    """Budget subject for one (feature, role) work item."""
    return f"{feature}:{role.value}"


class WorkerDispatcher:
    def __init__(
        self,
        workers: WorkerRouter,
        budgets: RetryEscalationManager,
        *,
        backend: IntegrationBackend | None = None,
        knowledge: KnowledgeBase | None = None,
        max_concurrency: int = 0,
        timeout_seconds: float = 1800.0,
        work_branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        fix_branch_prefix: str = DEFAULT_FIX_BRANCH_PREFIX,
        gate: SuspensionGate | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        if max_concurrency < 0:
            raise ValueError("max_concurrency must be >= 0")
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self._workers = workers
        self._budgets = budgets
        self._backend = backend
        self._knowledge = knowledge
        self._semaphore = BoundedSemaphore(max_concurrency) if max_concurrency else None
        self._timeout_seconds = timeout_seconds
        self._work_prefix = work_branch_prefix
        self._fix_prefix = fix_branch_prefix
        self._gate = gate or SuspensionGate()
        self._cancel_token = cancel_token or CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._events: list[DispatchEvent] = []
        self._role_results: dict[str, list[bool]] = {}
        self._completed: dict[str, CompletedWork] = {}

    @property
    def gate(self) -> SuspensionGate:
        return self._gate

    @property
    def events(self) -> tuple[DispatchEvent, ...]:
        return tuple(self._events)

    @property
    def role_results(self) -> Mapping[str, tuple[bool, ...]]:
        return {role: tuple(results) for role, results in sorted(self._role_results.items())}

    @property
    def peak_concurrency(self) -> int | None:
        return self._semaphore.peak if self._semaphore is not None else None

    def snapshot(self) -> dict[str, Any]:
        """Successful work per subject, so a resumed run does not rebuild it."""
        return {
            subject: {
                "branch_name": work.item.branch_name,
                "branch_ref": work.branch_ref,
                "attempt": work.item.attempt_count,
            }
            for subject, work in sorted(self._completed.items())
        }

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        self._completed = {}
        for subject, payload in snapshot.items():
            feature, _, role = subject.rpartition(":")
            item = WorkItem(
                feature=feature,
                role=RoleId(role),
                branch_name=str(payload["branch_name"]),
                attempt_count=int(payload.get("attempt", 1)),
            )
            self._completed[subject] = CompletedWork(
                item=item, branch_ref=str(payload["branch_ref"])
            )

    async def dispatch_wave(
        self,
        features: Sequence[Feature],
        *,
        base_ref: str,
        on_delivery: DeliveryHandler,
    ) -> dict[str, tuple[CompletedWork, ...]]:
        """Run every feature of a wave as one batch; ``on_delivery`` sees each completion."""
        self._check_open()
        tasks = {
            feature.name: asyncio.create_task(
                self._run_feature(feature, base_ref=base_ref, on_delivery=on_delivery),
                name=f"dispatch:{feature.name}",
            )
            for feature in features
        }
        self._logger.info("wave_dispatched", features=list(tasks), base_ref=base_ref)
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)

        completed: dict[str, tuple[CompletedWork, ...]] = {}
        escalation: BudgetExhausted | None = None
        for name, outcome in zip(tasks, outcomes, strict=True):
            if isinstance(outcome, BudgetExhausted):
                escalation = escalation or outcome
            elif isinstance(outcome, EscalationPending):
                continue
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                completed[name] = outcome
        if escalation is not None:
            raise escalation
        if self._gate.suspended:
            raise EscalationPending(self._gate.reason or "dispatch suspended")
        return completed

    async def dispatch_bugfix(
        self,
        subject: str,
        attempt: int,
        diagnostics: Sequence[str],
        base_ref: str,
        *,
        role: RoleId = RoleId.BUGFIXER,
        guidance: str | None = None,
    ) -> str:
        """Issue one targeted bugfix item; the caller owns the retry budget."""
        self._check_open()
        item = WorkItem(
            feature=subject,
            role=role,
            branch_name=branch_name(
                subject,
                role,
                attempt,
                scope=WorkScope.TARGETED_BUGFIX,
                work_prefix=self._work_prefix,
                fix_prefix=self._fix_prefix,
            ),
            attempt_count=attempt,
            scope=WorkScope.TARGETED_BUGFIX,
            prior_diagnostics=tuple(diagnostics),
            base_ref=base_ref,
            guidance=guidance,
            hints=self._hints(role),
        )
        result = await self._execute(item)
        if not result.ok or result.branch_ref is None:
            raise WorkerFailure(
                feature=subject,
                role=role.value,
                attempt=attempt,
                diagnostics=result.diagnostics or "bugfix failed",
            )
        return result.branch_ref

    async def _run_feature(
        self,
        feature: Feature,
        *,
        base_ref: str,
        on_delivery: DeliveryHandler,
    ) -> tuple[CompletedWork, ...]:
        feature.transition(FeatureStatus.DISPATCHED)
        feature.transition(FeatureStatus.IN_PROGRESS)
        try:
            if feature.sequential_roles:
                completed: list[CompletedWork] = []
                current_base = base_ref
                for role in feature.ordered_roles():
                    work = await self._run_item(feature.name, role, base_ref=current_base)
                    completed.append(work)
                    current_base = work.branch_ref
                results = tuple(completed)
            else:
                outcomes = await asyncio.gather(
                    *(
                        self._run_item(feature.name, role, base_ref=base_ref)
                        for role in feature.roles
                    ),
                    return_exceptions=True,
                )
                errors = [item for item in outcomes if isinstance(item, BaseException)]
                if errors:
                    raise next(
                        (err for err in errors if isinstance(err, BudgetExhausted)), errors[0]
                    )
                results = tuple(item for item in outcomes if isinstance(item, CompletedWork))
        except (BudgetExhausted, EscalationPending):
            feature.transition(FeatureStatus.FAILED)
            raise

        try:
            await on_delivery(
                FeatureDelivery(
                    feature=feature.name,
                    branch_refs=tuple(work.branch_ref for work in results),
                )
            )
        except BudgetExhausted as exc:
            self._gate.suspend(f"integration of {feature.name} escalated")
            self._logger.warning("dispatch_suspended", subject=feature.name, reason=str(exc))
            raise
        return results

    async def _run_item(self, feature: str, role: RoleId, *, base_ref: str) -> CompletedWork:
        subject = build_subject(feature, role)
        if subject in self._completed:
            return self._completed[subject]
        diagnostics: tuple[str, ...] = ()
        while True:
            self._check_open()
            budget = self._budgets.budget(PHASE_FEATURE_BUILD, subject)
            attempt_number = len(budget.attempts_log) + 1
            self._budgets.begin_attempt(PHASE_FEATURE_BUILD, subject)
            item = WorkItem(
                feature=feature,
                role=role,
                branch_name=branch_name(
                    feature,
                    role,
                    attempt_number,
                    work_prefix=self._work_prefix,
                    fix_prefix=self._fix_prefix,
                ),
                attempt_count=attempt_number,
                prior_diagnostics=diagnostics,
                base_ref=base_ref,
                guidance=self._budgets.guidance(PHASE_FEATURE_BUILD, subject),
                hints=self._hints(role),
            )
            result = await self._execute(item)
            if result.ok and result.branch_ref is not None:
                self._budgets.record_success(PHASE_FEATURE_BUILD, subject)
                work = CompletedWork(
                    item=item, branch_ref=result.branch_ref, completed_seq=len(self._events)
                )
                self._completed[subject] = work
                return work

            detail = result.diagnostics or "worker failed"
            diagnostics = (*diagnostics, detail)
            try:
                self._budgets.record_failure(PHASE_FEATURE_BUILD, subject, detail)
            except BudgetExhausted as exc:
                self._gate.suspend(f"{PHASE_FEATURE_BUILD} budget exhausted for {subject}")
                self._logger.warning("dispatch_suspended", subject=subject, reason=str(exc))
                raise

    async def _execute(self, item: WorkItem) -> WorkerResult:
        if self._backend is not None:
            await asyncio.to_thread(self._backend.ensure_branch, item.branch_name, item.base_ref)
        worker = self._workers.for_role(item.role)
        if self._semaphore is None:
            return await self._invoke(worker, item)
        async with self._semaphore.permit():
            return await self._invoke(worker, item)

    async def _invoke(self, worker: Any, item: WorkItem) -> WorkerResult:
        self._record("issued", item)
        try:
            result = await run_with_timeout(
                worker.run(item), self._timeout_seconds, self._cancel_token
            )
        except TimeoutError:
            result = WorkerResult.failure(
                f"worker timed out after {self._timeout_seconds:.3f}s"
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            result = WorkerResult.failure(f"worker crashed: {type(exc).__name__}: {exc}")
        self._record("completed" if result.ok else "failed", item)
        self._role_results.setdefault(item.role.value, []).append(result.ok)
        self._logger.info(
            "work_item_finished",
            feature=item.feature,
            role=item.role.value,
            attempt=item.attempt_count,
            scope=item.scope.value,
            ok=result.ok,
            diagnostics=result.diagnostics,
        )
        return result

    def _hints(self, role: RoleId) -> tuple[str, ...]:
        if self._knowledge is None:
            return ()
        return self._knowledge.hints_for([role]).render()

    def _record(self, kind: EventKind, item: WorkItem) -> None:
        self._events.append(
            DispatchEvent(
                kind=kind,
                feature=item.feature,
                role=item.role,
                attempt=item.attempt_count,
                branch=item.branch_name,
                scope=item.scope,
            )
        )

    def _check_open(self) -> None:
        self._cancel_token.raise_if_cancelled()
        if self._gate.suspended:
            raise EscalationPending(self._gate.reason or "dispatch suspended")


__all__ = ["DeliveryHandler", "DispatchEvent", "WorkerDispatcher", "build_subject"]
