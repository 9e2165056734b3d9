"""
Run controller.

Purpose
- Drive one work request end to end: dispatch waves, integrate completions in merge order,
  verify the integration line, repair failing stages, then iterate on the quality score
  until the run ships or a retry budget escalates.

Functional requirements
- Every phase transition is persisted through ``RunStateStore`` so ``resume`` can pick up
  an escalated run in a new process.
- Budget exhaustion never retries silently: the run stops in ``escalated`` with the
  escalation record surfaced, and only ``resume`` with a human decision continues it.
- Completed runs (shipped, shipped with notes, aborted) are recorded in the knowledge base
  together with the role outcomes they produced.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Final

import structlog

from buildwave.config.schema import STAGE_NAMES, phase_budgets
from buildwave.constants import (
    DEFAULT_FIX_BRANCH_PREFIX,
    DEFAULT_WORK_BRANCH_PREFIX,
    PHASE_FEATURE_BUILD,
    PHASE_QUALITY_SCORE_FIX,
    PHASE_TARGETED_BUGFIX,
)
from buildwave.control_plane.budgets import RetryEscalationManager
from buildwave.control_plane.run_state import RunPhase, RunState, RunStateStore
from buildwave.domain.errors import (
    BudgetExhausted,
    BuildwaveError,
    ValidationError,
    WorkerFailure,
)
from buildwave.domain.ids import generate_run_id
from buildwave.domain.models import (
    Decision,
    EscalationRecord,
    FeatureStatus,
    QualityScore,
    ResolutionOption,
    RunOutcome,
    RunStatus,
    StageOutcome,
    VerificationRun,
    utc_now,
)
from buildwave.domain.roles import Capability, RoleId, parse_role, roles_with
from buildwave.integration_plane import (
    FeatureDelivery,
    GitIntegrationBackend,
    InMemoryIntegrationBackend,
    IntegrationBackend,
    IntegrationCoordinator,
)
from buildwave.knowledge_plane import KnowledgeBase, open_learning_store
from buildwave.planning.request import WorkRequest
from buildwave.quality import DIMENSION_STAGE, QualityPolicy, QualityScorer
from buildwave.synthesis_plane import (
    CommandWorker,
    DryRunWorker,
    WorkerDispatcher,
    WorkerRouter,
)
from buildwave.utils.concurrency import CancellationToken, SuspensionGate
from buildwave.verification_plane import (
    CommandStage,
    PipelineResult,
    Stage,
    StaticStage,
    VerificationPipeline,
    stage_roles,
)

QUALITY_SUBJECT: Final[str] = "quality"
VERIFICATION_SUBJECT_PREFIX: Final[str] = "verification:"
QUALITY_FIX_SUBJECT_PREFIX: Final[str] = "quality:"

_SHIPPED: Final[frozenset[RunStatus]] = frozenset(
    {RunStatus.SHIPPED, RunStatus.SHIPPED_WITH_NOTES}
)


@dataclass(frozen=True, slots=True)
class RunResult:
    """What ``run`` and ``resume`` hand back to the CLI."""

    run_id: str
    status: RunStatus
    score: QualityScore | None = None
    merged: tuple[str, ...] = ()
    escalation: EscalationRecord | None = None
    iterations: int = 0
    notes: tuple[str, ...] = ()

    @property
    def exit_code(self) -> int:
        return 0 if self.status in _SHIPPED else 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "score": self.score.to_dict() if self.score is not None else None,
            "merged": list(self.merged),
            "escalation": self.escalation.surface() if self.escalation is not None else None,
            "iterations": self.iterations,
            "notes": list(self.notes),
        }


class RunController:
    def __init__(
        self,
        request: WorkRequest,
        *,
        backend: IntegrationBackend,
        workers: WorkerRouter,
        stages: Mapping[str, Stage],
        knowledge: KnowledgeBase,
        budgets: RetryEscalationManager | None = None,
        quality_policy: QualityPolicy | None = None,
        state_store: RunStateStore | None = None,
        run_id: str | None = None,
        request_path: str = "",
        dry_run: bool = False,
        smoke_stage: str | None = "runtime",
        smoke_timeout_seconds: float = 120.0,
        worker_timeout_seconds: float = 1800.0,
        stage_timeout_seconds: float = 900.0,
        max_concurrency: int = 0,
        work_branch_prefix: str = DEFAULT_WORK_BRANCH_PREFIX,
        fix_branch_prefix: str = DEFAULT_FIX_BRANCH_PREFIX,
        logger: Any | None = None,
    ) -> None:
        self._request = request
        self._features = request.features_by_name()
        self._roles = tuple(
            dict.fromkeys(role for feature in request.features for role in feature.roles)
        )
        self._workers = workers
        self._knowledge = knowledge
        self._budgets = budgets or RetryEscalationManager()
        self._scorer = QualityScorer(quality_policy)
        self._store = state_store
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._cancel_token = CancellationToken()
        self._gate = SuspensionGate()

        self._pipeline = VerificationPipeline(
            stages,
            timeout_seconds=stage_timeout_seconds,
            cancel_token=self._cancel_token,
            logger=self._logger,
        )
        self._smoke = stages.get(smoke_stage) if smoke_stage else None
        self._dispatcher = WorkerDispatcher(
            workers,
            self._budgets,
            backend=backend,
            knowledge=knowledge,
            max_concurrency=max_concurrency,
            timeout_seconds=worker_timeout_seconds,
            work_branch_prefix=work_branch_prefix,
            fix_branch_prefix=fix_branch_prefix,
            gate=self._gate,
            cancel_token=self._cancel_token,
            logger=self._logger,
        )
        self._coordinator = IntegrationCoordinator(
            backend,
            request.plan,
            budgets=self._budgets,
            bugfix_runner=self._integration_bugfix,
            smoke_check=self._smoke_check if self._smoke is not None else None,
            smoke_timeout_seconds=smoke_timeout_seconds,
            on_merged=self._on_merged,
            cancel_token=self._cancel_token,
            logger=self._logger,
        )
        self._state = RunState(
            run_id=run_id or generate_run_id(),
            request_path=request_path,
            request_digest=request.digest,
            dry_run=dry_run,
        )
        self._verification: PipelineResult | None = None
        self._fix_log: list[tuple[RoleId, str, str, bool]] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def run_id(self) -> str:
        return self._state.run_id

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def budgets(self) -> RetryEscalationManager:
        return self._budgets

    @property
    def coordinator(self) -> IntegrationCoordinator:
        return self._coordinator

    @property
    def dispatcher(self) -> WorkerDispatcher:
        return self._dispatcher

    @property
    def pipeline(self) -> VerificationPipeline:
        return self._pipeline

    @property
    def verification(self) -> PipelineResult | None:
        return self._verification

    def restore(self, state: RunState) -> None:
        """Load a persisted run so ``resume`` continues where it stopped."""
        if state.request_digest != self._request.digest:
            raise ValidationError(
                f"work request {state.request_path!r} changed since run {state.run_id} started"
            )
        self._state = state
        self._budgets.restore(state.budgets)
        self._dispatcher.restore(state.dispatch)
        self._coordinator.restore(state.integration)
        in_flight = {FeatureStatus.DISPATCHED, FeatureStatus.IN_PROGRESS}
        for name, status in state.features.items():
            if name not in self._features:
                continue
            restored = FeatureStatus(status)
            if restored in in_flight and name not in self._coordinator.pending:
                # Interrupted before delivery; dispatch it again.
                restored = FeatureStatus.FAILED
            self._features[name].status = restored
        if state.verification:
            self._verification = PipelineResult.from_dict(state.verification)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run(self) -> RunResult:
        self._budgets.reset()
        self._logger.info(
            "run_started",
            run_id=self.run_id,
            request=self._request.name,
            features=len(self._features),
            waves=len(self._request.plan),
            complexity=self._request.complexity.value,
            dry_run=self._state.dry_run,
        )
        await self._coordinator.start()
        return await self._drive(RunPhase.BUILD)

    async def resume(
        self, option: ResolutionOption | str, guidance: str | None = None
    ) -> RunResult:
        escalation = self._state.open_escalation
        if escalation is None:
            raise BuildwaveError(f"run {self.run_id} has no open escalation to resolve")
        choice = ResolutionOption(option)
        resolved = self._budgets.resolve(escalation.phase, escalation.subject, choice, guidance)
        self._state.escalation = resolved
        resume_phase = self._state.resume_phase or RunPhase.BUILD
        self._logger.info(
            "run_resumed",
            run_id=self.run_id,
            phase=escalation.phase,
            subject=escalation.subject,
            option=choice.value,
        )
        if choice is ResolutionOption.ABORT:
            return self._abort(escalation)

        self._gate.resume()
        await self._coordinator.start()
        try:
            await self._apply_resolution(escalation, choice)
        except BudgetExhausted as exc:
            return self._escalate(exc.escalation, resume_phase)
        return await self._drive(resume_phase)

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _drive(self, start: RunPhase) -> RunResult:
        phase = start
        try:
            if phase is RunPhase.BUILD:
                self._enter(RunPhase.BUILD)
                await self._build()
                phase = RunPhase.VERIFY
            if phase is RunPhase.VERIFY:
                self._enter(RunPhase.VERIFY)
                await self._verify()
                phase = RunPhase.QUALITY
            self._enter(RunPhase.QUALITY)
            score = await self._quality()
        except BudgetExhausted as exc:
            return self._escalate(exc.escalation, self._state.phase)
        return self._complete(score)

    async def _build(self) -> None:
        for wave in self._request.plan:
            batch = [
                self._features[name]
                for name in wave.features
                if not self._coordinator.is_settled(name)
                and name not in self._coordinator.pending
            ]
            if batch:
                self._logger.info(
                    "wave_started", wave=wave.index, features=[item.name for item in batch]
                )
                await self._dispatcher.dispatch_wave(
                    batch,
                    base_ref=self._coordinator.last_good_head,
                    on_delivery=self._deliver,
                )
            unsettled = [name for name in wave.features if not self._coordinator.is_settled(name)]
            if unsettled:
                raise RuntimeError(
                    f"wave {wave.index} finished with unintegrated features: {', '.join(unsettled)}"
                )
            self._save()

    async def _verify(self) -> None:
        head = self._coordinator.last_good_head
        result = self._verification
        if result is None or result.integration_ref != head:
            result = await self._pipeline.run(head)
            self._set_verification(result)

        while True:
            result = self._apply_accepted(result)
            if result.blocked_at is None and any(
                run.result is StageOutcome.SKIPPED for run in result.runs
            ):
                # Stages skipped behind a cleared block run now; unconfigured ones stay skipped.
                result = await self._pipeline.run_remaining(result)
                result = self._apply_accepted(result)
            self._set_verification(result)
            failing = next(
                (run for run in result.runs if run.failed and not self._accepted(run)), None
            )
            if failing is None:
                break
            result = await self._repair_stage(result, failing)

    async def _repair_stage(self, result: PipelineResult, run: VerificationRun) -> PipelineResult:
        stage = run.stage
        phase = self._pipeline.retry_phase(stage)
        subject = f"{VERIFICATION_SUBJECT_PREFIX}{stage}"
        diagnostics = list(run.diagnostics) or [f"{stage} failed"]
        fix_role = self._fix_role(stage_roles(stage, self._roles))
        current = run
        while current.failed:
            budget = self._budgets.budget(phase, subject)
            attempt = len(budget.attempts_log) + 1
            self._budgets.begin_attempt(phase, subject)
            merged, detail = await self._dispatch_fix(
                subject,
                attempt,
                diagnostics,
                role=fix_role,
                guidance=self._budgets.guidance(phase, subject),
            )
            if merged:
                current = await self._pipeline.rerun(
                    stage, self._coordinator.last_good_head, attempt=attempt + 1
                )
                result = result.with_run(current)
                if current.passed:
                    self._budgets.record_success(phase, subject, "stage passed after bugfix")
                    break
                detail = "; ".join(current.diagnostics) or f"{stage} still failing"
            diagnostics.append(detail)
            self._set_verification(result)
            self._budgets.record_failure(phase, subject, detail)
        return result

    async def _quality(self) -> QualityScore:
        benchmarks = self._knowledge.benchmarks()
        while True:
            runs = self._verification.runs if self._verification is not None else ()
            score = self._scorer.score(
                runs,
                iteration=self._state.iteration,
                complexity=self._request.complexity,
                benchmarks=benchmarks,
                available_roles=self._roles,
            )
            self._record_score(score)
            if score.decision is Decision.SHIP:
                return score
            if self._state.quality_accepted:
                return self._scorer.ship_with_notes(score)

            budget = self._budgets.budget(PHASE_QUALITY_SCORE_FIX, QUALITY_SUBJECT)
            self._budgets.begin_attempt(PHASE_QUALITY_SCORE_FIX, QUALITY_SUBJECT)
            if budget.remaining == 0 and score.instant_fail_reason is None:
                self._budgets.record_success(
                    PHASE_QUALITY_SCORE_FIX, QUALITY_SUBJECT, "iterations spent; shipped with notes"
                )
                return self._scorer.ship_with_notes(score)
            self._budgets.record_failure(
                PHASE_QUALITY_SCORE_FIX, QUALITY_SUBJECT, self._score_summary(score)
            )
            await self._apply_fix_set(score)
            self._state.iteration += 1
            self._save()

    async def _apply_fix_set(self, score: QualityScore) -> None:
        stages: set[str] = {"quality_score"}
        attempt = score.iteration + 1
        for fix in score.fix_set:
            subject = f"{QUALITY_FIX_SUBJECT_PREFIX}{fix.dimension}"
            role = self._fix_role(fix.roles)
            merged, detail = await self._dispatch_fix(
                subject, attempt, [fix.instruction], role=role, guidance=None
            )
            self._fix_log.append((role, fix.dimension, fix.instruction, merged))
            if not merged:
                self._logger.warning(
                    "quality_fix_not_applied", dimension=fix.dimension, diagnostics=detail
                )
            stage = DIMENSION_STAGE.get(fix.dimension)
            if stage is not None:
                stages.add(stage)

        result = self._verification
        head = self._coordinator.last_good_head
        for stage in self._pipeline.stage_ids:
            if stage not in stages or result is None:
                continue
            rerun = await self._pipeline.rerun(stage, head, attempt=attempt + 1)
            result = result.with_run(rerun)
        if result is not None:
            self._set_verification(result)

    # ------------------------------------------------------------------
    # Escalation handling
    # ------------------------------------------------------------------

    async def _apply_resolution(
        self, escalation: EscalationRecord, option: ResolutionOption
    ) -> None:
        phase, subject = escalation.phase, escalation.subject
        skip = option is ResolutionOption.ACCEPT_AND_SKIP
        if phase == PHASE_FEATURE_BUILD:
            feature, _, _ = subject.rpartition(":")
            if skip:
                await self._coordinator.skip(feature)
        elif subject.startswith(VERIFICATION_SUBJECT_PREFIX):
            stage = subject.removeprefix(VERIFICATION_SUBJECT_PREFIX)
            if skip and stage not in self._state.accepted_stages:
                self._state.accepted_stages.append(stage)
        elif subject == QUALITY_SUBJECT:
            self._state.quality_accepted = skip
        elif phase == PHASE_TARGETED_BUGFIX:
            if skip:
                await self._coordinator.skip(subject)
            else:
                await self._coordinator.resume_blocked()
        self._save()

    def _escalate(self, escalation: EscalationRecord, phase: RunPhase) -> RunResult:
        self._gate.suspend(f"{escalation.phase} escalated for {escalation.subject}")
        self._state.escalation = escalation
        self._state.escalation_history.append(f"{escalation.phase}/{escalation.subject}")
        self._state.resume_phase = phase
        self._state.phase = RunPhase.ESCALATED
        self._save()
        self._logger.warning(
            "run_escalated",
            run_id=self.run_id,
            phase=escalation.phase,
            subject=escalation.subject,
            last_error=escalation.last_diagnostics,
        )
        return RunResult(
            run_id=self.run_id,
            status=RunStatus.ESCALATED,
            merged=self._coordinator.merged,
            escalation=escalation,
            iterations=self._state.iteration,
        )

    def _abort(self, escalation: EscalationRecord) -> RunResult:
        instant_fail = escalation.subject == QUALITY_SUBJECT and bool(
            (self._state.last_score or {}).get("instant_fail_reason")
        )
        status = RunStatus.INSTANT_FAIL if instant_fail else RunStatus.ABORTED
        overall = (self._state.last_score or {}).get("overall")
        self._finish(status, overall_score=overall, failed_dimensions=())
        self._state.phase = RunPhase.ABORTED
        self._save()
        self._logger.warning("run_aborted", run_id=self.run_id, status=status.value)
        return RunResult(
            run_id=self.run_id,
            status=status,
            merged=self._coordinator.merged,
            escalation=self._state.escalation,
            iterations=self._state.iteration,
        )

    def _complete(self, score: QualityScore) -> RunResult:
        status = (
            RunStatus.SHIPPED if score.decision is Decision.SHIP else RunStatus.SHIPPED_WITH_NOTES
        )
        self._record_score(score)
        self._finish(
            status, overall_score=score.overall, failed_dimensions=score.failing_dimensions
        )
        self._state.phase = RunPhase.COMPLETED
        self._state.resume_phase = None
        self._save()
        self._logger.info(
            "run_completed",
            run_id=self.run_id,
            status=status.value,
            overall=score.overall,
            threshold=score.threshold,
            iterations=score.iteration + 1,
        )
        return RunResult(
            run_id=self.run_id,
            status=status,
            score=score,
            merged=self._coordinator.merged,
            iterations=score.iteration + 1,
            notes=(*score.notes, *self._waiver_notes()),
        )

    def _waiver_notes(self) -> tuple[str, ...]:
        merged = set(self._coordinator.merged)
        return tuple(
            f"{dependent} integrated without skipped dependency {dependency}"
            for dependent, skipped in self._coordinator.waived.items()
            if dependent in merged
            for dependency in skipped
        )

    def _finish(
        self,
        status: RunStatus,
        *,
        overall_score: float | None,
        failed_dimensions: Sequence[str],
    ) -> None:
        outcome = RunOutcome(
            run_id=self.run_id,
            request_digest=self._request.digest,
            status=status,
            started_at=self._state.started_at,
            finished_at=utc_now(),
            overall_score=overall_score,
            iterations=self._state.iteration + 1,
            escalations=tuple(self._state.escalation_history),
            failed_dimensions=tuple(failed_dimensions),
            role_results=self._dispatcher.role_results,
        )
        self._knowledge.record_run(outcome)
        self._record_patterns()
        self._state.outcome = outcome.to_dict()

    def _record_patterns(self) -> None:
        for entry in self._budgets.state()["budgets"]:
            if entry["phase"] != PHASE_FEATURE_BUILD:
                continue
            failures = [item for item in entry["attempts_log"] if not item["succeeded"]]
            if not failures:
                continue
            _, _, role = str(entry["subject"]).rpartition(":")
            succeeded = entry["state"] == "succeeded"
            outcome = (
                f"resolved after {len(entry['attempts_log'])} attempts"
                if succeeded
                else str(failures[-1]["diagnostics"])
            )
            self._knowledge.record_pattern(
                parse_role(role),
                description=str(failures[0]["diagnostics"]),
                outcome=outcome,
                success=succeeded,
            )
        for role, dimension, instruction, merged in self._fix_log:
            self._knowledge.record_pattern(
                role,
                description=f"{dimension} below threshold",
                outcome=instruction,
                success=merged,
            )

    # ------------------------------------------------------------------
    # Collaborator callbacks
    # ------------------------------------------------------------------

    async def _deliver(self, delivery: FeatureDelivery) -> None:
        await self._coordinator.submit(delivery)
        self._save()

    def _on_merged(self, feature: str) -> None:
        item = self._features.get(feature)
        if item is not None and item.status is not FeatureStatus.MERGED:
            item.transition(FeatureStatus.MERGED)

    async def _integration_bugfix(
        self,
        subject: str,
        attempt: int,
        diagnostics: tuple[str, ...],
        base_ref: str,
    ) -> str:
        feature = self._features.get(subject)
        preferred = (RoleId.BUGFIXER, *(feature.roles if feature is not None else ()))
        return await self._dispatcher.dispatch_bugfix(
            subject,
            attempt,
            diagnostics,
            base_ref,
            role=self._fix_role(preferred),
            guidance=self._budgets.guidance(PHASE_TARGETED_BUGFIX, subject),
        )

    async def _smoke_check(self, head: str) -> VerificationRun:
        return await self._smoke.run(head)

    async def _dispatch_fix(
        self,
        subject: str,
        attempt: int,
        diagnostics: Sequence[str],
        *,
        role: RoleId,
        guidance: str | None,
    ) -> tuple[bool, str]:
        try:
            ref = await self._dispatcher.dispatch_bugfix(
                subject,
                attempt,
                tuple(diagnostics),
                self._coordinator.last_good_head,
                role=role,
                guidance=guidance,
            )
        except WorkerFailure as exc:
            return False, exc.diagnostics
        return await self._coordinator.apply_bugfix(subject, ref)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _fix_role(self, preferred: Iterable[RoleId]) -> RoleId:
        """First preferred role a worker can serve, else a fixer from the request."""
        candidates = [
            *preferred,
            *roles_with(Capability.FIX, among=self._roles),
            *self._roles,
        ]
        for role in dict.fromkeys(candidates):
            if not self._workers.missing((role,)):
                return role
        return candidates[0] if candidates else RoleId.BUGFIXER

    def _accepted(self, run: VerificationRun) -> bool:
        return run.stage in self._state.accepted_stages

    def _apply_accepted(self, result: PipelineResult) -> PipelineResult:
        """Accepted stages no longer block the pipeline or the score."""
        for run in result.runs:
            if self._accepted(run) and run.blocking:
                result = result.with_run(replace(run, blocking=False))
        return result

    def _set_verification(self, result: PipelineResult) -> None:
        self._verification = result
        self._save()

    def _record_score(self, score: QualityScore) -> None:
        self._state.last_score = score.to_dict()
        self._logger.info(
            "quality_scored",
            overall=score.overall,
            threshold=score.threshold,
            decision=score.decision.value,
            iteration=score.iteration,
            low_confidence=score.low_confidence,
            fix_set=list(score.failing_dimensions),
        )
        self._save()

    @staticmethod
    def _score_summary(score: QualityScore) -> str:
        if score.instant_fail_reason:
            return f"instant fail: {score.instant_fail_reason}"
        failing = ", ".join(score.failing_dimensions) or "none"
        return f"overall {score.overall:.3f} below {score.threshold:.3f}; failing: {failing}"

    def _enter(self, phase: RunPhase) -> None:
        if self._state.phase is not phase:
            self._logger.info("run_phase_entered", run_id=self.run_id, phase=phase.value)
        self._state.phase = phase
        self._save()

    def _save(self) -> None:
        state = self._state
        state.features = {name: item.status.value for name, item in self._features.items()}
        state.dispatch = self._dispatcher.snapshot()
        state.integration = self._coordinator.snapshot()
        state.budgets = self._budgets.state()
        state.verification = (
            self._verification.to_dict() if self._verification is not None else None
        )
        if self._store is not None:
            self._store.save(state)


def build_controller(
    request: WorkRequest,
    config: Mapping[str, Any],
    *,
    request_path: str | Path = "",
    dry_run: bool = False,
    run_id: str | None = None,
    knowledge: KnowledgeBase | None = None,
    logger: Any | None = None,
) -> RunController:
    """Wire a controller from effective config; ``dry_run`` swaps in no-op collaborators."""
    git = config["git"]
    workers_cfg = config["workers"]
    verification = config["verification"]
    repo_root = config["paths"]["repo_root"]

    backend: IntegrationBackend
    stages: dict[str, Stage]
    if dry_run:
        backend = InMemoryIntegrationBackend()
        router = WorkerRouter(default=DryRunWorker())
        stages = {name: StaticStage(name) for name in STAGE_NAMES}
    else:
        if git["backend"] == "memory":
            backend = InMemoryIntegrationBackend()
        else:
            backend = GitIntegrationBackend(
                repo_root,
                main_branch=git["main_branch"],
                integration_branch=git["integration_branch"],
                merge_strategy=git["merge_strategy"],
            )
        router = WorkerRouter(
            {
                role: CommandWorker(
                    command, timeout_seconds=workers_cfg["timeout_seconds"], cwd=repo_root
                )
                for role, command in workers_cfg["commands"].items()
            }
        )
        stages = {
            name: CommandStage(
                name, command, timeout_seconds=verification["timeout_seconds"], cwd=repo_root
            )
            for name, command in verification["commands"].items()
        }

    roles = [role for feature in request.features for role in feature.roles]
    missing = router.missing(roles)
    if missing:
        raise ValidationError(
            [f"no worker command configured for role {role.value!r}" for role in missing]
        )

    if knowledge is None:
        learning = config["learning"]
        knowledge = KnowledgeBase(
            open_learning_store(
                learning["backend"],
                local_path=learning["local_path"],
                shared_path=learning["shared_path"],
                logger=logger,
            ),
            logger=logger,
        )

    return RunController(
        request,
        backend=backend,
        workers=router,
        stages=stages,
        knowledge=knowledge,
        budgets=RetryEscalationManager(phase_budgets(config), logger=logger),
        quality_policy=QualityPolicy.from_config(config["quality"]),
        state_store=RunStateStore(config["paths"]["state_dir"]),
        run_id=run_id,
        request_path=str(request_path),
        dry_run=dry_run,
        smoke_stage=verification["smoke_stage"] or None,
        smoke_timeout_seconds=verification["smoke_timeout_seconds"],
        worker_timeout_seconds=workers_cfg["timeout_seconds"],
        stage_timeout_seconds=verification["timeout_seconds"],
        max_concurrency=workers_cfg["max_concurrency"],
        work_branch_prefix=git["work_branch_prefix"],
        fix_branch_prefix=git["fix_branch_prefix"],
        logger=logger,
    )


__all__ = [
    "QUALITY_SUBJECT",
    "RunController",
    "RunResult",
    "build_controller",
]
