"""
Integration coordinator.

Normative behavior
- Features merge in dependency order (wave, then declaration order) regardless of the
  order in which their builds complete. Completed-but-blocked features wait in a
  pending buffer.
- Merges are single-writer: every mutation of the integration line happens under one
  ``asyncio.Lock``.
- Each merge is followed by a time-boxed smoke check. A failure (or timeout, or merge
  conflict) resets the line to the last good head, blocks further merges and runs
  targeted bugfixes for just that feature under the ``targeted-bugfix`` budget. A fix
  branches from the last good head and lands together with every role branch of the
  feature, so no completed role work is dropped.
- A head that passed its smoke check is only ever changed by an explicit bugfix merge,
  journaled with ``kind="bugfix"``.
- Skipping a feature waives it as a dependency: each dependent is logged and listed in
  ``waived`` so the gap stays visible.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Final, Literal, TypeAlias

import structlog

from buildwave.constants import PHASE_TARGETED_BUGFIX
from buildwave.domain.errors import WorkerFailure
from buildwave.domain.models import VerificationRun, isoformat, parse_datetime, utc_now
from buildwave.integration_plane.backends import IntegrationBackend, MergeConflict
from buildwave.planning.waves import WavePlan
from buildwave.utils.concurrency import CancellationToken, run_with_timeout

if TYPE_CHECKING:
    from buildwave.control_plane.budgets import RetryEscalationManager

JournalKind: TypeAlias = Literal["feature", "bugfix"]
SmokeCheck: TypeAlias = Callable[[str], Awaitable["VerificationRun | bool"]]
# (subject, attempt, diagnostics so far, base ref) -> branch ref holding the fix
BugfixRunner: TypeAlias = Callable[[str, int, tuple[str, ...], str], Awaitable[str]]

SMOKE_TIMEOUT_SECONDS: Final[float] = 120.0


@dataclass(frozen=True, slots=True)
class FeatureDelivery:
    """Branch refs a feature's workers produced, in role order."""

    feature: str
    branch_refs: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.branch_refs:
            raise ValueError(f"feature {self.feature!r} delivered no branch refs")
        object.__setattr__(self, "branch_refs", tuple(self.branch_refs))


@dataclass(frozen=True, slots=True)
class JournalEntry:
    seq: int
    kind: JournalKind
    subject: str
    sources: tuple[str, ...]
    head_before: str
    head_after: str
    smoke_passed: bool
    rolled_back: bool
    diagnostics: str = ""
    at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "seq": self.seq,
            "kind": self.kind,
            "subject": self.subject,
            "sources": list(self.sources),
            "head_before": self.head_before,
            "head_after": self.head_after,
            "smoke_passed": self.smoke_passed,
            "rolled_back": self.rolled_back,
            "diagnostics": self.diagnostics,
            "at": isoformat(self.at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> JournalEntry:
        return cls(
            seq=int(payload["seq"]),
            kind=payload["kind"],
            subject=str(payload["subject"]),
            sources=tuple(payload.get("sources", ())),
            head_before=str(payload["head_before"]),
            head_after=str(payload["head_after"]),
            smoke_passed=bool(payload["smoke_passed"]),
            rolled_back=bool(payload["rolled_back"]),
            diagnostics=str(payload.get("diagnostics", "")),
            at=parse_datetime(payload["at"]),
        )


class IntegrationCoordinator:
    def __init__(
        self,
        backend: IntegrationBackend,
        plan: WavePlan,
        *,
        budgets: RetryEscalationManager,
        bugfix_runner: BugfixRunner,
        smoke_check: SmokeCheck | None = None,
        smoke_timeout_seconds: float = SMOKE_TIMEOUT_SECONDS,
        on_merged: Callable[[str], None] | None = None,
        cancel_token: CancellationToken | None = None,
        logger: Any | None = None,
    ) -> None:
        if smoke_timeout_seconds <= 0:
            raise ValueError("smoke_timeout_seconds must be > 0")
        self._backend = backend
        self._order = plan.merge_order()
        self._budgets = budgets
        self._bugfix_runner = bugfix_runner
        self._smoke_check = smoke_check
        self._smoke_timeout_seconds = smoke_timeout_seconds
        self._on_merged = on_merged
        self._cancel_token = cancel_token or CancellationToken()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._lock = asyncio.Lock()
        self._pending: dict[str, FeatureDelivery] = {}
        self._merged: list[str] = []
        self._graph = plan.graph
        self._skipped: set[str] = set()
        self._waived: dict[str, list[str]] = {}
        self._journal: list[JournalEntry] = []
        self._last_good: str | None = None
        self._blocked: str | None = None

    @property
    def merged(self) -> tuple[str, ...]:
        return tuple(self._merged)

    @property
    def pending(self) -> tuple[str, ...]:
        return tuple(name for name in self._order if name in self._pending)

    @property
    def journal(self) -> tuple[JournalEntry, ...]:
        return tuple(self._journal)

    @property
    def blocked(self) -> str | None:
        return self._blocked

    @property
    def last_good_head(self) -> str:
        if self._last_good is None:
            raise RuntimeError("integration coordinator has not been started")
        return self._last_good

    @property
    def waived(self) -> dict[str, tuple[str, ...]]:
        """Dependents integrated or pending without a skipped dependency."""
        return {name: tuple(deps) for name, deps in self._waived.items()}

    def is_settled(self, feature: str) -> bool:
        return feature in self._merged or feature in self._skipped

    async def start(self) -> str:
        async with self._lock:
            head = await asyncio.to_thread(self._backend.prepare)
            if self._last_good is None:
                self._last_good = head
            elif self._last_good != head:
                # Never resume on top of an unverified head.
                await asyncio.to_thread(self._backend.reset, self._last_good)
            return self._last_good

    async def submit(self, delivery: FeatureDelivery) -> tuple[str, ...]:
        """Buffer a completed feature and merge everything that is now releasable."""
        if delivery.feature not in self._order:
            raise KeyError(f"feature {delivery.feature!r} is not part of the wave plan")
        async with self._lock:
            if self.is_settled(delivery.feature):
                raise ValueError(f"feature {delivery.feature!r} is already integrated")
            self._pending[delivery.feature] = delivery
            self._logger.info(
                "integration_buffered",
                feature=delivery.feature,
                pending=list(self.pending),
            )
            return await self._drain()

    async def resume_blocked(self) -> tuple[str, ...]:
        """Retry the blocked feature after a human decision, then keep draining."""
        async with self._lock:
            blocked = self._blocked
            if blocked is not None:
                await self._deliver(self._pending[blocked], retry=True)
                del self._pending[blocked]
                self._mark_merged(blocked)
            return await self._drain()

    async def skip(self, feature: str) -> tuple[str, ...]:
        """Accept a feature as settled without merging it, then keep draining."""
        async with self._lock:
            self._skipped.add(feature)
            self._pending.pop(feature, None)
            if self._blocked == feature:
                self._blocked = None
            self._logger.warning("integration_skipped", feature=feature)
            for dependent in self._graph.dependents_of(feature, transitive=True):
                self._waived.setdefault(dependent, []).append(feature)
                self._logger.warning(
                    "integration_dependency_waived", feature=dependent, skipped=feature
                )
            return await self._drain()

    async def apply_bugfix(self, subject: str, branch_ref: str) -> tuple[bool, str]:
        """Merge a bugfix branch for a verification concern; rolled back if smoke fails."""
        async with self._lock:
            return await self._integrate(subject, (branch_ref,), kind="bugfix")

    def snapshot(self) -> dict[str, Any]:
        return {
            "merged": list(self._merged),
            "skipped": sorted(self._skipped),
            "pending": {
                name: list(delivery.branch_refs) for name, delivery in self._pending.items()
            },
            "blocked": self._blocked,
            "waived": {name: list(deps) for name, deps in self._waived.items()},
            "last_good_head": self._last_good,
            "journal": [entry.to_dict() for entry in self._journal],
        }

    def restore(self, snapshot: Mapping[str, Any]) -> None:
        self._merged = list(snapshot.get("merged", ()))
        self._skipped = set(snapshot.get("skipped", ()))
        self._pending = {
            name: FeatureDelivery(feature=name, branch_refs=tuple(refs))
            for name, refs in dict(snapshot.get("pending", {})).items()
        }
        self._blocked = snapshot.get("blocked")
        self._waived = {
            name: list(deps) for name, deps in dict(snapshot.get("waived", {})).items()
        }
        self._last_good = snapshot.get("last_good_head")
        self._journal = [JournalEntry.from_dict(item) for item in snapshot.get("journal", ())]

    async def _drain(self) -> tuple[str, ...]:
        merged_now: list[str] = []
        while self._blocked is None:
            name = self._next_unsettled()
            if name is None or name not in self._pending:
                break
            await self._deliver(self._pending[name], retry=False)
            del self._pending[name]
            self._mark_merged(name)
            merged_now.append(name)
        return tuple(merged_now)

    def _next_unsettled(self) -> str | None:
        return next((name for name in self._order if not self.is_settled(name)), None)

    def _mark_merged(self, feature: str) -> None:
        self._merged.append(feature)
        self._blocked = None
        if self._on_merged is not None:
            self._on_merged(feature)

    async def _deliver(self, delivery: FeatureDelivery, *, retry: bool) -> None:
        feature = delivery.feature
        diagnostics: list[str] = []
        merged, detail = await self._integrate(feature, delivery.branch_refs, kind="feature")
        if merged:
            return
        diagnostics.append(detail)
        self._blocked = feature
        if retry:
            self._logger.info("integration_retrying_blocked", feature=feature)

        while True:
            self._cancel_token.raise_if_cancelled()
            budget = self._budgets.budget(PHASE_TARGETED_BUGFIX, feature)
            attempt = len(budget.attempts_log) + 1
            self._budgets.begin_attempt(PHASE_TARGETED_BUGFIX, feature)
            try:
                fix_ref = await self._bugfix_runner(
                    feature, attempt, tuple(diagnostics), self.last_good_head
                )
            except WorkerFailure as exc:
                merged, detail = False, exc.diagnostics
            else:
                merged, detail = await self._integrate(
                    feature, (*delivery.branch_refs, fix_ref), kind="bugfix"
                )
            if merged:
                self._budgets.record_success(PHASE_TARGETED_BUGFIX, feature, "bugfix merged")
                return
            diagnostics.append(detail)
            # Raises BudgetExhausted once the targeted-bugfix budget is spent.
            self._budgets.record_failure(PHASE_TARGETED_BUGFIX, feature, detail)

    async def _integrate(
        self, subject: str, sources: Sequence[str], *, kind: JournalKind
    ) -> tuple[bool, str]:
        before = self.last_good_head
        head = before
        try:
            for source in sources:
                head = await asyncio.to_thread(
                    self._backend.merge, source, message=f"buildwave: merge {kind} {subject}"
                )
        except MergeConflict as exc:
            passed, detail = False, str(exc)
        else:
            passed, detail = await self._smoke(head)

        rolled_back = False
        if passed:
            self._last_good = head
        else:
            if await asyncio.to_thread(self._backend.head) != before:
                await asyncio.to_thread(self._backend.reset, before)
            rolled_back = True
            self._logger.warning(
                "integration_rolled_back",
                subject=subject,
                kind=kind,
                head=before,
                diagnostics=detail,
            )

        entry = JournalEntry(
            seq=len(self._journal) + 1,
            kind=kind,
            subject=subject,
            sources=tuple(sources),
            head_before=before,
            head_after=head if passed else before,
            smoke_passed=passed,
            rolled_back=rolled_back,
            diagnostics=detail,
        )
        self._journal.append(entry)
        if passed:
            self._logger.info(
                "integration_merged", subject=subject, kind=kind, head=head, seq=entry.seq
            )
        return passed, detail

    async def _smoke(self, head: str) -> tuple[bool, str]:
        if self._smoke_check is None:
            return True, ""
        try:
            outcome = await run_with_timeout(
                _as_coroutine(self._smoke_check, head),
                self._smoke_timeout_seconds,
                self._cancel_token,
            )
        except TimeoutError:
            return False, f"smoke check timed out after {self._smoke_timeout_seconds:.3f}s"
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            return False, f"smoke check crashed: {type(exc).__name__}: {exc}"

        if isinstance(outcome, VerificationRun):
            if outcome.passed:
                return True, ""
            return False, "; ".join(outcome.diagnostics) or f"{outcome.stage} smoke check failed"
        if outcome:
            return True, ""
        return False, "smoke check failed"


async def _as_coroutine(check: SmokeCheck, head: str) -> VerificationRun | bool:
    result = check(head)
    if inspect.isawaitable(result):
        return await result
    return result


__all__ = [
    "BugfixRunner",
    "FeatureDelivery",
    "IntegrationCoordinator",
    "JournalEntry",
    "SmokeCheck",
]
