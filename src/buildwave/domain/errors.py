"""Error taxonomy shared by every orchestrator plane.

- ``ValidationError``: malformed request; fails fast, never retried, carries all violations.
- ``WorkerFailure``: retryable under the owning phase budget.
- ``VerificationFailure``: retryable; ``blocking`` marks an instant-fail finding.
- ``BudgetExhausted``: escalation; never auto-resolved.
- ``StoreUnavailable``: learning store degraded to local-only mode.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from buildwave.domain.models import EscalationRecord


class BuildwaveError(Exception):
    """Base class for orchestrator errors."""


class ValidationError(BuildwaveError, ValueError):
    """Raised when a work request is malformed; reports every violation found."""

    violations: tuple[str, ...]
    errors: tuple[ValidationError, ...] = ()

    def __init__(self, violations: Iterable[str] | str) -> None:
        if isinstance(violations, str):
            items: tuple[str, ...] = (violations,)
        else:
            items = tuple(violations)
        self.violations = items
        if not items:
            message = "invalid work request"
        elif len(items) == 1:
            message = f"invalid work request: {items[0]}"
        else:
            rendered = "\n".join(f"- {item}" for item in items)
            message = f"invalid work request ({len(items)} violations):\n{rendered}"
        super().__init__(message)

    @classmethod
    def combine(cls, errors: Sequence[ValidationError]) -> ValidationError:
        """Single error reporting every violation of ``errors``; keeps the originals."""
        combined = cls([violation for error in errors for violation in error.violations])
        combined.errors = tuple(errors)
        return combined


class DuplicateFeature(ValidationError):
    """Two features share the same name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"duplicate feature name {name!r}")


class UnknownDependency(ValidationError):
    """A dependency names a feature that was never declared."""

    def __init__(self, feature: str, dependency: str) -> None:
        self.feature = feature
        self.dependency = dependency
        super().__init__(f"feature {feature!r} depends on unknown feature {dependency!r}")


class UnknownRole(ValidationError):
    """A feature assigns a role outside the closed role registry."""

    def __init__(self, feature: str, role: str) -> None:
        self.feature = feature
        self.role = role
        super().__init__(f"feature {feature!r} assigns unknown role {role!r}")


class CyclicDependency(ValidationError):
    """The dependency graph contains a cycle."""

    cycle: tuple[str, ...]

    def __init__(self, cycle: Sequence[str]) -> None:
        self.cycle = tuple(cycle)
        if self.cycle:
            rendered = " -> ".join(self.cycle)
            message = f"dependency cycle detected: {rendered}"
        else:
            message = "dependency cycle detected"
        super().__init__(message)

    @property
    def members(self) -> tuple[str, ...]:
        """Distinct features participating in the cycle."""
        seen: dict[str, None] = {}
        for name in self.cycle:
            seen.setdefault(name, None)
        return tuple(seen)


class WorkerFailure(BuildwaveError):
    """A worker reported failure (or crashed) for one work item."""

    def __init__(self, *, feature: str, role: str, attempt: int, diagnostics: str) -> None:
        self.feature = feature
        self.role = role
        self.attempt = attempt
        self.diagnostics = diagnostics
        super().__init__(
            f"worker {role} failed on feature {feature!r} (attempt {attempt}): {diagnostics}"
        )


class VerificationFailure(BuildwaveError):
    """A verification stage failed against the integration line."""

    def __init__(self, *, stage: str, diagnostics: str, blocking: bool = False) -> None:
        self.stage = stage
        self.diagnostics = diagnostics
        self.blocking = blocking
        kind = "blocking failure" if blocking else "failure"
        super().__init__(f"verification stage {stage!r} {kind}: {diagnostics}")


class BudgetExhausted(BuildwaveError):
    """A retry budget ran out; the carried escalation requires a human decision."""

    def __init__(self, escalation: EscalationRecord) -> None:
        self.escalation = escalation
        super().__init__(escalation.render())


class StoreUnavailable(BuildwaveError):
    """The shared learning store cannot be reached."""


class EscalationPending(BuildwaveError):
    """An operation was requested while an escalation is still unresolved."""


__all__ = [
    "BudgetExhausted",
    "BuildwaveError",
    "CyclicDependency",
    "DuplicateFeature",
    "EscalationPending",
    "StoreUnavailable",
    "UnknownDependency",
    "UnknownRole",
    "ValidationError",
    "VerificationFailure",
    "WorkerFailure",
]
