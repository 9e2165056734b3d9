"""Control-plane public API."""

from buildwave.control_plane.budgets import BudgetState, RetryBudget, RetryEscalationManager
from buildwave.control_plane.controller import RunController, RunResult, build_controller
from buildwave.control_plane.run_state import RunPhase, RunState, RunStateStore

__all__ = [
    "BudgetState",
    "RetryBudget",
    "RetryEscalationManager",
    "RunController",
    "RunPhase",
    "RunResult",
    "RunState",
    "RunStateStore",
    "build_controller",
]
