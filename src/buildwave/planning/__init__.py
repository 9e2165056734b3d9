"""Planning plane: request validation, dependency graph and wave scheduling."""

from buildwave.planning.dependency_graph import (
    DependencyGraph,
    build_dependency_graph,
    collect_graph_violations,
    find_cycle,
)
from buildwave.planning.request import (
    Complexity,
    WorkRequest,
    infer_complexity,
    load_work_request,
    parse_work_request,
)
from buildwave.planning.waves import WavePlan, schedule_waves

__all__ = [
    "Complexity",
    "DependencyGraph",
    "WavePlan",
    "WorkRequest",
    "build_dependency_graph",
    "collect_graph_violations",
    "find_cycle",
    "infer_complexity",
    "load_work_request",
    "parse_work_request",
    "schedule_waves",
]
