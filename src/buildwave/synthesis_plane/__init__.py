"""Synthesis plane: worker adapters and the wave dispatcher."""

from buildwave.synthesis_plane.dispatch import DispatchEvent, WorkerDispatcher, build_subject
from buildwave.synthesis_plane.workers import (
    CallableWorker,
    CommandWorker,
    DryRunWorker,
    Worker,
    WorkerRouter,
    worker_environment,
)

__all__ = [
    "CallableWorker",
    "CommandWorker",
    "DispatchEvent",
    "DryRunWorker",
    "Worker",
    "WorkerDispatcher",
    "WorkerRouter",
    "build_subject",
    "worker_environment",
]
