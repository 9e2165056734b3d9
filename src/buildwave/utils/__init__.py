"""Shared utilities: async concurrency primitives and filesystem helpers."""

from buildwave.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    SuspensionGate,
    run_with_timeout,
)
from buildwave.utils.fs import atomic_write, locked_file, read_json, write_json
from buildwave.utils.process import CommandResult, run_command, split_command

__all__ = [
    "BoundedSemaphore",
    "CommandResult",
    "CancellationToken",
    "SuspensionGate",
    "atomic_write",
    "locked_file",
    "read_json",
    "run_command",
    "run_with_timeout",
    "split_command",
    "write_json",
]
