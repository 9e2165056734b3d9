"""Async subprocess execution with timeout, capture and JSON result parsing."""

from __future__ import annotations

import asyncio
import json
import os
import shlex
import time
from collections.abc import Mapping, Sequence
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

MAX_OUTPUT_CHARS = 200_000


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of one external command."""

    argv: tuple[str, ...]
    exit_code: int | None
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.error is None and self.exit_code == 0

    def describe_failure(self) -> str:
        if self.timed_out:
            return self.error or "command timed out"
        if self.error is not None:
            return self.error
        tail = self.stderr.strip().splitlines()[-5:]
        detail = " | ".join(tail) if tail else "no stderr output"
        return f"exit code {self.exit_code}: {detail}"

    def json_payload(self) -> dict[str, Any]:
        """Last JSON object printed on stdout, or an empty mapping."""
        for line in reversed(self.stdout.strip().splitlines()):
            candidate = line.strip()
            if not candidate.startswith("{"):
                continue
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        try:
            parsed = json.loads(self.stdout)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


def split_command(command: str | Sequence[str]) -> tuple[str, ...]:
    argv = tuple(shlex.split(command)) if isinstance(command, str) else tuple(command)
    if not argv:
        raise ValueError("command must not be empty")
    return argv


async def run_command(
    command: str | Sequence[str],
    *,
    timeout_seconds: float | None = None,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    argv = split_command(command)
    merged_env = dict(os.environ)
    merged_env.update(env or {})
    started_ns = time.monotonic_ns()

    try:
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=cwd,
            env=merged_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        return CommandResult(
            argv=argv,
            exit_code=None,
            stdout="",
            stderr="",
            duration_ms=_elapsed_ms(started_ns),
            error=f"{type(exc).__name__}: {exc}",
        )

    try:
        if timeout_seconds is None:
            stdout_bytes, stderr_bytes = await process.communicate()
        else:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(), timeout=timeout_seconds
            )
    except TimeoutError:
        with suppress(ProcessLookupError):
            process.kill()
        stdout_bytes, stderr_bytes = await process.communicate()
        return CommandResult(
            argv=argv,
            exit_code=None,
            stdout=_normalize(stdout_bytes),
            stderr=_normalize(stderr_bytes),
            duration_ms=_elapsed_ms(started_ns),
            timed_out=True,
            error=f"command timed out after {timeout_seconds:.3f}s",
        )
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise

    return CommandResult(
        argv=argv,
        exit_code=process.returncode,
        stdout=_normalize(stdout_bytes),
        stderr=_normalize(stderr_bytes),
        duration_ms=_elapsed_ms(started_ns),
    )


def _elapsed_ms(started_ns: int) -> int:
    return max(time.monotonic_ns() - started_ns, 0) // 1_000_000


def _normalize(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace").replace("\r\n", "\n")
    if len(text) <= MAX_OUTPUT_CHARS:
        return text
    omitted = len(text) - MAX_OUTPUT_CHARS
    return f"{text[:MAX_OUTPUT_CHARS]}\n...[truncated {omitted} chars]"


__all__ = ["CommandResult", "run_command", "split_command"]
