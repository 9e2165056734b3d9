"""
Verification stage adapters.

A stage receives the integration reference and returns a ``VerificationRun``. Stage
internals are external; these adapters only normalize their results.

``CommandStage`` contract
- The command runs with ``BUILDWAVE_STAGE`` and ``BUILDWAVE_INTEGRATION_REF`` in its
  environment.
- Exit code 0 means pass, anything else fail. A timeout is a failure.
- Optional JSON on stdout: ``{"blocking": bool, "diagnostics": [...], "metrics": {...}}``.
"""

from __future__ import annotations

import inspect
import math
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable

from buildwave.domain.models import StageOutcome, VerificationRun
from buildwave.utils.process import run_command

StageOutput: TypeAlias = VerificationRun | bool | Mapping[str, Any]
StageCallable: TypeAlias = Callable[[str], "StageOutput | Awaitable[StageOutput]"]


@runtime_checkable
class Stage(Protocol):
    name: str

    async def run(self, integration_ref: str) -> VerificationRun: ...


@dataclass(slots=True)
class StaticStage:
    """Stage with a fixed verdict; always-pass instances back ``--dry-run``."""

    name: str
    result: StageOutcome = StageOutcome.PASS
    blocking: bool = False
    diagnostics: tuple[str, ...] = ()
    metrics: Mapping[str, float] = field(default_factory=dict)
    calls: int = 0

    async def run(self, integration_ref: str) -> VerificationRun:
        self.calls += 1
        return VerificationRun(
            stage=self.name,
            input_ref=integration_ref,
            result=self.result,
            blocking=self.blocking and self.result is StageOutcome.FAIL,
            diagnostics=self.diagnostics,
            metrics=self.metrics,
        )


class CallableStage:
    """Wraps a sync or async callable taking the integration ref."""

    def __init__(self, name: str, func: StageCallable) -> None:
        self.name = name
        self._func = func

    async def run(self, integration_ref: str) -> VerificationRun:
        candidate = self._func(integration_ref)
        output = await candidate if inspect.isawaitable(candidate) else candidate
        return normalize_stage_output(self.name, integration_ref, output)


class CommandStage:
    def __init__(
        self,
        name: str,
        command: str | Sequence[str],
        *,
        timeout_seconds: float,
        cwd: str | None = None,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        self.name = name
        self._command = command
        self._timeout_seconds = timeout_seconds
        self._cwd = cwd

    async def run(self, integration_ref: str) -> VerificationRun:
        result = await run_command(
            self._command,
            timeout_seconds=self._timeout_seconds,
            cwd=self._cwd,
            env={"BUILDWAVE_STAGE": self.name, "BUILDWAVE_INTEGRATION_REF": integration_ref},
        )
        payload = result.json_payload()
        diagnostics = _string_tuple(payload.get("diagnostics", ()))
        if not result.ok and not diagnostics:
            diagnostics = (result.describe_failure(),)
        return VerificationRun(
            stage=self.name,
            input_ref=integration_ref,
            result=StageOutcome.PASS if result.ok else StageOutcome.FAIL,
            blocking=bool(payload.get("blocking", False)) and not result.ok,
            diagnostics=diagnostics,
            metrics=_metrics(payload.get("metrics", {})),
        )


def normalize_stage_output(stage: str, integration_ref: str, output: object) -> VerificationRun:
    if isinstance(output, VerificationRun):
        if output.stage != stage:
            raise ValueError(f"stage {stage!r} returned a result for {output.stage!r}")
        return output
    if isinstance(output, bool):
        return VerificationRun(
            stage=stage,
            input_ref=integration_ref,
            result=StageOutcome.PASS if output else StageOutcome.FAIL,
        )
    if isinstance(output, Mapping):
        raw_result = output.get("result", StageOutcome.PASS.value)
        result = StageOutcome(str(raw_result).strip().lower())
        return VerificationRun(
            stage=stage,
            input_ref=integration_ref,
            result=result,
            blocking=bool(output.get("blocking", False)) and result is StageOutcome.FAIL,
            diagnostics=_string_tuple(output.get("diagnostics", ())),
            metrics=_metrics(output.get("metrics", {})),
        )
    raise TypeError(
        "stage output must be VerificationRun, bool, or Mapping[str, object]; "
        f"got {type(output).__name__}"
    )


def _string_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, str):
        return (value,) if value else ()
    if isinstance(value, Sequence):
        return tuple(str(item) for item in value)
    return ()


def _metrics(value: object) -> dict[str, float]:
    if not isinstance(value, Mapping):
        return {}
    out: dict[str, float] = {}
    for key, raw in value.items():
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            continue
        if not math.isfinite(raw):
            continue
        out[str(key)] = float(raw)
    return out


__all__ = [
    "CallableStage",
    "CommandStage",
    "Stage",
    "StageCallable",
    "StageOutput",
    "StaticStage",
    "normalize_stage_output",
]
