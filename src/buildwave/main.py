"""Console-script entrypoint for ``buildwave``; maps failures to the exit-code contract."""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    REJECTED = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and never let an exception escape as a raw traceback exit."""
    try:
        from buildwave.ui.cli import run_cli

        return _exit_code_from(run_cli(argv))
    except SystemExit as exc:
        return _exit_code_from(exc.code)
    except Exception as exc:  # noqa: BLE001
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(exc, file=sys.stderr)
        else:
            print(str(exc).strip() or type(exc).__name__, file=sys.stderr)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Exit code for ``exc``, judged by the first recognised error in its cause chain."""
    from buildwave.config import ConfigLoadError, ConfigValidationError
    from buildwave.domain.errors import BuildwaveError, StoreUnavailable, ValidationError

    for item in _cause_chain(exc):
        if isinstance(item, (ConfigLoadError, ConfigValidationError, ValidationError)):
            return ExitCode.CONFIG_ERROR
        if isinstance(item, StoreUnavailable):
            return ExitCode.INTERNAL_ERROR
        if isinstance(item, BuildwaveError):
            return ExitCode.REJECTED
    return ExitCode.INTERNAL_ERROR


def _exit_code_from(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in ExitCode._value2member_map_:
        return raw
    if isinstance(raw, str) and raw.strip():
        print(raw.strip(), file=sys.stderr)
    return int(ExitCode.INTERNAL_ERROR)


def _cause_chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
