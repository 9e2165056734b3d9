"""Unit tests for subprocess helpers."""

from __future__ import annotations

import sys

import pytest

from buildwave.utils.process import CommandResult, run_command, split_command


@pytest.mark.asyncio
async def test_run_command_captures_output() -> None:
    result = await run_command(
        [sys.executable, "-c", "import json; print('log line'); print(json.dumps({'ok': 1}))"],
        timeout_seconds=30,
    )

    assert result.ok
    assert result.json_payload() == {"ok": 1}


@pytest.mark.asyncio
async def test_run_command_reports_exit_code_and_stderr() -> None:
    result = await run_command(
        [sys.executable, "-c", "import sys; sys.stderr.write('bad thing\\n'); sys.exit(3)"],
        timeout_seconds=30,
    )

    assert not result.ok
    assert result.exit_code == 3
    assert result.describe_failure() == "exit code 3: bad thing"


@pytest.mark.asyncio
async def test_run_command_times_out() -> None:
    result = await run_command(
        [sys.executable, "-c", "import time; time.sleep(5)"], timeout_seconds=0.2
    )

    assert result.timed_out
    assert "timed out" in result.describe_failure()


@pytest.mark.asyncio
async def test_missing_executable_is_an_error_result() -> None:
    result = await run_command(["definitely-not-a-real-binary-xyz"])

    assert not result.ok
    assert result.error is not None and "FileNotFoundError" in result.error


def test_split_command_and_empty_payload() -> None:
    assert split_command("worker --role 'backend dev'") == ("worker", "--role", "backend dev")
    with pytest.raises(ValueError):
        split_command("")
    empty = CommandResult(argv=("x",), exit_code=0, stdout="not json", stderr="", duration_ms=1)
    assert empty.json_payload() == {}
