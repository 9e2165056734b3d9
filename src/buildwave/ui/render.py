"""Plain-text rendering for CLI output; ``--json`` output never goes through here."""

from __future__ import annotations

import sys
from typing import TYPE_CHECKING, TextIO

if TYPE_CHECKING:
    from collections.abc import Sequence


class CLIRenderer:
    def __init__(self, *, verbose: bool = False, stream: TextIO | None = None) -> None:
        self.verbose = verbose
        self._stream = stream

    def _write(self, line: str = "") -> None:
        print(line, file=self._stream or sys.stdout)

    def text(self, line: str) -> None:
        self._write(line)

    def kv(self, key: str, value: object) -> None:
        self._write(f"{key}: {value}")

    def section(self, title: str) -> None:
        self._write()
        self._write(title)

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self._write(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns, each as wide as its widest cell; no output for no rows."""
        if not rows:
            return
        cells = [[str(value) for value in row[: len(headers)]] for row in rows]
        widths = [
            max([len(header), *(len(row[index]) for row in cells if index < len(row))])
            for index, header in enumerate(headers)
        ]

        def line(values: Sequence[str]) -> str:
            padded = [
                (values[index] if index < len(values) else "").ljust(width)
                for index, width in enumerate(widths)
            ]
            return "  " + "  ".join(padded).rstrip()

        if title:
            self.section(title)
        self._write(line(list(headers)))
        self._write(line(["-" * width for width in widths]))
        for row in cells:
            self._write(line(row))

    def next_steps(self, commands: Sequence[str]) -> None:
        if commands:
            self.section("Next steps:")
            for command in commands:
                self._write(f"  $ {command}")


def create_renderer(*, verbose: bool = False, stream: TextIO | None = None) -> CLIRenderer:
    return CLIRenderer(verbose=verbose, stream=stream)


__all__ = ["CLIRenderer", "create_renderer"]
