"""Module entrypoint for ``python -m buildwave``."""

from __future__ import annotations

from buildwave.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
