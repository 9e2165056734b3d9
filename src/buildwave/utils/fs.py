"""
Filesystem helpers for atomic JSON snapshots and advisory locking.

Functional requirements
- Atomic writes use a temp file in the destination directory and ``os.replace``.
- Locks use a ``.lock`` sidecar so the data file can be replaced while locked.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import os
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

_LOCK_SUFFIX = ".lock"

__all__ = [
    "atomic_write",
    "locked_file",
    "read_json",
    "write_json",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Atomically write ``data`` to ``path`` (temp file, fsync, ``os.replace``)."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        payload = data if isinstance(data, bytes) else data.encode(encoding)
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def write_json(path: PathLike, payload: Any) -> None:
    atomic_write(path, json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False) + "\n")


def read_json(path: PathLike, default: Any = None) -> Any:
    """Parsed JSON at ``path``, or ``default`` when the file does not exist."""
    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    return json.loads(text)


@contextmanager
def locked_file(path: PathLike) -> Iterator[None]:
    """Hold an exclusive advisory lock on ``path`` for the duration of the block."""
    lock_path = Path(f"{os.fspath(path)}{_LOCK_SUFFIX}")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with lock_path.open("a+", encoding="utf-8") as lock_handle:
        fcntl.flock(lock_handle.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_handle.fileno(), fcntl.LOCK_UN)
