"""Git backend tests against a throwaway repository."""

from __future__ import annotations

import shutil
import subprocess
from typing import TYPE_CHECKING

import pytest

from buildwave.integration_plane.backends import GitIntegrationBackend, MergeConflict

if TYPE_CHECKING:
    from pathlib import Path

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def _git(repo: Path, *args: str) -> str:
    completed = subprocess.run(
        ("git", *args), cwd=repo, check=True, text=True, capture_output=True
    )
    return completed.stdout.strip()


def _commit_on_branch(repo: Path, branch: str, filename: str, content: str) -> None:
    _git(repo, "checkout", "-q", "-b", branch, "integration")
    (repo / filename).write_text(content, encoding="utf-8")
    _git(repo, "add", filename)
    _git(repo, "commit", "-q", "-m", f"change {filename}")
    _git(repo, "checkout", "-q", "main")


def test_prepare_merge_and_reset(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    backend = GitIntegrationBackend(repo)
    root = backend.prepare()
    _commit_on_branch(repo, "work/a/backend/a1", "a.txt", "a\n")

    head = backend.merge("work/a/backend/a1", message="buildwave: merge feature a")

    assert head != root
    assert _git(repo, "show", f"{head}:a.txt") == "a"
    assert backend.ensure_branch("work/b/backend/a1", head) == "work/b/backend/a1"
    assert _git(repo, "rev-parse", "work/b/backend/a1") == head

    backend.reset(root)
    assert backend.head() == root
    assert backend.prepare() == root


def test_conflicting_merge_is_aborted(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    backend = GitIntegrationBackend(repo)
    backend.prepare()
    _commit_on_branch(repo, "work/a/backend/a1", "shared.txt", "one\n")
    _commit_on_branch(repo, "work/b/backend/a1", "shared.txt", "two\n")
    after_a = backend.merge("work/a/backend/a1", message="merge a")

    with pytest.raises(MergeConflict):
        backend.merge("work/b/backend/a1", message="merge b")

    assert backend.head() == after_a


def test_rejects_unknown_merge_strategy(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        GitIntegrationBackend(tmp_path, merge_strategy="octopus")  # type: ignore[arg-type]
