"""Integration line backends: a git CLI wrapper and a deterministic in-memory line."""

from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Literal, Protocol, runtime_checkable

from buildwave.constants import DEFAULT_INTEGRATION_BRANCH, DEFAULT_MAIN_BRANCH

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping, Sequence

MergeStrategy = Literal["no-ff", "ff"]


class IntegrationError(RuntimeError):
    """Base error for integration backend failures."""


class MergeConflict(IntegrationError):
    """A branch could not be merged cleanly into the integration line."""

    def __init__(self, source: str, detail: str) -> None:
        self.source = source
        self.detail = detail
        super().__init__(f"merge of {source!r} failed: {detail}")


class GitCommandError(IntegrationError):
    """Raised when a git subprocess command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@runtime_checkable
class IntegrationBackend(Protocol):
    """Single long-lived integration line plus isolation branches."""

    def prepare(self) -> str:
        """Make sure the integration line exists; return its head."""
        ...

    def head(self) -> str: ...

    def ensure_branch(self, name: str, base: str | None = None) -> str:
        """Create isolation branch ``name`` from ``base`` (default: integration head)."""
        ...

    def merge(self, source: str, *, message: str) -> str:
        """Merge ``source`` into the integration line; returns the new head."""
        ...

    def reset(self, head: str) -> None:
        """Move the integration line back to ``head``."""
        ...


@dataclass(slots=True)
class InMemoryIntegrationBackend:
    """Deterministic integration line for tests and ``--dry-run``.

    Heads are content-addressed from the previous head and the merged source, so two
    runs with the same merge sequence produce the same heads.
    """

    initial_head: str = "mem-root"
    conflicts: set[str] = field(default_factory=set)
    branches: dict[str, str] = field(default_factory=dict)
    history: list[str] = field(default_factory=list)
    merged_sources: list[str] = field(default_factory=list)
    resets: list[tuple[str, str]] = field(default_factory=list)

    def prepare(self) -> str:
        if not self.history:
            self.history.append(self.initial_head)
        return self.head()

    def head(self) -> str:
        if not self.history:
            self.history.append(self.initial_head)
        return self.history[-1]

    def ensure_branch(self, name: str, base: str | None = None) -> str:
        self.branches.setdefault(name, base or self.head())
        return name

    def merge(self, source: str, *, message: str) -> str:
        if source in self.conflicts:
            raise MergeConflict(source, "conflicting changes")
        previous = self.head()
        digest = hashlib.sha256(f"{previous}\x00{source}".encode()).hexdigest()[:12]
        new_head = f"mem-{digest}"
        self.history.append(new_head)
        self.merged_sources.append(source)
        return new_head

    def reset(self, head: str) -> None:
        if head not in self.history:
            raise IntegrationError(f"unknown integration head {head!r}")
        current = self.head()
        while self.history[-1] != head:
            self.history.pop()
            self.merged_sources.pop()
        self.resets.append((current, head))


class GitIntegrationBackend:
    """Deterministic wrapper around the git CLI for the integration line."""

    def __init__(
        self,
        repo_path: Path | str,
        *,
        main_branch: str = DEFAULT_MAIN_BRANCH,
        integration_branch: str = DEFAULT_INTEGRATION_BRANCH,
        merge_strategy: MergeStrategy = "no-ff",
        env_overrides: Mapping[str, str] | None = None,
    ) -> None:
        if merge_strategy not in ("no-ff", "ff"):
            raise ValueError(f"unsupported merge strategy {merge_strategy!r}")
        self.repo_path = Path(repo_path).resolve()
        self.main_branch = main_branch
        self.integration_branch = integration_branch
        self.merge_strategy = merge_strategy
        self._env_overrides = dict(env_overrides or {})

    def prepare(self) -> str:
        """Open or initialize the repository, always ensuring main and integration exist."""
        self.repo_path.mkdir(parents=True, exist_ok=True)
        if not (self.repo_path / ".git").exists():
            self._run_git(["init", "--initial-branch", self.main_branch])
        else:
            self._run_git(["rev-parse", "--git-dir"])

        self._ensure_local_identity()

        if self._run_git(["rev-parse", "--verify", "HEAD"], check=False).returncode != 0:
            self._run_git(["symbolic-ref", "HEAD", f"refs/heads/{self.main_branch}"])
            self._run_git(["commit", "--allow-empty", "-m", "Initialize repository"])

        if not self._branch_exists(self.main_branch):
            self._run_git(["branch", self.main_branch, "HEAD"])
        if not self._branch_exists(self.integration_branch):
            self._run_git(["branch", self.integration_branch, self.main_branch])
        return self.head()

    def head(self) -> str:
        return self._rev_parse(self.integration_branch)

    def ensure_branch(self, name: str, base: str | None = None) -> str:
        if not self._branch_exists(name):
            self._run_git(["branch", name, base or self.integration_branch])
        return name

    def merge(self, source: str, *, message: str) -> str:
        self._require_branch(self.integration_branch)
        if self.merge_strategy == "ff":
            args = ["merge", "--ff-only", source]
        else:
            args = ["merge", "--no-ff", "-m", message, source]
        with self._temporary_worktree(self.integration_branch) as worktree:
            try:
                self._run_git(args, cwd=worktree)
            except GitCommandError as exc:
                self._run_git(["merge", "--abort"], cwd=worktree, check=False)
                raise MergeConflict(source, exc.stderr.strip() or str(exc)) from exc
        return self.head()

    def reset(self, head: str) -> None:
        """Hard-reset the integration branch to ``head`` in a temporary worktree."""
        with self._temporary_worktree(self.integration_branch) as worktree:
            self._run_git(["reset", "--hard", head], cwd=worktree)

    def _ensure_local_identity(self) -> None:
        if self._run_git(["config", "--local", "--get", "user.name"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.name", "buildwave"])
        if self._run_git(["config", "--local", "--get", "user.email"], check=False).returncode != 0:
            self._run_git(["config", "--local", "user.email", "buildwave@example.invalid"])

    def _require_branch(self, branch: str) -> None:
        if not self._branch_exists(branch):
            raise IntegrationError(f"Branch does not exist: {branch}")

    def _branch_exists(self, branch: str) -> bool:
        ref = f"refs/heads/{branch}"
        return self._run_git(["show-ref", "--verify", "--quiet", ref], check=False).returncode == 0

    def _rev_parse(self, ref: str) -> str:
        return self._run_git(["rev-parse", ref]).stdout.strip()

    @contextmanager
    def _temporary_worktree(self, branch: str) -> Iterator[Path]:
        existing = self._existing_worktree_for_branch(branch)
        if existing is not None:
            yield existing
            return

        temp_path = Path(tempfile.mkdtemp(prefix="buildwave-integration-"))
        added = False
        try:
            self._run_git(["worktree", "add", "--force", str(temp_path), branch])
            added = True
            yield temp_path
        finally:
            if added:
                self._run_git(["worktree", "remove", "--force", str(temp_path)], check=False)
                self._run_git(["worktree", "prune"], check=False)
            shutil.rmtree(temp_path, ignore_errors=True)

    def _existing_worktree_for_branch(self, branch: str) -> Path | None:
        output = self._run_git(["worktree", "list", "--porcelain"], check=False).stdout
        branch_ref = f"refs/heads/{branch}"
        current_worktree: Path | None = None
        for line in [*output.splitlines(), ""]:
            if not line:
                current_worktree = None
                continue
            key, _, value = line.partition(" ")
            if key == "worktree":
                current_worktree = Path(value.strip()).resolve(strict=False)
            elif key == "branch" and value.strip() == branch_ref:
                return current_worktree
        return None

    def _run_git(
        self,
        args: Sequence[str],
        *,
        cwd: Path | None = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self._env_overrides)

        completed = subprocess.run(
            command,
            cwd=(cwd if cwd is not None else self.repo_path).resolve(),
            env=env,
            text=True,
            capture_output=True,
            check=False,
        )
        if check and completed.returncode != 0:
            raise GitCommandError(
                command=command,
                returncode=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
            )
        return completed


__all__ = [
    "GitCommandError",
    "GitIntegrationBackend",
    "InMemoryIntegrationBackend",
    "IntegrationBackend",
    "IntegrationError",
    "MergeConflict",
    "MergeStrategy",
]
