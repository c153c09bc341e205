"""
Version-control collaborator -- what the sync engine needs from git.

The engine only talks to the ``VersionControl`` interface. ``GitRepository``
implements it on top of the ``git`` CLI: local queries run through
``subprocess.run``, anything that touches the network runs as an asyncio
subprocess under a timeout so it can be cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .errors import CommitNotFound, ErrorKind, GitCommandError, NetworkTimeout
from .models import GitContext, GitState

logger = logging.getLogger("sessionsync.git")


class RepoStatus(BaseModel):
    """Local repository facts, gathered without touching the network."""

    is_repo: bool = False
    commit: Optional[str] = None
    branch: Optional[str] = None
    detached: bool = False
    remote_url: Optional[str] = None
    remotes: list[str] = Field(default_factory=list)
    modified_files: list[str] = Field(default_factory=list)
    ahead: Optional[int] = None
    behind: Optional[int] = None

    @property
    def has_remote(self) -> bool:
        return bool(self.remotes)

    @property
    def dirty(self) -> bool:
        return bool(self.modified_files)

    @property
    def diverged(self) -> bool:
        """Both sides have commits the other lacks."""
        return bool(self.ahead) and bool(self.behind)


class VersionControl(ABC):
    """Abstract version-control collaborator."""

    @abstractmethod
    def status(self) -> RepoStatus:
        """Describe the working copy: branch, HEAD, remotes, local changes."""

    @abstractmethod
    def commit(self, message: str) -> str:
        """Commit every local change and return the new commit id."""

    @abstractmethod
    def stash(self) -> None:
        """Set local changes aside, leaving a clean working tree."""

    @abstractmethod
    def checkout(self, target: str) -> None:
        """Check out a branch or commit."""

    @abstractmethod
    def rev_parse(self, ref: str) -> str:
        """Resolve a ref to a full commit id.

        Raises:
            CommitNotFound: If the ref does not resolve.
        """

    @abstractmethod
    async def fetch(self, timeout: float) -> None:
        """Fetch from the remote; doubles as the reachability probe."""

    @abstractmethod
    async def push(self, branch: str, timeout: float) -> None:
        """Push ``branch`` to the remote."""

    @abstractmethod
    async def pull(self, branch: str, timeout: float) -> None:
        """Pull ``branch`` from the remote, merging into the local branch."""

    @abstractmethod
    async def reset_to_remote(self, branch: str, timeout: float) -> None:
        """Discard local history and match the remote ``branch`` exactly."""


def capture_git_context(vcs: VersionControl) -> GitContext:
    """Snapshot the repository state for a new message."""
    status = vcs.status()
    if not status.is_repo:
        return GitContext()
    return GitContext(
        commit=status.commit,
        branch=status.branch,
        repository=status.remote_url,
        modified_files=tuple(status.modified_files),
    )


def current_git_state(vcs: VersionControl) -> Optional[GitState]:
    """The commit/branch marker for the working copy, or None outside a repo."""
    status = vcs.status()
    if not status.is_repo or not status.commit:
        return None
    return GitState(
        commit=status.commit,
        branch=status.branch,
        repository=status.remote_url,
    )


class GitRepository(VersionControl):
    """``git`` CLI implementation of the version-control collaborator.

    Args:
        path: Working directory of the repository.
        remote: Remote name used for fetch/push/pull.
    """

    def __init__(self, path: Path, remote: str = "origin") -> None:
        self.path = path.expanduser()
        self.remote = remote

    def _run(self, *args: str) -> subprocess.CompletedProcess:
        return subprocess.run(
            ["git", *args],
            capture_output=True,
            text=True,
            check=False,
            cwd=str(self.path),
        )

    def _output(self, *args: str) -> Optional[str]:
        result = self._run(*args)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def _require(self, *args: str) -> str:
        result = self._run(*args)
        if result.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {result.stderr.strip()}",
                kind=ErrorKind.NOT_A_REPO,
                command=list(args),
                returncode=result.returncode,
            )
        return result.stdout.strip()

    def status(self) -> RepoStatus:
        try:
            inside = self._output("rev-parse", "--is-inside-work-tree")
        except FileNotFoundError:
            logger.warning("git executable not found")
            return RepoStatus()
        if inside != "true":
            return RepoStatus()

        commit = self._output("rev-parse", "HEAD")
        branch = self._output("symbolic-ref", "--short", "-q", "HEAD") or None
        remotes = (self._output("remote") or "").split()
        remote_url = None
        if self.remote in remotes:
            remote_url = self._output("remote", "get-url", self.remote)

        # Not stripped: the status column may start with a space.
        porcelain = self._run("status", "--porcelain")
        lines = porcelain.stdout.splitlines() if porcelain.returncode == 0 else []
        modified = [line[3:] for line in lines if len(line) > 3]

        ahead = behind = None
        if branch and self.remote in remotes:
            counts = self._output(
                "rev-list", "--left-right", "--count",
                f"HEAD...{self.remote}/{branch}",
            )
            if counts:
                left, right = counts.split()
                ahead, behind = int(left), int(right)

        return RepoStatus(
            is_repo=True,
            commit=commit,
            branch=branch,
            detached=branch is None,
            remote_url=remote_url,
            remotes=remotes,
            modified_files=modified,
            ahead=ahead,
            behind=behind,
        )

    def commit(self, message: str) -> str:
        self._require("add", "-A")
        self._require("commit", "-m", message)
        return self._require("rev-parse", "HEAD")

    def stash(self) -> None:
        self._require("stash", "push", "--include-untracked")

    def checkout(self, target: str) -> None:
        self._require("checkout", target)

    def rev_parse(self, ref: str) -> str:
        commit = self._output("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}")
        if not commit:
            raise CommitNotFound(f"Commit {ref} not found", ref=ref)
        return commit

    async def _run_async(self, *args: str, timeout: float) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(self.path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise GitCommandError("git executable not found", kind=ErrorKind.NOT_A_REPO) from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise NetworkTimeout(
                f"git {args[0]} timed out after {timeout}s",
                command=list(args),
                timeout=timeout,
            ) from exc

        if proc.returncode != 0:
            raise GitCommandError(
                f"git {' '.join(args)} failed: {stderr.decode(errors='replace').strip()}",
                command=list(args),
                returncode=proc.returncode,
            )
        return stdout.decode(errors="replace").strip()

    async def fetch(self, timeout: float) -> None:
        await self._run_async("fetch", "--quiet", self.remote, timeout=timeout)

    async def push(self, branch: str, timeout: float) -> None:
        await self._run_async("push", self.remote, branch, timeout=timeout)

    async def pull(self, branch: str, timeout: float) -> None:
        await self._run_async("pull", "--no-rebase", self.remote, branch, timeout=timeout)

    async def reset_to_remote(self, branch: str, timeout: float) -> None:
        await self.fetch(timeout)
        self._require("reset", "--hard", f"{self.remote}/{branch}")
