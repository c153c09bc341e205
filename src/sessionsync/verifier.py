"""
Git state verifier -- decides whether it is safe to save or resume.

The checks run as an ordered pipeline. The first four are blockers:
once one fails, nothing after it runs and the operation cannot
proceed. The last two only warn; the caller has to pick one of the
offered resolutions (or force) before the save/resume continues.

    repository? ─no→ NOT_A_REPO
    remote?     ─no→ NO_REMOTE
    reachable?  ─no→ UNREACHABLE
    on branch?  ─no→ DETACHED_HEAD
    clean tree? ─no→ DIRTY      (stash | commit | cancel)
    in step?    ─no→ DIVERGENT  (pull & merge | force pull | cancel)
                 └─→ READY

A check is never cached: every save and resume gets a fresh one.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Iterable, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind, Issue, NetworkTimeout, SessionSyncError
from .git import RepoStatus, VersionControl

logger = logging.getLogger("sessionsync.verifier")


class RepoState(str, Enum):
    """Where the verification pipeline stopped."""

    NOT_A_REPO = "not_a_repo"
    NO_REMOTE = "no_remote"
    UNREACHABLE = "unreachable"
    DETACHED_HEAD = "detached_head"
    DIRTY = "dirty"
    DIVERGENT = "divergent"
    CLEAN = "clean"
    READY = "ready"


class Resolution(str, Enum):
    """Caller decisions that clear a warning."""

    STASH = "stash"
    COMMIT = "commit"
    PULL_MERGE = "pull_merge"
    FORCE_PULL = "force_pull"
    CANCEL = "cancel"


RESOLUTIONS: dict[ErrorKind, tuple[Resolution, ...]] = {
    ErrorKind.DIRTY: (Resolution.STASH, Resolution.COMMIT, Resolution.CANCEL),
    ErrorKind.DIVERGENT: (Resolution.PULL_MERGE, Resolution.FORCE_PULL, Resolution.CANCEL),
}


class GitSafetyCheck(BaseModel):
    """Result of one pass through the verification pipeline."""

    is_repo: bool = False
    has_remote: bool = False
    has_uncommitted_changes: bool = False
    is_online: bool = False
    can_push: bool = False
    is_diverged: bool = False
    state: RepoState = RepoState.NOT_A_REPO
    commit: Optional[str] = None
    branch: Optional[str] = None
    repository_url: Optional[str] = None
    warnings: list[Issue] = Field(default_factory=list)
    errors: list[Issue] = Field(default_factory=list)

    @property
    def blocked(self) -> bool:
        """Errors block unconditionally."""
        return bool(self.errors)

    @property
    def needs_resolution(self) -> bool:
        return not self.errors and bool(self.warnings)

    @property
    def ready(self) -> bool:
        return not self.errors and not self.warnings

    def has(self, kind: ErrorKind) -> bool:
        return any(i.kind == kind for i in self.errors + self.warnings)

    def options(self) -> dict[ErrorKind, tuple[Resolution, ...]]:
        """Resolutions the caller may choose from, per warning."""
        return {w.kind: RESOLUTIONS[w.kind] for w in self.warnings}


async def _bounded(operation, name: str, timeout: float) -> None:
    """Await a git network operation, giving up after ``timeout`` seconds.

    The collaborator is asked to honour the timeout itself; this is the
    outer bound for one that does not.
    """
    try:
        await asyncio.wait_for(operation, timeout=timeout)
    except asyncio.TimeoutError as exc:
        raise NetworkTimeout(
            f"git {name} did not finish within {timeout}s",
            operation=name,
            timeout=timeout,
        ) from exc

class GitStateVerifier:
    """Runs the safety pipeline against a version-control collaborator.

    Args:
        vcs: Repository to inspect.
        reachability_timeout: Seconds to wait for the remote to answer.
    """

    def __init__(self, vcs: VersionControl, reachability_timeout: float = 5.0) -> None:
        self.vcs = vcs
        self.reachability_timeout = reachability_timeout

    async def check(self) -> GitSafetyCheck:
        """Run every check in order and return a fresh result."""
        result = GitSafetyCheck()
        status = self.vcs.status()

        if not status.is_repo:
            return self._fail(result, ErrorKind.NOT_A_REPO, "Not inside a git repository")
        result.is_repo = True
        result.commit = status.commit
        result.branch = status.branch
        result.repository_url = status.remote_url

        if not status.has_remote:
            return self._fail(result, ErrorKind.NO_REMOTE, "Repository has no configured remote")
        result.has_remote = True

        try:
            await _bounded(
                self.vcs.fetch(self.reachability_timeout), "fetch", self.reachability_timeout
            )
        except SessionSyncError as exc:
            return self._fail(
                result,
                ErrorKind.UNREACHABLE,
                "Remote did not respond",
                reason=exc.issue.kind.value,
                detail=str(exc),
                timeout=self.reachability_timeout,
            )
        result.is_online = True
        # Remote-tracking refs moved; ahead/behind must be recomputed.
        status = self.vcs.status()

        if status.detached:
            return self._fail(
                result,
                ErrorKind.DETACHED_HEAD,
                "HEAD is detached; check out a branch first",
                commit=status.commit,
            )

        result.state = RepoState.CLEAN
        if status.dirty:
            result.has_uncommitted_changes = True
            result.state = RepoState.DIRTY
            result.warnings.append(Issue(
                kind=ErrorKind.DIRTY,
                message=f"{len(status.modified_files)} uncommitted change(s)",
                context={
                    "modified_files": status.modified_files,
                    "options": [r.value for r in RESOLUTIONS[ErrorKind.DIRTY]],
                },
            ))

        if status.diverged:
            result.is_diverged = True
            if result.state == RepoState.CLEAN:
                result.state = RepoState.DIVERGENT
            result.warnings.append(Issue(
                kind=ErrorKind.DIVERGENT,
                message=(
                    f"Branch {status.branch} has diverged: "
                    f"{status.ahead} ahead, {status.behind} behind"
                ),
                context={
                    "branch": status.branch,
                    "ahead": status.ahead,
                    "behind": status.behind,
                    "options": [r.value for r in RESOLUTIONS[ErrorKind.DIVERGENT]],
                },
            ))

        result.can_push = not status.behind
        if not result.warnings:
            result.state = RepoState.READY
        logger.debug("Git safety check: %s", result.state.value)
        return result

    def _fail(self, result: GitSafetyCheck, kind: ErrorKind, message: str, **context) -> GitSafetyCheck:
        result.state = RepoState(kind.value)
        result.errors.append(Issue(kind=kind, message=message, context=context))
        logger.info("Git safety check blocked: %s", message)
        return result

    async def resolve(
        self,
        check: GitSafetyCheck,
        resolutions: Iterable[Resolution],
        commit_message: str = "sessionsync: save work in progress",
        timeout: float = 30.0,
    ) -> GitSafetyCheck:
        """Apply caller-chosen resolutions, then re-run the pipeline.

        Resolutions that do not answer any current warning are ignored.
        ``CANCEL`` is the caller's business; it is never applied here.

        Raises:
            SessionSyncError: If the underlying git operation fails.
        """
        chosen = list(resolutions)
        for warning in check.warnings:
            allowed = RESOLUTIONS[warning.kind]
            choice = next((r for r in chosen if r in allowed), None)
            if choice is None or choice == Resolution.CANCEL:
                continue
            logger.info("Resolving %s with %s", warning.kind.value, choice.value)
            await self._apply(choice, check, commit_message, timeout)
        return await self.check()

    async def _apply(
        self,
        choice: Resolution,
        check: GitSafetyCheck,
        commit_message: str,
        timeout: float,
    ) -> None:
        if choice == Resolution.STASH:
            self.vcs.stash()
        elif choice == Resolution.COMMIT:
            self.vcs.commit(commit_message)
        elif choice == Resolution.PULL_MERGE:
            await _bounded(self.vcs.pull(check.branch or "", timeout), "pull", timeout)
        elif choice == Resolution.FORCE_PULL:
            await _bounded(
                self.vcs.reset_to_remote(check.branch or "", timeout), "reset", timeout
            )


def describe_status(status: RepoStatus) -> str:
    """One-line summary of a repository status for logs and the CLI."""
    if not status.is_repo:
        return "not a repository"
    where = status.branch or f"detached at {(status.commit or '')[:8]}"
    parts = [where]
    if status.dirty:
        parts.append(f"{len(status.modified_files)} modified")
    if status.ahead:
        parts.append(f"{status.ahead} ahead")
    if status.behind:
        parts.append(f"{status.behind} behind")
    return ", ".join(parts)
