"""
Error taxonomy -- every failure is a kind plus context, never a bare string.

Callers branch on ``ErrorKind``; renderers read ``Issue.message`` and
``Issue.context``. Exceptions exist for the places where control flow
has to unwind (stream misuse, git blockers, sync failures), and each one
carries the same structured ``Issue`` it would have been returned as.

Categories:
    git_error    -- blocks save/resume before any network I/O
    git_warning  -- needs an explicit caller resolution
    sync         -- transport, compression and consistency failures
    session      -- missing conversations or sessions
    stream       -- misuse of the append-only message log
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ErrorCategory(str, Enum):
    """Coarse grouping of error kinds."""

    GIT_ERROR = "git_error"
    GIT_WARNING = "git_warning"
    SYNC = "sync"
    SESSION = "session"
    STREAM = "stream"


class ErrorKind(str, Enum):
    """Every failure the sync engine can report."""

    # Git state errors
    NOT_A_REPO = "not_a_repo"
    NO_REMOTE = "no_remote"
    UNREACHABLE = "unreachable"
    DETACHED_HEAD = "detached_head"
    COMMIT_NOT_FOUND = "commit_not_found"
    REPOSITORY_MISMATCH = "repository_mismatch"

    # Git state warnings
    DIRTY = "dirty"
    DIVERGENT = "divergent"

    # Sync errors
    CONFLICT_BASE_MISMATCH = "conflict_base_mismatch"
    COMPRESSION_FAILURE = "compression_failure"
    NETWORK_TIMEOUT = "network_timeout"
    BLOB_STORE_UNAVAILABLE = "blob_store_unavailable"
    SYNC_INCONSISTENCY = "sync_inconsistency"
    RETRY_EXHAUSTED = "retry_exhausted"

    # Session errors
    CONVERSATION_NOT_FOUND = "conversation_not_found"
    SESSION_NOT_FOUND = "session_not_found"

    # Stream errors
    INVALID_APPEND = "invalid_append"
    OUT_OF_RANGE = "out_of_range"
    CORRUPT_STREAM = "corrupt_stream"
    INVALID_IDENTIFIER = "invalid_identifier"

    @property
    def category(self) -> ErrorCategory:
        """Category this kind belongs to."""
        return _CATEGORIES[self]


_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.NOT_A_REPO: ErrorCategory.GIT_ERROR,
    ErrorKind.NO_REMOTE: ErrorCategory.GIT_ERROR,
    ErrorKind.UNREACHABLE: ErrorCategory.GIT_ERROR,
    ErrorKind.DETACHED_HEAD: ErrorCategory.GIT_ERROR,
    ErrorKind.COMMIT_NOT_FOUND: ErrorCategory.GIT_ERROR,
    ErrorKind.REPOSITORY_MISMATCH: ErrorCategory.GIT_ERROR,
    ErrorKind.DIRTY: ErrorCategory.GIT_WARNING,
    ErrorKind.DIVERGENT: ErrorCategory.GIT_WARNING,
    ErrorKind.CONFLICT_BASE_MISMATCH: ErrorCategory.SYNC,
    ErrorKind.COMPRESSION_FAILURE: ErrorCategory.SYNC,
    ErrorKind.NETWORK_TIMEOUT: ErrorCategory.SYNC,
    ErrorKind.BLOB_STORE_UNAVAILABLE: ErrorCategory.SYNC,
    ErrorKind.SYNC_INCONSISTENCY: ErrorCategory.SYNC,
    ErrorKind.RETRY_EXHAUSTED: ErrorCategory.SYNC,
    ErrorKind.CONVERSATION_NOT_FOUND: ErrorCategory.SESSION,
    ErrorKind.SESSION_NOT_FOUND: ErrorCategory.SESSION,
    ErrorKind.INVALID_APPEND: ErrorCategory.STREAM,
    ErrorKind.OUT_OF_RANGE: ErrorCategory.STREAM,
    ErrorKind.CORRUPT_STREAM: ErrorCategory.STREAM,
    ErrorKind.INVALID_IDENTIFIER: ErrorCategory.STREAM,
}


class Issue(BaseModel):
    """A structured error or warning.

    Args:
        kind: What went wrong.
        message: Human-readable description.
        context: Machine-readable details (indices, commits, paths).
    """

    kind: ErrorKind
    message: str
    context: dict[str, Any] = Field(default_factory=dict)

    @property
    def category(self) -> ErrorCategory:
        return self.kind.category

    @property
    def is_warning(self) -> bool:
        """True for conditions a caller may resolve and proceed past."""
        return self.kind.category == ErrorCategory.GIT_WARNING


class SessionSyncError(Exception):
    """Base exception for the sync engine. Carries an ``Issue``."""

    kind: ErrorKind = ErrorKind.SYNC_INCONSISTENCY
    retryable: bool = False

    def __init__(self, message: str, kind: ErrorKind | None = None, **context: Any) -> None:
        super().__init__(message)
        self.issue = Issue(kind=kind or self.kind, message=message, context=context)

    @property
    def context(self) -> dict[str, Any]:
        return self.issue.context


# ---------------------------------------------------------------------------
# Stream errors
# ---------------------------------------------------------------------------


class InvalidAppend(SessionSyncError):
    """Appended message would break creation order."""

    kind = ErrorKind.INVALID_APPEND


class OutOfRange(SessionSyncError):
    """Requested range extends past the end of the stream."""

    kind = ErrorKind.OUT_OF_RANGE


class StreamCorrupted(SessionSyncError):
    """A stored stream line does not parse as a message."""

    kind = ErrorKind.CORRUPT_STREAM


class InvalidIdentifier(SessionSyncError):
    """A conversation or session id that cannot name a file."""

    kind = ErrorKind.INVALID_IDENTIFIER


# ---------------------------------------------------------------------------
# Session errors
# ---------------------------------------------------------------------------


class ConversationNotFound(SessionSyncError):
    kind = ErrorKind.CONVERSATION_NOT_FOUND


class SessionNotFound(SessionSyncError):
    kind = ErrorKind.SESSION_NOT_FOUND


# ---------------------------------------------------------------------------
# Git state errors
# ---------------------------------------------------------------------------


class GitStateError(SessionSyncError):
    """A repository condition that blocks save/resume outright."""

    kind = ErrorKind.NOT_A_REPO


class CommitNotFound(GitStateError):
    kind = ErrorKind.COMMIT_NOT_FOUND


class RepositoryMismatch(GitStateError):
    """Local HEAD is not the commit the session was saved against."""

    kind = ErrorKind.REPOSITORY_MISMATCH


class GitCommandError(SessionSyncError):
    """A version-control command exited non-zero."""

    kind = ErrorKind.UNREACHABLE


# ---------------------------------------------------------------------------
# Sync errors
# ---------------------------------------------------------------------------


class SyncError(SessionSyncError):
    """Base for transport and consistency failures."""


class ConflictBaseMismatch(SyncError):
    """Server's message total differs from the delta's base index.

    Another device uploaded first.
    """

    kind = ErrorKind.CONFLICT_BASE_MISMATCH

    def __init__(self, expected_base: int, base_index: int, **context: Any) -> None:
        super().__init__(
            f"Delta base {base_index} does not match server total {expected_base}",
            expected_base=expected_base,
            base_index=base_index,
            **context,
        )
        self.expected_base = expected_base
        self.base_index = base_index


class CompressionFailure(SyncError):
    kind = ErrorKind.COMPRESSION_FAILURE


class NetworkTimeout(SyncError):
    kind = ErrorKind.NETWORK_TIMEOUT
    retryable = True


class BlobStoreUnavailable(SyncError):
    kind = ErrorKind.BLOB_STORE_UNAVAILABLE
    retryable = True


class SyncInconsistencyError(SyncError):
    """Downloaded deltas do not line up with the merged stream."""

    kind = ErrorKind.SYNC_INCONSISTENCY


class FatalSyncError(SyncError):
    """The full-snapshot fallback failed too. Nothing left to try."""

    def __init__(self, message: str, cause: SessionSyncError, **context: Any) -> None:
        super().__init__(message, kind=cause.issue.kind, cause=cause.issue.message, **context)
        self.cause = cause
