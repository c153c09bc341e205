"""
Pydantic models for conversations, sessions and code-state markers.

Messages are frozen once created: the stream is append-only and a
message's git context describes the repository at the moment it was
written, not whatever the repository looks like now.
"""

from __future__ import annotations

import socket
import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GitContext(BaseModel):
    """Repository state captured when a message was created."""

    model_config = ConfigDict(frozen=True)

    commit: Optional[str] = None
    branch: Optional[str] = None
    repository: Optional[str] = None
    modified_files: tuple[str, ...] = ()


class Message(BaseModel):
    """A single immutable conversation message.

    Args:
        id: Stable identifier, unique within a conversation.
        role: 'user', 'assistant', 'system' or 'tool'.
        content: Full message body.
        timestamp: Creation time; the stream rejects out-of-order appends.
        git_context: Code state at creation time.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    role: str
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)
    git_context: GitContext = Field(default_factory=GitContext)

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive and aware datetimes do not compare; naive means UTC.
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class GitState(BaseModel):
    """The code-state marker a boundary or session is pinned to."""

    model_config = ConfigDict(frozen=True)

    commit: str
    branch: Optional[str] = None
    repository: Optional[str] = None

    def same_position(self, other: Optional[GitState]) -> bool:
        """True if ``other`` points at the same commit on the same branch."""
        if other is None:
            return False
        return self.commit == other.commit and self.branch == other.branch


class BoundaryRecord(BaseModel):
    """Marks the message index where the conversation's code state changed."""

    message_index: int = Field(ge=0)
    git_state: GitState
    recorded_at: datetime = Field(default_factory=_utcnow)


class Session(BaseModel):
    """A saved link between a conversation and a commit.

    Created on save and never modified afterwards.
    """

    model_config = ConfigDict(frozen=True)

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    git_commit: str
    branch: Optional[str] = None
    repository_url: Optional[str] = None
    conversation_id: str
    device_id: str = Field(default_factory=socket.gethostname)
    timestamp: datetime = Field(default_factory=_utcnow)
    working_directory: str = ""
    message_count: int = 0


class SyncMetadata(BaseModel):
    """Local sync bookkeeping for one conversation.

    ``last_synced_message_index`` never decreases.
    """

    conversation_id: str
    last_synced_message_index: int = 0
    last_snapshot_index: int = 0
    last_synced_timestamp: Optional[datetime] = None
    total_messages: int = 0

    @property
    def is_empty(self) -> bool:
        """True if this device has never synced the conversation."""
        return (
            self.last_synced_message_index == 0
            and self.last_snapshot_index == 0
            and self.last_synced_timestamp is None
        )
