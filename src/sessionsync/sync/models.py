"""
Sync data models -- configuration, transfer shapes and results.
"""

from __future__ import annotations

import socket
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from ..errors import Issue
from ..models import Session, SyncMetadata
from ..verifier import GitSafetyCheck

DEFAULT_SNAPSHOT_THRESHOLD = 1000


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class BlobStoreType(str, Enum):
    """Supported blob store backends."""

    LOCAL = "local"
    MEMORY = "memory"


class BlobStoreConfig(BaseModel):
    """Which blob store to talk to, and where it lives.

    Written as ``type`` in ``config.yaml``; ``store_type`` is accepted too.
    """

    model_config = ConfigDict(populate_by_name=True)

    store_type: BlobStoreType = Field(default=BlobStoreType.LOCAL, alias="type")
    path: Optional[Path] = None


class SyncConfig(BaseModel):
    """Complete sync configuration, read from ``config.yaml``."""

    snapshot_threshold: int = Field(default=DEFAULT_SNAPSHOT_THRESHOLD, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    backoff_base: float = 0.5
    backoff_max: float = 8.0
    network_timeout: float = 30.0
    reachability_timeout: float = 5.0
    compression_level: int = Field(default=9, ge=0, le=9)
    encrypt: bool = False
    device_id: str = Field(default_factory=socket.gethostname)
    blob_store: BlobStoreConfig = Field(default_factory=BlobStoreConfig)


# ---------------------------------------------------------------------------
# Transfer shapes
# ---------------------------------------------------------------------------


class SnapshotRequest(BaseModel):
    """Upload every message: covers ``[0, message_count)``."""

    conversation_id: str
    message_count: int

    @property
    def start(self) -> int:
        return 0

    @property
    def end(self) -> int:
        return self.message_count


class DeltaRequest(BaseModel):
    """Upload only new messages: covers ``[base_index, base_index + message_count)``."""

    conversation_id: str
    base_index: int
    message_count: int

    @property
    def start(self) -> int:
        return self.base_index

    @property
    def end(self) -> int:
        return self.base_index + self.message_count


class NoOp(BaseModel):
    """Nothing to upload."""

    conversation_id: str
    reason: str = "no new messages"


SyncRequest = Union[SnapshotRequest, DeltaRequest, NoOp]


class CompressionStats(BaseModel):
    """Sizes before and after compression."""

    original_size: int
    compressed_size: int

    @property
    def ratio(self) -> float:
        """Compressed size as a fraction of the original (lower is better)."""
        if self.original_size == 0:
            return 1.0
        return self.compressed_size / self.original_size


class CompressedPayload(BaseModel):
    data: bytes
    stats: CompressionStats


class Snapshot(BaseModel):
    """A stored full copy of a conversation's first ``message_count`` messages."""

    conversation_id: str
    message_count: int
    payload: bytes
    timestamp: datetime = Field(default_factory=_utcnow)
    snapshot_id: str = ""


class Delta(BaseModel):
    """A stored copy of ``message_count`` messages starting at ``base_index``."""

    conversation_id: str
    base_index: int
    message_count: int
    payload: bytes
    timestamp: datetime = Field(default_factory=_utcnow)
    delta_id: str = ""


class DeltaRef(BaseModel):
    """Listing entry for a stored delta; fetch the payload separately."""

    delta_id: str
    base_index: int
    message_count: int
    timestamp: datetime


class CloudMetadata(BaseModel):
    """What the blob store knows about a conversation."""

    conversation_id: str
    total_messages: int = 0
    latest_snapshot_index: int = 0
    compression_ratio: float = 1.0


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class SyncDirection(str, Enum):
    UPLOAD = "upload"
    DOWNLOAD = "download"


class SyncAction(str, Enum):
    """What a sync operation ended up transferring."""

    NOOP = "noop"
    SNAPSHOT = "snapshot"
    DELTA = "delta"
    ESCALATED_SNAPSHOT = "escalated_snapshot"
    FULL_SNAPSHOT = "full_snapshot"


class SyncResult(BaseModel):
    """Outcome of an upload or download.

    A failed result leaves local state exactly as it was; ``issue``
    says why.
    """

    conversation_id: str
    direction: SyncDirection
    ok: bool = True
    action: SyncAction = SyncAction.NOOP
    start: int = 0
    end: int = 0
    attempts: int = 0
    stats: Optional[CompressionStats] = None
    metadata: Optional[SyncMetadata] = None
    issue: Optional[Issue] = None

    @property
    def message_count(self) -> int:
        return self.end - self.start


class SaveResult(BaseModel):
    """Outcome of saving a conversation against the current commit."""

    ok: bool
    check: GitSafetyCheck
    sync: Optional[SyncResult] = None
    session: Optional[Session] = None
    issues: list[Issue] = Field(default_factory=list)
    awaiting_resolution: bool = False


class ResumeResult(BaseModel):
    """Outcome of restoring a saved session on this device."""

    ok: bool
    check: GitSafetyCheck
    session: Optional[Session] = None
    sync: Optional[SyncResult] = None
    issues: list[Issue] = Field(default_factory=list)
    awaiting_resolution: bool = False
