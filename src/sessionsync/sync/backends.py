"""
Blob store backends -- where snapshots and deltas live.

The coordinator only sees the ``BlobStore`` interface. Every backend
enforces the same server-side rule: a delta is accepted only if its
base index equals the conversation's current total. Anything else
means another device got there first, and the upload is rejected with
``ConflictBaseMismatch`` rather than silently spliced in.

Memory: in-process dict. For tests and single-process use.
Local:  plain directory tree. For USB drives, NAS, or a synced folder.

Local layout:
    <root>/<conversation_id>/
    ├── manifest.json
    └── blobs/
        ├── snap-<count>-<id>.bin
        └── delta-<base>-<count>-<id>.bin
    <root>/.sessions/
    └── <session_id>.json
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .._fs import atomic_write_bytes, atomic_write_text, safe_name
from ..errors import (
    BlobStoreUnavailable,
    ConflictBaseMismatch,
    ConversationNotFound,
    SessionNotFound,
    SyncInconsistencyError,
)
from ..models import Session
from .models import (
    BlobStoreConfig,
    BlobStoreType,
    CloudMetadata,
    CompressionStats,
    Delta,
    DeltaRef,
    Snapshot,
)

logger = logging.getLogger("sessionsync.sync.backends")


class BlobStore(ABC):
    """Abstract snapshot/delta store."""

    @abstractmethod
    async def upload_snapshot(
        self,
        conversation_id: str,
        compressed_blob: bytes,
        message_count: int,
        stats: Optional[CompressionStats] = None,
    ) -> str:
        """Store a snapshot covering ``[0, message_count)``.

        Returns:
            The snapshot id.
        """

    @abstractmethod
    async def upload_delta(
        self,
        conversation_id: str,
        base_index: int,
        compressed_blob: bytes,
        message_count: int,
        stats: Optional[CompressionStats] = None,
    ) -> str:
        """Store a delta covering ``[base_index, base_index + message_count)``.

        Returns:
            The delta id.

        Raises:
            ConflictBaseMismatch: If ``base_index`` is not the stored total.
        """

    @abstractmethod
    async def list_deltas(self, conversation_id: str, after_index: int) -> list[DeltaRef]:
        """Deltas with ``base_index >= after_index``, ascending by base index."""

    @abstractmethod
    async def get_metadata(self, conversation_id: str) -> CloudMetadata:
        """Totals for a conversation; zeros if the store has never seen it."""

    @abstractmethod
    async def fetch_snapshot(self, conversation_id: str) -> Snapshot:
        """The latest snapshot.

        Raises:
            ConversationNotFound: If no snapshot was ever uploaded.
        """

    @abstractmethod
    async def fetch_delta(self, conversation_id: str, delta_id: str) -> Delta:
        """A stored delta by id."""

    @abstractmethod
    async def publish_session(self, session: Session) -> None:
        """Store a saved session so other devices can resume it."""

    @abstractmethod
    async def fetch_session(self, session_id: str) -> Session:
        """A published session by id.

        Raises:
            SessionNotFound: If no device published it.
        """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


class SnapshotEntry(BaseModel):
    snapshot_id: str
    message_count: int
    timestamp: datetime


class ConversationManifest(BaseModel):
    """Server-side record of one conversation's blobs."""

    conversation_id: str
    total_messages: int = 0
    latest_snapshot_index: int = 0
    compression_ratio: float = 1.0
    snapshot: Optional[SnapshotEntry] = None
    deltas: list[DeltaRef] = Field(default_factory=list)

    def metadata(self) -> CloudMetadata:
        return CloudMetadata(
            conversation_id=self.conversation_id,
            total_messages=self.total_messages,
            latest_snapshot_index=self.latest_snapshot_index,
            compression_ratio=self.compression_ratio,
        )


class ManifestBlobStore(BlobStore):
    """Shared bookkeeping for stores that keep a manifest beside the blobs.

    Blobs are written before the manifest; the manifest write is the
    commit point, so a crash in between leaves an orphan blob and no
    visible change.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @abstractmethod
    def _load_manifest(self, conversation_id: str) -> ConversationManifest:
        ...

    @abstractmethod
    def _save_manifest(self, manifest: ConversationManifest) -> None:
        ...

    @abstractmethod
    def _write_blob(self, conversation_id: str, blob_id: str, data: bytes) -> None:
        ...

    @abstractmethod
    def _read_blob(self, conversation_id: str, blob_id: str) -> Optional[bytes]:
        ...

    @abstractmethod
    def _delete_blob(self, conversation_id: str, blob_id: str) -> None:
        ...

    async def upload_snapshot(
        self,
        conversation_id: str,
        compressed_blob: bytes,
        message_count: int,
        stats: Optional[CompressionStats] = None,
    ) -> str:
        async with self._lock:
            manifest = self._load_manifest(conversation_id)
            if message_count < manifest.total_messages:
                logger.warning(
                    "Snapshot of %s shrinks stored total %d -> %d",
                    conversation_id, manifest.total_messages, message_count,
                )

            snapshot_id = f"snap-{message_count}-{uuid.uuid4().hex[:8]}"
            self._write_blob(conversation_id, snapshot_id, compressed_blob)

            previous = manifest.snapshot
            superseded = [
                d for d in manifest.deltas
                if d.base_index + d.message_count > message_count
            ]
            manifest.deltas = [d for d in manifest.deltas if d not in superseded]
            manifest.snapshot = SnapshotEntry(
                snapshot_id=snapshot_id,
                message_count=message_count,
                timestamp=datetime.now(timezone.utc),
            )
            manifest.total_messages = message_count
            manifest.latest_snapshot_index = message_count
            if stats is not None:
                manifest.compression_ratio = stats.ratio
            self._save_manifest(manifest)

            if previous is not None:
                self._delete_blob(conversation_id, previous.snapshot_id)
            for delta in superseded:
                self._delete_blob(conversation_id, delta.delta_id)

        logger.info(
            "Stored snapshot %s for %s (%d messages) in %s",
            snapshot_id, conversation_id, message_count, self.name,
        )
        return snapshot_id

    async def upload_delta(
        self,
        conversation_id: str,
        base_index: int,
        compressed_blob: bytes,
        message_count: int,
        stats: Optional[CompressionStats] = None,
    ) -> str:
        async with self._lock:
            manifest = self._load_manifest(conversation_id)
            if base_index != manifest.total_messages:
                raise ConflictBaseMismatch(
                    expected_base=manifest.total_messages,
                    base_index=base_index,
                    conversation_id=conversation_id,
                )

            delta_id = f"delta-{base_index:08d}-{message_count}-{uuid.uuid4().hex[:8]}"
            self._write_blob(conversation_id, delta_id, compressed_blob)
            manifest.deltas.append(DeltaRef(
                delta_id=delta_id,
                base_index=base_index,
                message_count=message_count,
                timestamp=datetime.now(timezone.utc),
            ))
            manifest.total_messages = base_index + message_count
            if stats is not None:
                manifest.compression_ratio = stats.ratio
            self._save_manifest(manifest)

        logger.info(
            "Stored delta %s for %s ([%d, %d)) in %s",
            delta_id, conversation_id, base_index, base_index + message_count, self.name,
        )
        return delta_id

    async def list_deltas(self, conversation_id: str, after_index: int) -> list[DeltaRef]:
        manifest = self._load_manifest(conversation_id)
        return sorted(
            (d for d in manifest.deltas if d.base_index >= after_index),
            key=lambda d: d.base_index,
        )

    async def get_metadata(self, conversation_id: str) -> CloudMetadata:
        return self._load_manifest(conversation_id).metadata()

    async def fetch_snapshot(self, conversation_id: str) -> Snapshot:
        manifest = self._load_manifest(conversation_id)
        entry = manifest.snapshot
        data = self._read_blob(conversation_id, entry.snapshot_id) if entry else None
        if entry is None or data is None:
            raise ConversationNotFound(
                f"No snapshot stored for {conversation_id}",
                conversation_id=conversation_id,
            )
        return Snapshot(
            conversation_id=conversation_id,
            message_count=entry.message_count,
            payload=data,
            timestamp=entry.timestamp,
            snapshot_id=entry.snapshot_id,
        )

    async def fetch_delta(self, conversation_id: str, delta_id: str) -> Delta:
        manifest = self._load_manifest(conversation_id)
        ref = next((d for d in manifest.deltas if d.delta_id == delta_id), None)
        data = self._read_blob(conversation_id, delta_id) if ref else None
        if ref is None or data is None:
            raise SyncInconsistencyError(
                f"Delta {delta_id} is no longer stored",
                conversation_id=conversation_id,
                delta_id=delta_id,
            )
        return Delta(
            conversation_id=conversation_id,
            base_index=ref.base_index,
            message_count=ref.message_count,
            payload=data,
            timestamp=ref.timestamp,
            delta_id=delta_id,
        )


class MemoryBlobStore(ManifestBlobStore):
    """In-process blob store."""

    def __init__(self) -> None:
        super().__init__()
        self._manifests: dict[str, ConversationManifest] = {}
        self._blobs: dict[tuple[str, str], bytes] = {}
        self._sessions: dict[str, Session] = {}

    @property
    def name(self) -> str:
        return "memory"

    def _load_manifest(self, conversation_id: str) -> ConversationManifest:
        manifest = self._manifests.get(conversation_id)
        if manifest is None:
            return ConversationManifest(conversation_id=conversation_id)
        return manifest.model_copy(deep=True)

    def _save_manifest(self, manifest: ConversationManifest) -> None:
        self._manifests[manifest.conversation_id] = manifest.model_copy(deep=True)

    def _write_blob(self, conversation_id: str, blob_id: str, data: bytes) -> None:
        self._blobs[(conversation_id, blob_id)] = data

    def _read_blob(self, conversation_id: str, blob_id: str) -> Optional[bytes]:
        return self._blobs.get((conversation_id, blob_id))

    def _delete_blob(self, conversation_id: str, blob_id: str) -> None:
        self._blobs.pop((conversation_id, blob_id), None)

    async def publish_session(self, session: Session) -> None:
        self._sessions[session.session_id] = session

    async def fetch_session(self, session_id: str) -> Session:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not published", session_id=session_id)
        return session


class LocalBlobStore(ManifestBlobStore):
    """Filesystem blob store for USB drives, NAS, or mounted folders.

    Args:
        root: Directory holding one sub-directory per conversation.
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = root.expanduser()

    @property
    def name(self) -> str:
        return "local"

    def _check_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise BlobStoreUnavailable(
                f"Blob store root {self.root} is not writable: {exc}",
                root=str(self.root),
            ) from exc

    def _conv_dir(self, conversation_id: str) -> Path:
        return self.root / safe_name(conversation_id)

    def _load_manifest(self, conversation_id: str) -> ConversationManifest:
        path = self._conv_dir(conversation_id) / "manifest.json"
        if not path.exists():
            return ConversationManifest(conversation_id=conversation_id)
        try:
            return ConversationManifest.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise BlobStoreUnavailable(
                f"Could not read manifest for {conversation_id}: {exc}",
                conversation_id=conversation_id,
            ) from exc

    def _save_manifest(self, manifest: ConversationManifest) -> None:
        self._check_root()
        path = self._conv_dir(manifest.conversation_id) / "manifest.json"
        atomic_write_text(path, manifest.model_dump_json(indent=2))

    def _write_blob(self, conversation_id: str, blob_id: str, data: bytes) -> None:
        self._check_root()
        try:
            atomic_write_bytes(self._conv_dir(conversation_id) / "blobs" / f"{blob_id}.bin", data)
        except OSError as exc:
            raise BlobStoreUnavailable(
                f"Could not write blob {blob_id}: {exc}",
                conversation_id=conversation_id,
            ) from exc

    def _read_blob(self, conversation_id: str, blob_id: str) -> Optional[bytes]:
        path = self._conv_dir(conversation_id) / "blobs" / f"{blob_id}.bin"
        if not path.exists():
            return None
        return path.read_bytes()

    def _delete_blob(self, conversation_id: str, blob_id: str) -> None:
        path = self._conv_dir(conversation_id) / "blobs" / f"{blob_id}.bin"
        path.unlink(missing_ok=True)

    def _session_path(self, session_id: str) -> Path:
        # Ids never start with a dot, so this cannot shadow a conversation.
        return self.root / ".sessions" / f"{safe_name(session_id, 'session id')}.json"

    async def publish_session(self, session: Session) -> None:
        self._check_root()
        try:
            atomic_write_text(
                self._session_path(session.session_id), session.model_dump_json(indent=2)
            )
        except OSError as exc:
            raise BlobStoreUnavailable(
                f"Could not publish session {session.session_id}: {exc}",
                session_id=session.session_id,
            ) from exc

    async def fetch_session(self, session_id: str) -> Session:
        path = self._session_path(session_id)
        if not path.exists():
            raise SessionNotFound(f"Session {session_id} not published", session_id=session_id)
        return Session.model_validate_json(path.read_text(encoding="utf-8"))


def create_blob_store(config: BlobStoreConfig, home: Path) -> BlobStore:
    """Factory function to create the configured blob store.

    Args:
        config: Blob store configuration.
        home: Sync home; the local store defaults to ``<home>/cloud``.

    Raises:
        ValueError: If the store type is not supported.
    """
    if config.store_type == BlobStoreType.MEMORY:
        return MemoryBlobStore()
    if config.store_type == BlobStoreType.LOCAL:
        root = config.path or (home.expanduser() / "cloud")
        return LocalBlobStore(root)
    raise ValueError(f"Unsupported blob store: {config.store_type}")
