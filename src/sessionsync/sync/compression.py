"""
Snapshot/delta compression engine.

Deciding what to send:

    no snapshot yet, or more than THRESHOLD messages since the last one
        -> snapshot of [0, total)
    otherwise
        -> delta of [last_synced, total)
    empty range
        -> no-op, nothing touches the network

Payloads are a JSON document of messages, gzip-compressed at the
highest level, then handed to the cipher. Once encrypted the payload
is opaque; nothing downstream looks inside it.
"""

from __future__ import annotations

import gzip
import json
import logging
import zlib
from typing import Optional, Sequence

from pydantic import ValidationError

from ..errors import CompressionFailure
from ..models import Message, SyncMetadata
from .cipher import Cipher, NullCipher
from .models import (
    DEFAULT_SNAPSHOT_THRESHOLD,
    CompressedPayload,
    CompressionStats,
    DeltaRequest,
    NoOp,
    SnapshotRequest,
    SyncRequest,
)

logger = logging.getLogger("sessionsync.sync.compression")

PAYLOAD_VERSION = 1


def decide(
    conversation_id: str,
    total_messages: int,
    metadata: SyncMetadata,
    threshold: int = DEFAULT_SNAPSHOT_THRESHOLD,
) -> SyncRequest:
    """Pick a snapshot, a delta, or nothing for the next upload.

    Args:
        conversation_id: Conversation being uploaded.
        total_messages: Current local stream length.
        metadata: Local sync bookkeeping for the conversation.
        threshold: Messages since the last snapshot before a new one is due.

    Returns:
        SnapshotRequest, DeltaRequest or NoOp.
    """
    since_snapshot = total_messages - metadata.last_snapshot_index
    if metadata.last_snapshot_index == 0 or since_snapshot > threshold:
        if total_messages == 0:
            return NoOp(conversation_id=conversation_id, reason="empty conversation")
        return SnapshotRequest(conversation_id=conversation_id, message_count=total_messages)

    base = metadata.last_synced_message_index
    if total_messages <= base:
        return NoOp(conversation_id=conversation_id)
    return DeltaRequest(
        conversation_id=conversation_id,
        base_index=base,
        message_count=total_messages - base,
    )


def compress(payload: bytes, level: int = 9) -> CompressedPayload:
    """Gzip ``payload`` and report the sizes."""
    data = gzip.compress(payload, compresslevel=level, mtime=0)
    return CompressedPayload(
        data=data,
        stats=CompressionStats(original_size=len(payload), compressed_size=len(data)),
    )


def decompress(data: bytes) -> bytes:
    """Inverse of ``compress``.

    Raises:
        CompressionFailure: If ``data`` is not a valid gzip stream.
    """
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as exc:
        raise CompressionFailure(
            f"Malformed compressed payload: {exc}", size=len(data)
        ) from exc


def encode_messages(messages: Sequence[Message]) -> bytes:
    """Serialize a message range into the payload document."""
    doc = {
        "version": PAYLOAD_VERSION,
        "messages": [m.model_dump(mode="json") for m in messages],
    }
    return json.dumps(doc, separators=(",", ":")).encode("utf-8")


def decode_messages(payload: bytes) -> list[Message]:
    """Parse a payload document back into messages.

    Raises:
        CompressionFailure: If the document is not a message payload.
    """
    try:
        doc = json.loads(payload)
        return [Message.model_validate(m) for m in doc["messages"]]
    except (ValueError, KeyError, TypeError, ValidationError) as exc:
        raise CompressionFailure(f"Malformed message payload: {exc}") from exc


class PayloadCodec:
    """Turns message ranges into upload blobs and back.

    Args:
        level: Gzip compression level.
        cipher: Encryption collaborator. Defaults to pass-through.
        key: Key material handed to the cipher.
    """

    def __init__(
        self,
        level: int = 9,
        cipher: Optional[Cipher] = None,
        key: bytes = b"",
    ) -> None:
        self.level = level
        self.cipher = cipher or NullCipher()
        self.key = key

    def pack(self, messages: Sequence[Message]) -> CompressedPayload:
        compressed = compress(encode_messages(messages), self.level)
        logger.debug(
            "Packed %d messages: %d -> %d bytes (ratio %.3f)",
            len(messages),
            compressed.stats.original_size,
            compressed.stats.compressed_size,
            compressed.stats.ratio,
        )
        return CompressedPayload(
            data=self.cipher.encrypt(compressed.data, self.key),
            stats=compressed.stats,
        )

    def unpack(self, blob: bytes) -> list[Message]:
        return decode_messages(decompress(self.cipher.decrypt(blob, self.key)))
