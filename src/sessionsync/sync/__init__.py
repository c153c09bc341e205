"""
Conversation sync -- snapshots, deltas, and the coordinator that moves them.

Payloads are compressed, then sealed by the cipher before they leave
the device. The blob store only ever sees opaque bytes and counts.
"""

from .backends import BlobStore, LocalBlobStore, MemoryBlobStore, create_blob_store
from .coordinator import SyncCoordinator

__all__ = [
    "BlobStore",
    "LocalBlobStore",
    "MemoryBlobStore",
    "SyncCoordinator",
    "create_blob_store",
]
