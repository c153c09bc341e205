"""Shared test fixtures for sessionsync."""

from __future__ import annotations

from pathlib import Path

import pytest

from sessionsync.sync.coordinator import SyncCoordinator
from sessionsync.sync.models import BlobStoreConfig, BlobStoreType, SyncConfig

from sync_fakes import FakeRepo, RecordingBlobStore


@pytest.fixture
def sync_config() -> SyncConfig:
    """Fast, memory-backed configuration."""
    return SyncConfig(
        backoff_base=0.0,
        backoff_max=0.0,
        network_timeout=5.0,
        device_id="laptop",
        blob_store=BlobStoreConfig(store_type=BlobStoreType.MEMORY),
    )


@pytest.fixture
def blob_store() -> RecordingBlobStore:
    return RecordingBlobStore()


@pytest.fixture
def repo() -> FakeRepo:
    return FakeRepo()


@pytest.fixture
def coordinator(tmp_path: Path, blob_store, repo, sync_config) -> SyncCoordinator:
    """Coordinator for the first device."""
    return SyncCoordinator(
        home=tmp_path / "device-a", blob_store=blob_store, vcs=repo, config=sync_config,
    )


@pytest.fixture
def second_device(tmp_path: Path, blob_store, sync_config) -> SyncCoordinator:
    """Coordinator for another device sharing the same blob store."""
    config = sync_config.model_copy(update={"device_id": "desktop"})
    return SyncCoordinator(
        home=tmp_path / "device-b", blob_store=blob_store, vcs=FakeRepo(), config=config,
    )
