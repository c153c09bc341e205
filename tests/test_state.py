"""Tests for the config file and the local sync state store."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from sessionsync.errors import InvalidIdentifier
from sessionsync.models import SyncMetadata
from sessionsync.sync.models import BlobStoreType, SyncConfig
from sessionsync.sync.state import CONFIG_FILE, SyncStateStore, load_config, save_config


def _write_config(home: Path, data) -> None:
    (home / CONFIG_FILE).write_text(yaml.safe_dump(data))


class TestConfig:
    """Loading and saving config.yaml."""

    def test_defaults_without_file(self, tmp_path: Path):
        config = load_config(tmp_path)
        assert config.snapshot_threshold == 1000
        assert config.blob_store.store_type == BlobStoreType.LOCAL

    def test_blob_store_type_key(self, tmp_path: Path):
        """The documented ``type`` key selects the backend."""
        _write_config(tmp_path, {"blob_store": {"type": "memory"}})
        assert load_config(tmp_path).blob_store.store_type == BlobStoreType.MEMORY

    def test_blob_store_field_name_still_accepted(self, tmp_path: Path):
        _write_config(tmp_path, {"blob_store": {"store_type": "memory"}})
        assert load_config(tmp_path).blob_store.store_type == BlobStoreType.MEMORY

    def test_malformed_file_falls_back(self, tmp_path: Path):
        (tmp_path / CONFIG_FILE).write_text("snapshot_threshold: [unclosed\n")
        assert load_config(tmp_path).snapshot_threshold == 1000

    def test_invalid_values_fall_back(self, tmp_path: Path):
        _write_config(tmp_path, {"snapshot_threshold": 0})
        assert load_config(tmp_path).snapshot_threshold == 1000

    def test_save_writes_type_key(self, tmp_path: Path):
        config = SyncConfig(device_id="laptop", snapshot_threshold=50)
        config.blob_store.store_type = BlobStoreType.MEMORY
        save_config(tmp_path, config)

        data = yaml.safe_load((tmp_path / CONFIG_FILE).read_text())
        assert data["blob_store"]["type"] == "memory"
        assert "store_type" not in data["blob_store"]
        assert load_config(tmp_path) == config


class TestSyncStateStore:
    def test_missing_record_is_empty(self, tmp_path: Path):
        metadata = SyncStateStore(tmp_path).load("conv")
        assert metadata.is_empty
        assert metadata.conversation_id == "conv"

    def test_roundtrip(self, tmp_path: Path):
        store = SyncStateStore(tmp_path)
        metadata = SyncMetadata(
            conversation_id="conv",
            last_synced_message_index=12,
            last_snapshot_index=10,
            total_messages=12,
        )
        store.save(metadata)
        assert SyncStateStore(tmp_path).load("conv") == metadata

    def test_unreadable_record_is_empty(self, tmp_path: Path):
        store = SyncStateStore(tmp_path)
        (store.sync_dir / "conv.json").write_text("{broken")
        assert store.load("conv").is_empty

    def test_rejects_path_like_ids(self, tmp_path: Path):
        with pytest.raises(InvalidIdentifier):
            SyncStateStore(tmp_path).load("../../config")
