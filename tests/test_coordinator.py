"""Tests for upload/download orchestration in the sync coordinator."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from sessionsync.audit import read_audit_log
from sessionsync.errors import (
    CompressionFailure,
    ConversationNotFound,
    ErrorKind,
    FatalSyncError,
    NetworkTimeout,
)
from sessionsync.sync.cipher import FernetCipher, derive_key
from sessionsync.sync.coordinator import SyncCoordinator
from sessionsync.sync.models import SyncAction, SyncConfig

from sync_fakes import RecordingBlobStore, make_messages

CONV = "conv-parser"


def _append(coordinator: SyncCoordinator, count: int, start: int, prefix: str = "m") -> int:
    stream = coordinator.messages.open(CONV)
    return stream.extend(make_messages(count, start=start, prefix=prefix))


def _ids(coordinator: SyncCoordinator) -> list[str]:
    stream = coordinator.messages.open(CONV)
    return [m.id for m in stream.range(0, stream.length())]


class TestUploadScenarios:
    """Snapshot vs delta selection, end to end."""

    @pytest.mark.asyncio
    async def test_first_upload_is_snapshot(self, coordinator, blob_store):
        _append(coordinator, 800, 0)
        result = await coordinator.upload(CONV)

        assert result.ok
        assert result.action == SyncAction.SNAPSHOT
        assert (result.start, result.end) == (0, 800)
        assert result.stats.ratio < 1.0
        assert blob_store.calls["upload_snapshot"] == 1
        meta = coordinator.state.load(CONV)
        assert meta.last_synced_message_index == 800
        assert meta.last_snapshot_index == 800
        assert meta.last_synced_timestamp is not None

    @pytest.mark.asyncio
    async def test_small_growth_is_delta(self, coordinator, blob_store):
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 50, 800)

        result = await coordinator.upload(CONV)

        assert result.action == SyncAction.DELTA
        assert (result.start, result.end) == (800, 850)
        assert result.message_count == 50
        assert blob_store.calls["upload_delta"] == 1
        meta = coordinator.state.load(CONV)
        assert meta.last_synced_message_index == 850
        assert meta.last_snapshot_index == 800
        assert (await blob_store.get_metadata(CONV)).total_messages == 850

    @pytest.mark.asyncio
    async def test_growth_past_threshold_is_snapshot(self, coordinator, blob_store):
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 50, 800)
        await coordinator.upload(CONV)
        _append(coordinator, 1000, 850)

        result = await coordinator.upload(CONV)

        assert result.action == SyncAction.SNAPSHOT
        assert (result.start, result.end) == (0, 1850)
        assert blob_store.calls["upload_snapshot"] == 2
        assert blob_store.calls["upload_delta"] == 1
        assert coordinator.state.load(CONV).last_snapshot_index == 1850

    @pytest.mark.asyncio
    async def test_second_upload_does_nothing(self, coordinator, blob_store):
        _append(coordinator, 20, 0)
        first = await coordinator.upload(CONV)
        calls = blob_store.total_calls

        second = await coordinator.upload(CONV)

        assert second.ok
        assert second.action == SyncAction.NOOP
        assert blob_store.total_calls == calls
        assert coordinator.state.load(CONV) == first.metadata

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, coordinator):
        with pytest.raises(ConversationNotFound):
            await coordinator.upload("nope")

    @pytest.mark.asyncio
    async def test_concurrent_uploads_serialize(self, coordinator, blob_store):
        _append(coordinator, 30, 0)
        results = await asyncio.gather(coordinator.upload(CONV), coordinator.upload(CONV))

        assert sorted(r.action.value for r in results) == ["noop", "snapshot"]
        assert blob_store.calls["upload_snapshot"] == 1

    @pytest.mark.asyncio
    async def test_upload_is_audited(self, coordinator):
        _append(coordinator, 5, 0)
        await coordinator.upload(CONV)
        events = [e.event_type for e in read_audit_log(coordinator.home)]
        assert events == ["SYNC_UPLOAD"]


class TestDownloadScenarios:
    """Rebuilding a conversation on another device."""

    @pytest.mark.asyncio
    async def test_fresh_device_merges_snapshot_and_delta(
        self, coordinator, second_device, blob_store
    ):
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 50, 800)
        await coordinator.upload(CONV)

        result = await second_device.download(CONV)

        assert result.ok
        assert result.action == SyncAction.SNAPSHOT
        assert result.end == 850
        assert _ids(second_device) == _ids(coordinator)
        assert blob_store.calls["fetch_snapshot"] == 1
        assert blob_store.calls["fetch_delta"] == 1
        meta = second_device.state.load(CONV)
        assert meta.last_synced_message_index == 850
        assert meta.last_snapshot_index == 800
        assert meta.total_messages == 850

    @pytest.mark.asyncio
    async def test_round_trip_preserves_messages(self, coordinator, second_device):
        _append(coordinator, 40, 0)
        await coordinator.upload(CONV)
        await second_device.download(CONV)

        original = coordinator.messages.open(CONV).range(0, 40)
        restored = second_device.messages.open(CONV).range(0, 40)
        assert restored == original

    @pytest.mark.asyncio
    async def test_changes_flow_both_ways(self, coordinator, second_device):
        _append(coordinator, 100, 0)
        await coordinator.upload(CONV)
        await second_device.download(CONV)

        _append(second_device, 10, 100, prefix="b")
        pushed = await second_device.upload(CONV)
        assert pushed.action == SyncAction.DELTA

        pulled = await coordinator.download(CONV)
        assert pulled.action == SyncAction.DELTA
        assert (pulled.start, pulled.end) == (100, 110)
        assert _ids(coordinator) == _ids(second_device)

    @pytest.mark.asyncio
    async def test_nothing_stored(self, second_device, blob_store):
        result = await second_device.download(CONV)
        assert result.ok
        assert result.action == SyncAction.NOOP
        assert blob_store.calls["fetch_snapshot"] == 0

    @pytest.mark.asyncio
    async def test_up_to_date_download(self, coordinator, blob_store):
        _append(coordinator, 10, 0)
        await coordinator.upload(CONV)

        result = await coordinator.download(CONV)

        assert result.action == SyncAction.NOOP
        assert blob_store.calls["list_deltas"] == 0

    @pytest.mark.asyncio
    async def test_synced_index_never_decreases(self, coordinator, second_device):
        seen = []
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        seen.append(coordinator.state.load(CONV).last_synced_message_index)

        _append(coordinator, 30, 800)
        await coordinator.download(CONV)
        seen.append(coordinator.state.load(CONV).last_synced_message_index)

        await coordinator.upload(CONV)
        seen.append(coordinator.state.load(CONV).last_synced_message_index)

        assert seen == sorted(seen)
        assert seen[-1] == 830


class TestEncryption:
    def _device(self, home: Path, store, config: SyncConfig, secret: bytes) -> SyncCoordinator:
        return SyncCoordinator(
            home=home, blob_store=store, cipher=FernetCipher(),
            key=derive_key(secret), config=config,
        )

    @pytest.mark.asyncio
    async def test_encrypted_round_trip(self, tmp_path: Path, sync_config):
        store = RecordingBlobStore()
        laptop = self._device(tmp_path / "a", store, sync_config, b"shared secret")
        desktop = self._device(tmp_path / "b", store, sync_config, b"shared secret")
        _append(laptop, 25, 0)
        await laptop.upload(CONV)

        snapshot = await store.fetch_snapshot(CONV)
        assert b"parser refactor" not in snapshot.payload

        result = await desktop.download(CONV)
        assert result.ok
        assert _ids(desktop) == _ids(laptop)

    @pytest.mark.asyncio
    async def test_wrong_key_fails_cleanly(self, tmp_path: Path, sync_config):
        store = RecordingBlobStore()
        laptop = self._device(tmp_path / "a", store, sync_config, b"shared secret")
        intruder = self._device(tmp_path / "b", store, sync_config, b"guess")
        _append(laptop, 25, 0)
        await laptop.upload(CONV)

        result = await intruder.download(CONV)

        assert not result.ok
        assert result.issue.kind == ErrorKind.COMPRESSION_FAILURE
        assert intruder.messages.open(CONV).length() == 0
        assert intruder.state.load(CONV).is_empty

    def test_encryption_requires_key(self, tmp_path: Path, sync_config):
        config = sync_config.model_copy(update={"encrypt": True})
        with pytest.raises(ValueError):
            SyncCoordinator(home=tmp_path, blob_store=RecordingBlobStore(), config=config)


class TestConflictFallback:
    """A rejected delta escalates to exactly one snapshot attempt."""

    async def _diverge(self, coordinator, second_device):
        _append(coordinator, 850, 0)
        await coordinator.upload(CONV)
        await second_device.download(CONV)
        _append(second_device, 5, 850, prefix="b")
        await second_device.upload(CONV)
        _append(coordinator, 3, 850, prefix="a")

    @pytest.mark.asyncio
    async def test_conflict_escalates_to_snapshot(self, coordinator, second_device, blob_store):
        await self._diverge(coordinator, second_device)
        snapshots_before = blob_store.calls["upload_snapshot"]

        result = await coordinator.upload(CONV)

        assert result.ok
        assert result.action == SyncAction.ESCALATED_SNAPSHOT
        assert (result.start, result.end) == (0, 853)
        assert result.attempts == 2
        assert blob_store.calls["upload_snapshot"] == snapshots_before + 1
        cloud = await blob_store.get_metadata(CONV)
        assert cloud.total_messages == 853
        assert cloud.latest_snapshot_index == 853
        assert coordinator.state.load(CONV).last_snapshot_index == 853

    @pytest.mark.asyncio
    async def test_failed_escalation_is_fatal(self, coordinator, second_device, blob_store):
        await self._diverge(coordinator, second_device)
        before = coordinator.state.load(CONV)
        snapshots_before = blob_store.calls["upload_snapshot"]
        blob_store.failures["upload_snapshot"] = [NetworkTimeout("link down")]

        with pytest.raises(FatalSyncError) as exc_info:
            await coordinator.upload(CONV)

        assert exc_info.value.issue.kind == ErrorKind.RETRY_EXHAUSTED
        assert blob_store.calls["upload_snapshot"] == snapshots_before + 1
        assert coordinator.state.load(CONV) == before
        assert (await blob_store.get_metadata(CONV)).total_messages == 855


class TestRetries:
    """Transient failures are retried with backoff; the rest are not."""

    @pytest.mark.asyncio
    async def test_recovers_after_timeouts(self, coordinator, blob_store):
        _append(coordinator, 10, 0)
        blob_store.failures["upload_snapshot"] = [NetworkTimeout("t1"), NetworkTimeout("t2")]

        result = await coordinator.upload(CONV)

        assert result.ok
        assert result.attempts == 3
        assert blob_store.calls["upload_snapshot"] == 3

    @pytest.mark.asyncio
    async def test_exhausted_budget(self, coordinator, blob_store):
        _append(coordinator, 10, 0)
        before = coordinator.state.load(CONV)
        blob_store.failures["upload_snapshot"] = [NetworkTimeout(f"t{i}") for i in range(3)]

        result = await coordinator.upload(CONV)

        assert not result.ok
        assert result.issue.kind == ErrorKind.RETRY_EXHAUSTED
        assert result.issue.context["last_error"] == ErrorKind.NETWORK_TIMEOUT.value
        assert blob_store.calls["upload_snapshot"] == 3
        assert coordinator.state.load(CONV) == before

    @pytest.mark.asyncio
    async def test_slow_store_times_out(self, tmp_path: Path, sync_config):
        store = RecordingBlobStore()
        store.delay = 0.5
        config = sync_config.model_copy(update={"network_timeout": 0.05, "max_attempts": 2})
        coordinator = SyncCoordinator(home=tmp_path, blob_store=store, config=config)
        _append(coordinator, 10, 0)

        result = await coordinator.upload(CONV)

        assert not result.ok
        assert result.issue.kind == ErrorKind.RETRY_EXHAUSTED
        assert store.calls["upload_snapshot"] == 2
        store.delay = 0.0
        assert (await store.get_metadata(CONV)).total_messages == 0

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails_once(self, coordinator, blob_store):
        _append(coordinator, 10, 0)
        blob_store.failures["upload_snapshot"] = [CompressionFailure("bad payload")]

        result = await coordinator.upload(CONV)

        assert not result.ok
        assert result.issue.kind == ErrorKind.COMPRESSION_FAILURE
        assert blob_store.calls["upload_snapshot"] == 1


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_upload_leaves_state(self, coordinator, blob_store):
        _append(coordinator, 10, 0)
        before = coordinator.state.load(CONV)
        blob_store.delay = 1.0

        task = asyncio.create_task(coordinator.upload(CONV))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert coordinator.state.load(CONV) == before
        blob_store.delay = 0.0
        assert (await blob_store.get_metadata(CONV)).total_messages == 0

    @pytest.mark.asyncio
    async def test_cancelled_download_leaves_stream(self, coordinator, second_device, blob_store):
        _append(coordinator, 10, 0)
        await coordinator.upload(CONV)
        blob_store.delay = 1.0

        task = asyncio.create_task(second_device.download(CONV))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert second_device.messages.open(CONV).length() == 0
        assert second_device.state.load(CONV).is_empty


class TestInconsistentDownload:
    """Deltas that do not line up trigger one full-snapshot retry."""

    @pytest.mark.asyncio
    async def test_stale_base_falls_back_to_full_snapshot(
        self, coordinator, second_device, blob_store
    ):
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 50, 800)
        await coordinator.upload(CONV)
        await second_device.download(CONV)

        _append(coordinator, 1000, 850)
        await coordinator.upload(CONV)

        result = await second_device.download(CONV)

        assert result.ok
        assert result.action == SyncAction.FULL_SNAPSHOT
        assert result.end == 1850
        assert _ids(second_device) == _ids(coordinator)
        assert second_device.state.load(CONV).last_snapshot_index == 1850

    @pytest.mark.asyncio
    async def test_corrupt_delta_is_fatal(self, coordinator, second_device, blob_store):
        _append(coordinator, 800, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 50, 800)
        await coordinator.upload(CONV)

        ref = (await blob_store.list_deltas(CONV, 0))[0]
        short = coordinator.codec.pack(make_messages(3, start=800)).data
        blob_store._blobs[(CONV, ref.delta_id)] = short

        with pytest.raises(FatalSyncError) as exc_info:
            await second_device.download(CONV)

        assert exc_info.value.issue.kind == ErrorKind.SYNC_INCONSISTENCY
        assert blob_store.calls["fetch_snapshot"] == 2
        assert second_device.messages.open(CONV).length() == 0
        assert second_device.state.load(CONV).is_empty

    @pytest.mark.asyncio
    async def test_diverged_local_stream_is_rejected(self, coordinator, second_device):
        _append(coordinator, 20, 0)
        await coordinator.upload(CONV)
        _append(second_device, 5, 0, prefix="x")

        with pytest.raises(FatalSyncError):
            await second_device.download(CONV)

        assert _ids(second_device) == [f"x{i}" for i in range(5)]


class TestStatus:
    @pytest.mark.asyncio
    async def test_status(self, coordinator):
        _append(coordinator, 12, 0)
        await coordinator.upload(CONV)
        _append(coordinator, 3, 12)

        info = await coordinator.status(CONV)

        assert info["local_messages"] == 15
        assert info["unsynced"] == 3
        assert info["cloud"]["total_messages"] == 12
        assert info["blob_store"] == "memory"
