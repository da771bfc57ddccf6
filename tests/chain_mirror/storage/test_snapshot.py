"""Tests for stream snapshots and the persistence adapter."""

from __future__ import annotations

import json

import pytest

from chain_mirror import metrics
from chain_mirror.storage import (
    SNAPSHOT_VERSION,
    MemoryByteStore,
    SQLiteByteStore,
    SnapshotAdapter,
    capture,
    decode,
    encode,
    snapshot_key,
)
from chain_mirror.sync.cache_store import CacheStore
from chain_mirror.sync.merge import MergeEngine
from chain_mirror.sync.range_tracker import RangeTracker
from chain_mirror.types import CorruptSnapshotError, HeightRange, StorageError
from tests.chain_mirror.helpers import make_entities, make_payload


def _fresh_engine() -> MergeEngine:
    cache = CacheStore()
    return MergeEngine(cache, RangeTracker(cache))


def _raw(**overrides: object) -> bytes:
    document: dict[str, object] = {
        "version": SNAPSHOT_VERSION,
        "stream": "blocks",
        "lowWatermark": 1,
        "highWatermark": 3,
        "observedHead": 5,
        "spans": [{"lo": 1, "hi": 3}],
        "entries": [{"height": h, "payload": make_payload(h)} for h in (1, 2, 3)],
    }
    document.update(overrides)
    return json.dumps(document).encode()


@pytest.fixture
async def synced(engine: MergeEngine) -> MergeEngine:
    """An engine holding a trusted range and out-of-order data above a gap."""
    await engine.merge("blocks", HeightRange(1, 7), make_entities(range(1, 6)))
    await engine.merge("blocks", HeightRange(11, 12), make_entities([11, 12]))
    return engine


class TestEncoding:
    """Tests for building and parsing snapshots."""

    def test_capture_and_round_trip(self, synced: MergeEngine) -> None:
        """Decoding an encoded snapshot yields the same snapshot."""
        snapshot = capture(synced, "blocks")

        assert decode("blocks", encode(snapshot)) == snapshot
        assert snapshot.height_ranges() == [HeightRange(1, 7), HeightRange(11, 12)]
        assert [e.height for e in snapshot.entries] == [1, 2, 3, 4, 5, 11, 12]

    def test_keys_are_camel_case(self, synced: MergeEngine) -> None:
        """Persisted field names use camelCase."""
        data = encode(capture(synced, "blocks"))

        assert b'"lowWatermark":1' in data
        assert b'"highWatermark":7' in data
        assert b'"observedHead":12' in data

    async def test_data_below_provisional_low_is_left_out(self, engine: MergeEngine) -> None:
        """Held backfill data is not persisted, so the snapshot stays loadable."""
        await engine.merge("blocks", HeightRange(8, 10), make_entities([8, 9, 10]))
        await engine.merge("blocks", HeightRange(1, 3), make_entities([1, 2, 3]))

        snapshot = capture(engine, "blocks")

        assert snapshot.height_ranges() == [HeightRange(8, 10)]
        assert [e.height for e in snapshot.entries] == [8, 9, 10]
        assert decode("blocks", encode(snapshot)) == snapshot

    def test_unanchored_stream(self, engine: MergeEngine) -> None:
        """A stream that never synced captures as empty."""
        snapshot = capture(engine, "transactions")

        assert snapshot.low_watermark is None
        assert snapshot.entries == []

    def test_valid_document_decodes(self) -> None:
        """A hand-written consistent document is accepted."""
        snapshot = decode("blocks", _raw())

        assert snapshot.tracked_range().high == 3

    @pytest.mark.parametrize(
        "overrides",
        [
            {"version": SNAPSHOT_VERSION + 1},
            {"highWatermark": 6},
            {"lowWatermark": 4, "highWatermark": 3},
            {"lowWatermark": 2},
            {"highWatermark": 3, "observedHead": None},
            {"spans": [{"lo": 1, "hi": 2}]},
            {"spans": [{"lo": 1, "hi": 3}, {"lo": 4, "hi": 5}]},
            {"entries": [{"height": 2, "payload": None}, {"height": 1, "payload": None}]},
            {"entries": [{"height": 9, "payload": None}]},
            {"lowWatermark": None},
            {"unexpected": True},
        ],
    )
    def test_inconsistent_documents_rejected(self, overrides: dict[str, object]) -> None:
        """Any broken invariant makes the snapshot corrupt."""
        with pytest.raises(CorruptSnapshotError):
            decode("blocks", _raw(**overrides))

    def test_bad_json_rejected(self) -> None:
        """Bytes that are not JSON are corrupt."""
        with pytest.raises(CorruptSnapshotError):
            decode("blocks", b"\xff\xfe not json")

    def test_wrong_stream_rejected(self) -> None:
        """A snapshot saved for another stream is not loaded."""
        with pytest.raises(CorruptSnapshotError, match="belongs to 'blocks'"):
            decode("transactions", _raw())


class TestSnapshotAdapter:
    """Tests for saving and restoring through a byte store."""

    async def test_save_and_restore(self, synced: MergeEngine) -> None:
        """A restored engine matches the saved one."""
        store = MemoryByteStore()
        assert await SnapshotAdapter(store, synced).save("blocks")

        restored = _fresh_engine()
        assert await SnapshotAdapter(store, restored).restore("blocks")

        assert restored.tracker.snapshot("blocks") == synced.tracker.snapshot("blocks")
        assert restored.cache.spans("blocks") == synced.cache.spans("blocks")
        assert restored.cache.get("blocks", 11) == make_payload(11)
        assert restored.is_gap_pending("blocks")

    async def test_restored_stream_keeps_syncing(self, synced: MergeEngine) -> None:
        """Filling the gap after a restore extends over the saved data."""
        store = MemoryByteStore()
        await SnapshotAdapter(store, synced).save("blocks")
        restored = _fresh_engine()
        await SnapshotAdapter(store, restored).restore("blocks")

        result = await restored.merge("blocks", HeightRange(8, 10), make_entities([8, 9, 10]))

        assert result.high_watermark == 12

    async def test_restore_without_snapshot(self, engine: MergeEngine) -> None:
        """Nothing to restore leaves the stream untouched."""
        assert not await SnapshotAdapter(MemoryByteStore(), engine).restore("blocks")

    async def test_corrupt_snapshot_resets_stream(self, synced: MergeEngine) -> None:
        """A corrupt snapshot empties the stream, is deleted and is counted."""
        store = MemoryByteStore()
        store.write(snapshot_key("blocks"), b"{broken")
        counter = metrics.persistence_warnings.labels(kind="corrupt_snapshot")
        before = counter._value.get()

        assert not await SnapshotAdapter(store, synced).restore("blocks")

        assert synced.cache.entry_count("blocks") == 0
        assert not synced.tracker.snapshot("blocks").is_anchored
        assert store.read(snapshot_key("blocks")) is None
        assert counter._value.get() - before == 1

    async def test_quota_exceeded_is_not_fatal(
        self, synced: MergeEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A refused write returns False and keeps the in-memory state."""
        store = MemoryByteStore(capacity_bytes=16)
        counter = metrics.persistence_warnings.labels(kind="quota_exceeded")
        before = counter._value.get()

        assert not await SnapshotAdapter(store, synced).save("blocks")

        assert store.read(snapshot_key("blocks")) is None
        assert synced.cache.entry_count("blocks") == 7
        assert counter._value.get() - before == 1
        assert "Skipping snapshot" in caplog.text

    async def test_save_all_and_discard(self, synced: MergeEngine) -> None:
        """Streams are saved independently and can be discarded."""
        store = MemoryByteStore()
        adapter = SnapshotAdapter(store, synced)

        assert await adapter.save_all(["blocks", "transactions"]) == {
            "blocks": True,
            "transactions": True,
        }
        adapter.discard("blocks")

        assert store.keys("snapshot/") == ["snapshot/transactions"]

    async def test_failing_store_is_not_fatal(
        self, synced: MergeEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Database errors are counted and logged, and the stream stays in memory."""
        store = SQLiteByteStore(":memory:")
        store.close()
        adapter = SnapshotAdapter(store, synced)
        counter = metrics.persistence_warnings.labels(kind="storage_error")
        before = counter._value.get()

        assert await adapter.save_all(["blocks"]) == {"blocks": False}
        assert not await adapter.restore("blocks")
        assert not adapter.discard("blocks")

        assert synced.cache.entry_count("blocks") == 7
        assert counter._value.get() - before == 3
        assert "Cannot read snapshot" in caplog.text

    async def test_corrupt_snapshot_with_failing_delete(self, synced: MergeEngine) -> None:
        """A corrupt snapshot still resets the stream when it cannot be deleted."""

        class UndeletableStore(MemoryByteStore):
            def delete(self, key: str) -> None:
                raise StorageError(f"cannot delete {key!r}")

        store = UndeletableStore()
        store.write(snapshot_key("blocks"), b"{broken")

        assert not await SnapshotAdapter(store, synced).restore("blocks")

        assert synced.cache.entry_count("blocks") == 0
        assert store.read(snapshot_key("blocks")) == b"{broken"
