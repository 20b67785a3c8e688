"""
Tests for the in-memory record store and the store factory.
"""

import threading
from datetime import UTC, datetime, timedelta

import pytest

from storage import StorageError, get_record_store
from storage.base import DuplicateRecordError, PreconditionFailedError, RecordNotFoundError
from storage.memory import MemoryRecordStore

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture
def mem():
    return MemoryRecordStore()


class TestMemoryRecordStore:
    def test_create_and_get(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1", "status": "PENDING"})
        assert mem.get("recognitions", "rec_1") == {"id": "rec_1", "status": "PENDING"}
        assert mem.get("recognitions", "rec_2") is None
        assert mem.get("other", "rec_1") is None

    def test_create_duplicate(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1"})
        with pytest.raises(DuplicateRecordError):
            mem.create("recognitions", "rec_1", {"id": "rec_1"})

    def test_returned_records_are_copies(self, mem):
        data = {"id": "rec_1", "tags": ["a"]}
        mem.create("recognitions", "rec_1", data)
        data["tags"].append("b")

        fetched = mem.get("recognitions", "rec_1")
        fetched["tags"].append("c")
        assert mem.get("recognitions", "rec_1")["tags"] == ["a"]

    def test_update_merges_fields(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1", "status": "PENDING", "weight": 1.0})
        updated = mem.update("recognitions", "rec_1", {"status": "VERIFIED"})
        assert updated == {"id": "rec_1", "status": "VERIFIED", "weight": 1.0}

    def test_update_missing(self, mem):
        with pytest.raises(RecordNotFoundError):
            mem.update("recognitions", "rec_1", {"status": "VERIFIED"})

    def test_update_if(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1", "status": "PENDING"})

        mem.update_if("recognitions", "rec_1", {"status": "PENDING"}, {"status": "VERIFIED"})
        with pytest.raises(PreconditionFailedError):
            mem.update_if("recognitions", "rec_1", {"status": "PENDING"}, {"status": "REJECTED"})
        with pytest.raises(RecordNotFoundError):
            mem.update_if("recognitions", "rec_9", {"status": "PENDING"}, {"status": "REJECTED"})

        assert mem.get("recognitions", "rec_1")["status"] == "VERIFIED"

    def test_update_if_is_atomic(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1", "status": "PENDING"})
        wins = []
        lock = threading.Lock()

        def worker(n):
            try:
                mem.update_if("recognitions", "rec_1", {"status": "PENDING"}, {"status": "VERIFIED", "by": n})
            except PreconditionFailedError:
                return
            with lock:
                wins.append(n)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1
        assert mem.get("recognitions", "rec_1")["by"] == wins[0]

    def test_delete(self, mem):
        mem.create("recognitions", "rec_1", {"id": "rec_1"})
        assert mem.delete("recognitions", "rec_1") is True
        assert mem.delete("recognitions", "rec_1") is False

    def test_find(self, mem):
        mem.create("recognitions", "a", {"id": "a", "giver_id": "u1", "recipient_id": "u2"})
        mem.create("recognitions", "b", {"id": "b", "giver_id": "u2", "recipient_id": "u1"})
        mem.create("recognitions", "c", {"id": "c", "giver_id": "u1", "recipient_id": "u3"})

        assert [r["id"] for r in mem.find("recognitions")] == ["a", "b", "c"]
        assert [r["id"] for r in mem.find("recognitions", {"giver_id": "u1"})] == ["a", "c"]
        assert [r["id"] for r in mem.find("recognitions", {"giver_id": "u1"}, limit=1)] == ["a"]
        assert mem.find("recognitions", {"giver_id": "u1", "recipient_id": "u1"}) == []

    def test_consume_counter(self, mem):
        reset_at = NOW + timedelta(hours=1)
        results = [mem.consume_counter("quota_counters", "org_1:x", 2, reset_at, NOW) for _ in range(3)]

        assert [r.allowed for r in results] == [True, True, False]
        assert [r.used for r in results] == [1, 2, 2]
        assert results[-1].remaining == 0
        assert results[0].reset_at == reset_at

    def test_consume_counter_resets_after_boundary(self, mem):
        first_reset = NOW + timedelta(hours=1)
        mem.consume_counter("quota_counters", "org_1:x", 1, first_reset, NOW)

        later = first_reset
        result = mem.consume_counter("quota_counters", "org_1:x", 1, later + timedelta(hours=1), later)
        assert result.allowed
        assert result.reset_at == later + timedelta(hours=1)

    def test_info_and_clear(self, mem):
        mem.create("recognitions", "a", {"id": "a"})
        info = mem.get_info()
        assert info["backend_type"] == "MemoryRecordStore"
        assert info["available"] is True
        assert info["collections"] == {"recognitions": 1}

        mem.clear()
        assert mem.find("recognitions") == []

    def test_context_manager(self):
        with MemoryRecordStore() as store:
            assert store.is_available()


class TestGetRecordStore:
    def test_default_is_memory(self, monkeypatch):
        monkeypatch.delenv("STORAGE_BACKEND", raising=False)
        assert isinstance(get_record_store(), MemoryRecordStore)

    def test_postgresql_requires_url(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "postgresql")
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(StorageError):
            get_record_store()

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setenv("STORAGE_BACKEND", "cassandra")
        with pytest.raises(StorageError):
            get_record_store()
