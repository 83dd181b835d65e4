"""Tests for server/store.py -- task documents and the sync checkpoint."""

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

import pytest
from server.store import TaskStore


class TestTaskDocuments:
    def test_insert_and_get(self, store):
        assert store.insert(1, {"description": "hello", "reward": "3000000000000000000", "deadline": 10})
        doc = store.get(1)
        assert doc["task_id"] == 1
        assert doc["reward"] == "3000000000000000000"
        assert doc["completed"] is False
        assert doc["source"] == "chain"

    def test_duplicate_insert_is_benign(self, store):
        assert store.insert(1, {"description": "a"})
        assert store.insert(1, {"description": "b"}) is False
        assert store.get(1)["description"] == "a"
        assert store.count() == 1

    def test_get_missing(self, store):
        assert store.get(99) is None

    def test_upsert_creates(self, store):
        doc = store.upsert(5, {"completed": True, "agent": "0xabc"})
        assert doc["completed"] is True
        assert doc["agent"] == "0xabc"

    def test_upsert_merges_fields(self, store):
        store.insert(1, {"description": "a", "reward": "10"})
        store.upsert(1, {"solution_error": "boom"})
        doc = store.get(1)
        assert doc["description"] == "a"
        assert doc["solution_error"] == "boom"

    def test_completed_never_regresses(self, store):
        store.upsert(1, {"completed": True})
        store.upsert(1, {"completed": False, "description": "late client write"})
        doc = store.get(1)
        assert doc["completed"] is True
        assert doc["description"] == "late client write"

    def test_cancelled_never_regresses(self, store):
        store.upsert(1, {"completed": True, "cancelled": True})
        store.upsert(1, {"cancelled": False})
        assert store.get(1)["cancelled"] is True

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError):
            store.upsert(1, {"status": "done"})

    def test_reward_round_trip(self, store):
        big = "3000000000000000000000000001"
        store.insert(1, {"reward": big})
        assert store.get(1)["reward"] == big

    def test_list_newest_first(self, store):
        store.insert(1, {"created_at": 100.0})
        store.insert(2, {"created_at": 300.0})
        store.insert(3, {"created_at": 200.0})
        assert [t["task_id"] for t in store.list()] == [2, 3, 1]
        assert len(store.list(limit=2)) == 2


class TestDiagnostics:
    def test_written_on_pending_task(self, store):
        store.insert(1, {"description": "a"})
        assert store.record_diagnostic(1, {"solution": "Error: boom", "solution_error": "boom",
                                           "transaction_error": True})
        doc = store.get(1)
        assert doc["solution_error"] == "boom"
        assert doc["transaction_error"] is True
        assert doc["description"] == "a"

    def test_creates_missing_row(self, store):
        assert store.record_diagnostic(7, {"solution_error": "boom"})
        assert store.get(7)["completed"] is False

    def test_completed_task_untouched(self, store):
        store.upsert(1, {"completed": True, "agent": "0xother", "solution": "real answer"})
        assert store.record_diagnostic(1, {"solution": "Error submitting solution: reverted",
                                           "solution_error": "reverted",
                                           "transaction_error": True}) is False
        doc = store.get(1)
        assert doc["solution"] == "real answer"
        assert doc["transaction_error"] is False
        assert doc["solution_error"] is None


class TestSyncState:
    def test_empty(self, store):
        assert store.get_sync_state() is None

    def test_save_and_update(self, store):
        store.save_sync_state("sync_state", 100, "0xAbC")
        store.save_sync_state("sync_state", 250, "0xAbC")
        state = store.get_sync_state()
        assert state["last_synced_block"] == 250
        assert state["contract_address"] == "0xAbC"
        assert state["last_sync_time"] > 0

    def test_checkpoint_never_listed_as_task(self, store):
        store.save_sync_state("sync_state", 100, "0xabc")
        assert store.list() == []


class TestPersistence:
    def test_reopen_file_db(self, tmp_path):
        path = str(tmp_path / "aptan.db")
        s = TaskStore(path)
        s.insert(1, {"description": "persist me"})
        s.save_sync_state("sync_state", 42, "0xabc")
        s.close()

        s = TaskStore(path)
        assert s.get(1)["description"] == "persist me"
        assert s.get_sync_state()["last_synced_block"] == 42
        s.close()
