"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
import time
from datetime import datetime, timezone
from pathlib import Path

from bank_ledger.config import LedgerConfig
from bank_ledger.errors import StorageUnavailable, Timeout
from bank_ledger.ledger import LedgerStore
from bank_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageInterface, UniqueViolation, create_storage
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


def _exercise_basic_operations(storage: StorageInterface) -> None:
    # Test save and load
    storage.save("test_table", "record_1", test_data)
    loaded = storage.load("test_table", "record_1")
    assert loaded == test_data

    # Test exists
    assert storage.exists("test_table", "record_1")
    assert not storage.exists("test_table", "non_existent")

    # Test load_all
    storage.save("test_table", "record_2", {"id": "record_2", "data": "test"})
    all_records = storage.load_all("test_table")
    assert len(all_records) == 2

    # Test find
    results = storage.find("test_table", {"id": "test_001"})
    assert len(results) == 1
    assert results[0]["id"] == "test_001"

    # Test count
    assert storage.count("test_table") == 2

    # Test clear_table
    storage.clear_table("test_table")
    assert storage.count("test_table") == 0


class TestStorageInterface:
    """Test base storage interface functionality"""

    def test_in_memory_storage_basic_operations(self):
        """Test basic operations with InMemoryStorage"""
        storage = InMemoryStorage()
        _exercise_basic_operations(storage)
        storage.close()

    def test_sqlite_storage_basic_operations(self):
        """Test basic operations with SQLiteStorage"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "test.db")
            _exercise_basic_operations(storage)
            storage.close()

    def test_in_memory_returns_copies(self):
        """Test that callers cannot mutate stored data through returned dicts"""
        storage = InMemoryStorage()
        storage.save("t", "r1", {"value": "1"})
        loaded = storage.load("t", "r1")
        loaded["value"] = "2"
        assert storage.load("t", "r1")["value"] == "1"


class TestTransactionSupport:
    """Test atomic units on both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            backend = InMemoryStorage()
        else:
            backend = SQLiteStorage(tmp_path / "atomic.db")
        yield backend
        backend.close()

    def test_atomic_commit(self, storage):
        """Test that writes inside a successful unit are persisted"""
        with storage.atomic():
            storage.save("accounts", "a1", {"balance": "10.00"})
            storage.save("accounts", "a2", {"balance": "20.00"})

        assert storage.load("accounts", "a1") == {"balance": "10.00"}
        assert storage.load("accounts", "a2") == {"balance": "20.00"}

    def test_atomic_rollback(self, storage):
        """Test that a failing unit leaves no partial writes"""
        storage.save("accounts", "a1", {"balance": "10.00"})

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("accounts", "a1", {"balance": "0.00"})
                storage.save("accounts", "a2", {"balance": "10.00"})
                raise RuntimeError("boom")

        assert storage.load("accounts", "a1") == {"balance": "10.00"}
        assert storage.load("accounts", "a2") is None

    def test_rollback_on_keyboard_interrupt(self, storage):
        """Test that cancellation-style exceptions also roll back"""
        with pytest.raises(KeyboardInterrupt):
            with storage.atomic():
                storage.save("accounts", "a1", {"balance": "5.00"})
                raise KeyboardInterrupt()

        assert storage.load("accounts", "a1") is None

    def test_other_threads_wait_for_commit(self, storage):
        """Test that readers on other threads only see committed state"""
        storage.save("accounts", "a1", {"balance": "10.00"})
        entered = threading.Event()
        seen = []

        def reader():
            entered.wait()
            seen.append(storage.load("accounts", "a1"))

        thread = threading.Thread(target=reader)
        thread.start()
        with storage.atomic():
            storage.save("accounts", "a1", {"balance": "99.00"})
            entered.set()
            time.sleep(0.05)
            storage.save("accounts", "a1", {"balance": "11.00"})
        thread.join()

        assert seen == [{"balance": "11.00"}]

    def test_lock_wait_timeout(self, storage):
        """Test that a unit gives up waiting for the backend lock"""
        holding = threading.Event()
        release = threading.Event()

        def holder():
            with storage.atomic():
                holding.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        holding.wait()
        try:
            with pytest.raises(Timeout):
                with storage.atomic(timeout=0.05):
                    pass
        finally:
            release.set()
            thread.join()


class TestUndoLog:
    """Test that in-memory rollback restores exactly the rows a unit touched"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.storage.save("accounts", "a1", {"balance": "10.00"})
        self.storage.save("accounts", "a2", {"balance": "20.00"})

    def test_rollback_restores_updated_and_removes_new_rows(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("accounts", "a1", {"balance": "1.00"})
                self.storage.save("accounts", "a1", {"balance": "2.00"})
                self.storage.save("accounts", "a3", {"balance": "30.00"})
                self.storage.save("records", "r1", {"account_id": "a1"})
                raise RuntimeError("boom")

        assert self.storage.load("accounts", "a1") == {"balance": "10.00"}
        assert self.storage.load("accounts", "a2") == {"balance": "20.00"}
        assert self.storage.load("accounts", "a3") is None
        assert self.storage.count("records") == 0

    def test_rollback_restores_cleared_table(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.clear_table("accounts")
                assert self.storage.count("accounts") == 0
                raise RuntimeError("boom")

        assert self.storage.count("accounts") == 2

    def test_commit_discards_undo_entries(self):
        """Test that a later failed unit does not undo an earlier committed one"""
        with self.storage.atomic():
            self.storage.save("accounts", "a1", {"balance": "11.00"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.save("accounts", "a2", {"balance": "0.00"})
                raise RuntimeError("boom")

        assert self.storage.load("accounts", "a1") == {"balance": "11.00"}
        assert self.storage.load("accounts", "a2") == {"balance": "20.00"}

    def test_nested_units_roll_back_as_one(self):
        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                with self.storage.atomic():
                    self.storage.save("accounts", "a1", {"balance": "0.00"})
                raise RuntimeError("boom")

        assert self.storage.load("accounts", "a1") == {"balance": "10.00"}


class TestSecondaryIndexes:
    """Test unique and lookup indexes on both backends"""

    @pytest.fixture(params=["memory", "sqlite"])
    def storage(self, request, tmp_path):
        if request.param == "memory":
            backend = InMemoryStorage()
        else:
            backend = SQLiteStorage(tmp_path / "indexes.db")
        backend.create_index("accounts", ["account_number"], unique=True)
        yield backend
        backend.close()

    def test_unique_index_rejects_duplicates(self, storage):
        storage.save("accounts", "a1", {"account_number": "1000000001"})
        with pytest.raises(UniqueViolation):
            storage.save("accounts", "a2", {"account_number": "1000000001"})

        assert storage.exists("accounts", "a2") is False
        # Rewriting the same row is not a conflict
        storage.save("accounts", "a1", {"account_number": "1000000001", "is_active": False})
        assert storage.load("accounts", "a1")["is_active"] is False

    def test_unique_violation_inside_unit_rolls_back(self, storage):
        storage.save("accounts", "a1", {"account_number": "1000000001"})
        with pytest.raises(UniqueViolation):
            with storage.atomic():
                storage.save("accounts", "a2", {"account_number": "1000000002"})
                storage.save("accounts", "a3", {"account_number": "1000000001"})

        assert storage.count("accounts") == 1

    def test_find_by_indexed_field(self, storage):
        storage.save("accounts", "a1", {"account_number": "1000000001", "owner_id": "alice"})
        storage.save("accounts", "a2", {"account_number": "1000000002", "owner_id": "bob"})
        storage.save("accounts", "a3", {"account_number": "1000000003", "owner_id": "alice"})

        found = storage.find("accounts", {"account_number": "1000000002"})
        assert [r["owner_id"] for r in found] == ["bob"]
        assert len(storage.find("accounts", {"owner_id": "alice"})) == 2
        assert storage.find("accounts", {"owner_id": "carol"}) == []


class TestSQLiteIndexes:
    """Test that SQLite lookups go through the declared indexes"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.storage = SQLiteStorage(Path(self.temp_dir.name) / "ledger.db")

    def teardown_method(self):
        self.storage.close()
        self.temp_dir.cleanup()

    def _index_names(self):
        cursor = self.storage._connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'index'"
        )
        return {row["name"] for row in cursor.fetchall()}

    def test_ledger_store_declares_indexes(self):
        """Test that opening a ledger store creates its secondary indexes"""
        LedgerStore(self.storage)

        names = self._index_names()
        assert "idx_accounts_account_number" in names
        assert "idx_ledger_transactions_account_id_sequence" in names

    def test_account_number_lookup_uses_index(self):
        self.storage.create_index("accounts", ["account_number"], unique=True)
        for i in range(20):
            self.storage.save("accounts", f"a{i}", {"account_number": f"10000000{i:02d}"})

        sql, params = self.storage.find_query("accounts", {"account_number": "1000000007"})
        plan = self.storage._connection.execute(f"EXPLAIN QUERY PLAN {sql}", params).fetchall()
        details = " ".join(row["detail"] for row in plan)
        assert "idx_accounts_account_number" in details

    def test_find_query_rejects_odd_field_names(self):
        with pytest.raises(ValueError):
            self.storage.find_query("accounts", {"balance') OR 1=1 --": "x"})
        with pytest.raises(ValueError):
            self.storage.create_index("accounts", ["a.b"])

    def test_find_none_matches_missing_field(self):
        self.storage.save("records", "r1", {"counterparty_account_id": None})
        self.storage.save("records", "r2", {"counterparty_account_id": "a1"})
        assert [r["counterparty_account_id"] for r in self.storage.find(
            "records", {"counterparty_account_id": None}
        )] == [None]

    def test_indexes_survive_reopening(self):
        self.storage.create_index("accounts", ["account_number"], unique=True)
        self.storage.save("accounts", "a1", {"account_number": "1000000001"})
        db_path = self.storage.db_path
        self.storage.close()

        self.storage = SQLiteStorage(db_path)
        with pytest.raises(UniqueViolation):
            self.storage.save("accounts", "a2", {"account_number": "1000000001"})


class TestSQLiteFailures:
    """Test infrastructure fault reporting"""

    def test_closed_storage_is_unavailable(self, tmp_path):
        """Test that use after close raises StorageUnavailable"""
        storage = SQLiteStorage(tmp_path / "closed.db")
        storage.save("t", "r1", {"x": 1})
        storage.close()

        with pytest.raises(StorageUnavailable) as exc_info:
            storage.load("t", "r1")
        assert exc_info.value.retryable

        with pytest.raises(StorageUnavailable):
            with storage.atomic():
                pass

    def test_unopenable_database(self, tmp_path):
        """Test that a bad database path surfaces as StorageUnavailable"""
        with pytest.raises(StorageUnavailable):
            SQLiteStorage(tmp_path / "missing_dir" / "ledger.db")

    def test_persistence_across_connections(self, tmp_path):
        """Test that committed data survives reopening the database"""
        db_path = tmp_path / "persist.db"
        storage = SQLiteStorage(db_path)
        with storage.atomic():
            storage.save("accounts", "a1", {"balance": "42.00"})
        storage.close()

        reopened = SQLiteStorage(db_path)
        assert reopened.load("accounts", "a1") == {"balance": "42.00"}
        reopened.close()


class TestStorageFactory:
    """Test backend selection from configuration"""

    def test_create_memory_storage(self):
        storage = create_storage(LedgerConfig(storage_backend="memory"))
        assert isinstance(storage, InMemoryStorage)

    def test_create_sqlite_storage(self, tmp_path):
        storage = create_storage(
            LedgerConfig(storage_backend="sqlite", database_path=str(tmp_path / "f.db"))
        )
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_storage(LedgerConfig(storage_backend="postgres"))
