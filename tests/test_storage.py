"""
Tests for storage backends and transaction support
"""

import pytest
import tempfile
import threading
from decimal import Decimal
from datetime import datetime, date, timezone
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from loan_engine.currency import Money
from loan_engine.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, UniqueViolation, LockTimeoutError,
    create_storage, to_storage_value
)


# Test data
test_data = {
    "id": "test_001",
    "name": "Test Record",
    "amount": "100.50",
    "created_at": datetime.now(timezone.utc).isoformat(),
    "updated_at": datetime.now(timezone.utc).isoformat()
}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    """Each test runs against both embedded backends"""
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db", lock_timeout=0.2)
            yield backend
            backend.close()


class TestBasicOperations:
    """CRUD behaviour shared by every backend"""

    def test_save_load_and_find(self, storage):
        """Round trip, lookup and filtering"""
        storage.save("test_table", "record_1", test_data)
        assert storage.load("test_table", "record_1") == test_data
        assert storage.exists("test_table", "record_1")
        assert not storage.exists("test_table", "missing")
        assert storage.load("test_table", "missing") is None

        storage.save("test_table", "record_2", {"id": "record_2", "name": "Other"})
        assert storage.count("test_table") == 2
        found = storage.find("test_table", {"name": "Test Record"})
        assert [r["id"] for r in found] == ["test_001"]

    def test_save_overwrites(self, storage):
        """Saving an existing id replaces the document"""
        storage.save("test_table", "r1", {"id": "r1", "value": 1})
        storage.save("test_table", "r1", {"id": "r1", "value": 2})
        assert storage.count("test_table") == 1
        assert storage.load("test_table", "r1")["value"] == 2

    def test_delete_and_clear(self, storage):
        storage.save("test_table", "r1", {"id": "r1"})
        storage.save("test_table", "r2", {"id": "r2"})
        assert storage.delete("test_table", "r1")
        assert not storage.delete("test_table", "r1")
        storage.clear_table("test_table")
        assert storage.count("test_table") == 0


class TestTransactions:
    """atomic() commit/rollback semantics"""

    def test_commit(self, storage):
        """Writes inside atomic() are visible after the block"""
        with storage.atomic():
            storage.save("t", "a", {"id": "a"})
            storage.save("t", "b", {"id": "b"})
        assert storage.count("t") == 2

    def test_rollback_on_exception(self, storage):
        """An exception discards every write of the block"""
        storage.save("t", "keep", {"id": "keep"})
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("t", "a", {"id": "a"})
                storage.delete("t", "keep")
                raise RuntimeError("boom")
        assert not storage.exists("t", "a")
        assert storage.exists("t", "keep")

    def test_nested_blocks_join_outer_transaction(self, storage):
        """A failure after an inner block rolls the inner writes back too"""
        with pytest.raises(RuntimeError):
            with storage.atomic():
                with storage.atomic():
                    storage.save("t", "inner", {"id": "inner"})
                assert storage.in_transaction
                raise RuntimeError("outer failure")
        assert not storage.exists("t", "inner")
        assert not storage.in_transaction

    def test_reads_see_own_writes(self, storage):
        """Uncommitted writes are visible to the writing transaction"""
        with storage.atomic():
            storage.save("t", "a", {"id": "a", "kind": "x"})
            assert storage.load("t", "a") == {"id": "a", "kind": "x"}
            assert len(storage.find("t", {"kind": "x"})) == 1


class TestUniqueConstraints:
    """Unique constraints over document fields"""

    def test_duplicate_rejected(self, storage):
        """Two records with the same key collide"""
        storage.add_unique_constraint("payments", ("loan_id", "reference"))
        storage.save("payments", "p1", {"id": "p1", "loan_id": "L1", "reference": "R1"})
        with pytest.raises(UniqueViolation):
            storage.save("payments", "p2", {"id": "p2", "loan_id": "L1", "reference": "R1"})
        assert not storage.exists("payments", "p2")

    def test_different_key_allowed(self, storage):
        storage.add_unique_constraint("payments", ("loan_id", "reference"))
        storage.save("payments", "p1", {"id": "p1", "loan_id": "L1", "reference": "R1"})
        storage.save("payments", "p2", {"id": "p2", "loan_id": "L2", "reference": "R1"})
        assert storage.count("payments") == 2

    def test_null_fields_exempt(self, storage):
        """Records without a reference never collide"""
        storage.add_unique_constraint("payments", ("loan_id", "reference"))
        storage.save("payments", "p1", {"id": "p1", "loan_id": "L1", "reference": None})
        storage.save("payments", "p2", {"id": "p2", "loan_id": "L1", "reference": None})
        assert storage.count("payments") == 2

    def test_updating_same_record_allowed(self, storage):
        """A record does not collide with itself"""
        storage.add_unique_constraint("accounts", ("code",))
        storage.save("accounts", "a1", {"id": "a1", "code": "1000", "name": "Cash"})
        storage.save("accounts", "a1", {"id": "a1", "code": "1000", "name": "Cash on hand"})
        assert storage.load("accounts", "a1")["name"] == "Cash on hand"


class TestInMemoryIsolation:
    """Thread-bound transactions of the in-memory backend"""

    def test_uncommitted_writes_invisible_to_other_threads(self):
        storage = InMemoryStorage()
        written = threading.Event()
        release = threading.Event()
        seen = {}

        def writer():
            with storage.atomic():
                storage.save("t", "a", {"id": "a"})
                written.set()
                release.wait(2)

        thread = threading.Thread(target=writer)
        thread.start()
        written.wait(2)
        seen["during"] = storage.exists("t", "a")
        release.set()
        thread.join(2)
        seen["after"] = storage.exists("t", "a")

        assert seen == {"during": False, "after": True}

    def test_unique_rechecked_at_commit(self):
        """Two transactions buffering the same key: the second commit fails"""
        storage = InMemoryStorage()
        storage.add_unique_constraint("payments", ("reference",))
        buffered = threading.Event()
        first_committed = threading.Event()

        def first():
            with storage.atomic():
                storage.save("payments", "p1", {"id": "p1", "reference": "R1"})
                buffered.set()
                first_committed.wait(2)

        thread = threading.Thread(target=first)
        thread.start()
        buffered.wait(2)

        with pytest.raises(UniqueViolation):
            with storage.atomic():
                # Not yet visible, so the write itself is accepted
                storage.save("payments", "p2", {"id": "p2", "reference": "R1"})
                first_committed.set()
                thread.join(2)

        assert storage.exists("payments", "p1")
        assert not storage.exists("payments", "p2")


class TestRowLocks:
    """lock_record with a bounded wait"""

    def test_lock_requires_transaction(self):
        with pytest.raises(RuntimeError):
            InMemoryStorage().lock_record("loans", "L1")

    def test_lock_timeout(self):
        """A second transaction gives up after the timeout"""
        storage = InMemoryStorage()
        locked = threading.Event()
        release = threading.Event()

        def holder():
            with storage.atomic():
                storage.lock_record("loans", "L1", timeout=1)
                locked.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        locked.wait(2)
        try:
            with pytest.raises(LockTimeoutError) as exc_info:
                with storage.atomic():
                    storage.lock_record("loans", "L1", timeout=0.05)
            assert exc_info.value.record_id == "L1"
        finally:
            release.set()
            thread.join(2)

    def test_lock_released_on_commit(self):
        """Once the holder commits the lock can be taken"""
        storage = InMemoryStorage()
        with storage.atomic():
            storage.lock_record("loans", "L1", timeout=0.05)
        with storage.atomic():
            storage.lock_record("loans", "L1", timeout=0.05)

    def test_other_records_not_blocked(self):
        storage = InMemoryStorage()
        locked = threading.Event()
        release = threading.Event()

        def holder():
            with storage.atomic():
                storage.lock_record("loans", "L1")
                locked.set()
                release.wait(2)

        thread = threading.Thread(target=holder)
        thread.start()
        locked.wait(2)
        try:
            with storage.atomic():
                storage.lock_record("loans", "L2", timeout=0.05)
        finally:
            release.set()
            thread.join(2)

    def test_sqlite_writer_slot_timeout(self):
        """SQLite serializes transactions; a waiting writer times out"""
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = SQLiteStorage(Path(temp_dir) / "locks.db", lock_timeout=0.05)
            storage.save("loans", "L1", {"id": "L1"})
            locked = threading.Event()
            release = threading.Event()

            def holder():
                with storage.atomic():
                    storage.lock_record("loans", "L1")
                    locked.set()
                    release.wait(2)

            thread = threading.Thread(target=holder)
            thread.start()
            locked.wait(2)
            try:
                with pytest.raises(LockTimeoutError):
                    with storage.atomic():
                        storage.lock_record("loans", "L1")
            finally:
                release.set()
                thread.join(2)
            storage.close()


@dataclass
class SampleRecord(StorageRecord):
    name: str
    balance: Money
    due: Optional[date] = None


class TestStorageRecord:
    """Document conversion helpers"""

    def test_to_dict_converts_values(self):
        now = datetime.now(timezone.utc)
        record = SampleRecord(id="r1", created_at=now, updated_at=now, name="x",
                              balance=Money(Decimal("10.5"), "TZS"), due=date(2025, 1, 31))
        data = record.to_dict()
        assert data["balance"] == "10.50"
        assert data["due"] == "2025-01-31"
        assert data["created_at"] == now.isoformat()

    def test_from_dict_parses_timestamps(self):
        now = datetime.now(timezone.utc)
        record = StorageRecord.from_dict({"id": "r1", "created_at": now.isoformat(),
                                          "updated_at": now.isoformat()})
        assert record.created_at == now

    def test_to_storage_value_nested(self):
        value = to_storage_value({"amounts": [Decimal("1.5"), Money(Decimal("2"), "TZS")]})
        assert value == {"amounts": ["1.5", "2.00"]}


class TestCreateStorage:
    """Backend selection from a database URL"""

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_urls(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/engine.db")
            assert isinstance(storage, SQLiteStorage)
            assert storage.db_path.endswith("engine.db")
            storage.close()
        in_memory = create_storage("sqlite://")
        assert in_memory.db_path == ":memory:"
        in_memory.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("mysql://localhost/db")
