"""
Test suite for storage backends

Covers the record store contract on both backends: CRUD, set-based updates,
id sequences, all-or-nothing transactions and ordered row locks.
"""

import pytest
import tempfile
import threading
from decimal import Decimal
from datetime import date, datetime, timezone
from enum import Enum
from pathlib import Path
from dataclasses import dataclass

from card_ledger.storage import (
    InMemoryStorage, SQLiteStorage, StorageRecord, RecordLocks, create_storage
)


class Colour(Enum):
    RED = "RED"


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    day: date
    colour: Colour


def card_row(record_id, status="ACTIVE", expiration_date="2030-01-01", owner_id=1):
    return {"id": record_id, "status": status, "expiration_date": expiration_date, "owner_id": owner_id}


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    if request.param == "memory":
        backend = InMemoryStorage()
        yield backend
        backend.close()
    else:
        with tempfile.TemporaryDirectory() as temp_dir:
            backend = SQLiteStorage(Path(temp_dir) / "test.db")
            yield backend
            backend.close()


class TestStorageRecord:

    def test_to_dict_converts_values(self):
        now = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        record = SampleRecord(
            id=7, created_at=now, updated_at=now,
            amount=Decimal("10.50"), day=date(2024, 2, 29), colour=Colour.RED,
        )

        data = record.to_dict()

        assert data["id"] == 7
        assert data["created_at"] == now.isoformat()
        assert data["amount"] == "10.50"
        assert data["day"] == "2024-02-29"
        assert data["colour"] == "RED"


class TestStorageContract:
    """Behaviour shared by every backend"""

    def test_save_load_exists_delete(self, storage):
        storage.save("cards", 1, card_row(1))

        assert storage.load("cards", 1) == card_row(1)
        assert storage.load("cards", "1") == card_row(1)
        assert storage.exists("cards", 1)
        assert not storage.exists("cards", 2)
        assert storage.count("cards") == 1

        assert storage.delete("cards", 1)
        assert not storage.delete("cards", 1)
        assert storage.load("cards", 1) is None

    def test_loaded_records_are_copies(self, storage):
        storage.save("cards", 1, card_row(1))
        loaded = storage.load("cards", 1)
        loaded["status"] = "BLOCKED"

        assert storage.load("cards", 1)["status"] == "ACTIVE"

    def test_find_matches_every_filter(self, storage):
        storage.save("cards", 1, card_row(1, owner_id=1))
        storage.save("cards", 2, card_row(2, owner_id=2))
        storage.save("cards", 3, card_row(3, status="BLOCKED", owner_id=1))

        assert {r["id"] for r in storage.find("cards", {"owner_id": 1})} == {1, 3}
        assert [r["id"] for r in storage.find("cards", {"owner_id": 1, "status": "ACTIVE"})] == [1]
        assert storage.find("cards", {"owner_id": 99}) == []

    def test_find_accepts_enum_filter(self, storage):
        storage.save("things", 1, {"id": 1, "colour": "RED"})

        assert len(storage.find("things", {"colour": Colour.RED})) == 1

    def test_next_id_is_a_per_table_sequence(self, storage):
        assert [storage.next_id("cards") for _ in range(3)] == [1, 2, 3]
        assert storage.next_id("transfers") == 1

    def test_update_where_is_set_based(self, storage):
        storage.save("cards", 1, card_row(1, expiration_date="2024-01-01"))
        storage.save("cards", 2, card_row(2, expiration_date="2024-06-01"))
        storage.save("cards", 3, card_row(3, status="BLOCKED", expiration_date="2024-01-01"))

        changed = storage.update_where(
            "cards", {"status": "ACTIVE"}, {"status": "EXPIRED"},
            less_than={"expiration_date": date(2024, 3, 1)},
        )

        assert changed == 1
        assert storage.load("cards", 1)["status"] == "EXPIRED"
        assert storage.load("cards", 2)["status"] == "ACTIVE"
        assert storage.load("cards", 3)["status"] == "BLOCKED"

    def test_update_where_restricted_to_record_ids(self, storage):
        storage.save("cards", 1, card_row(1))
        storage.save("cards", 2, card_row(2))

        assert storage.update_where("cards", {}, {"status": "BLOCKED"}, record_ids=[2]) == 1
        assert storage.update_where("cards", {}, {"status": "BLOCKED"}, record_ids=[]) == 0
        assert storage.load("cards", 1)["status"] == "ACTIVE"
        assert storage.load("cards", 2)["status"] == "BLOCKED"

    def test_update_where_rejects_bad_field_names(self, storage):
        with pytest.raises(ValueError):
            storage.update_where("cards", {"status') OR 1=1 --": "x"}, {"status": "BLOCKED"})

    def test_delete_where(self, storage):
        storage.save("transfers", 1, {"id": 1, "from_card_id": 5})
        storage.save("transfers", 2, {"id": 2, "from_card_id": 6})
        storage.save("transfers", 3, {"id": 3, "from_card_id": 5})

        assert storage.delete_where("transfers", {"from_card_id": 5}) == 2
        assert [r["id"] for r in storage.load_all("transfers")] == [2]

    def test_atomic_commits_on_success(self, storage):
        with storage.atomic():
            storage.save("cards", 1, card_row(1))
            storage.save("cards", 2, card_row(2))

        assert storage.count("cards") == 2

    def test_atomic_rolls_back_every_write(self, storage):
        storage.save("cards", 1, card_row(1))
        storage.save("cards", 2, card_row(2))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("cards", 1, card_row(1, status="BLOCKED"))
                storage.delete("cards", 2)
                storage.save("cards", 3, card_row(3))
                storage.update_where("cards", {}, {"owner_id": 42})
                raise RuntimeError("boom")

        assert storage.load("cards", 1) == card_row(1)
        assert storage.load("cards", 2) == card_row(2)
        assert storage.load("cards", 3) is None

    def test_nested_atomic_joins_outer_transaction(self, storage):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("cards", 1, card_row(1))
                with storage.atomic():
                    storage.save("cards", 2, card_row(2))
                raise RuntimeError("outer failure")

        assert storage.count("cards") == 0

    def test_other_threads_never_see_uncommitted_writes(self, storage):
        storage.save("cards", 1, card_row(1))
        seen = []
        reader = threading.Thread(target=lambda: seen.append(storage.load("cards", 1)["status"]))

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("cards", 1, card_row(1, status="BLOCKED"))
                reader.start()
                reader.join(timeout=0.2)
                # The reader waits for the transaction to end
                assert seen == []
                raise RuntimeError("boom")

        reader.join(timeout=5)
        assert seen == ["ACTIVE"]

    def test_clear_table(self, storage):
        storage.save("cards", 1, card_row(1))
        storage.clear_table("cards")

        assert storage.count("cards") == 0


class TestSQLiteStorage:

    def test_data_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "test.db"
            storage = SQLiteStorage(db_path)
            storage.save("cards", storage.next_id("cards"), card_row(1))
            storage.close()

            reopened = SQLiteStorage(db_path)
            assert reopened.load("cards", 1) == card_row(1)
            assert reopened.next_id("cards") == 2
            reopened.close()

    def test_rollback_of_table_created_inside_transaction(self):
        storage = SQLiteStorage(":memory:")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                storage.save("fresh", 1, {"id": 1})
                raise RuntimeError("boom")

        assert storage.count("fresh") == 0
        storage.save("fresh", 1, {"id": 1})
        assert storage.count("fresh") == 1


class TestRecordLocks:

    def test_opposite_orders_do_not_deadlock(self):
        locks = RecordLocks()
        rounds = 200

        def worker(ids):
            for _ in range(rounds):
                with locks.hold("cards", ids):
                    pass

        threads = [
            threading.Thread(target=worker, args=([1, 2],)),
            threading.Thread(target=worker, args=([2, 1],)),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert not any(thread.is_alive() for thread in threads)

    def test_lock_excludes_other_threads(self):
        storage = InMemoryStorage()
        inside = threading.Event()
        release = threading.Event()
        acquired_by_other = threading.Event()

        def holder():
            with storage.lock("cards", [1]):
                inside.set()
                release.wait(5)

        def contender():
            with storage.lock("cards", [1]):
                acquired_by_other.set()

        first = threading.Thread(target=holder)
        first.start()
        inside.wait(5)
        second = threading.Thread(target=contender)
        second.start()

        assert not acquired_by_other.wait(0.2)
        release.set()
        first.join(5)
        second.join(5)
        assert acquired_by_other.is_set()

    def test_lock_is_reentrant_for_the_same_thread(self):
        storage = InMemoryStorage()

        with storage.lock("cards", [1, 2]):
            with storage.lock("cards", [2]):
                pass


class TestCreateStorage:

    def test_memory_url(self):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

    def test_sqlite_url(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            storage = create_storage(f"sqlite:///{temp_dir}/cards.db")
            assert isinstance(storage, SQLiteStorage)
            storage.close()

    def test_unknown_url(self):
        with pytest.raises(ValueError):
            create_storage("postgresql://localhost/cards")
