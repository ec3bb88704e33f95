"""
Test suite for the storage layer

Covers the in-memory backend, append-only inserts, version-checked saves
and transaction rollback.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass

from loan_engine.storage import InMemoryStorage, StorageRecord
from loan_engine.exceptions import AppendOnlyViolation, StaleLoanVersion


@dataclass
class SampleRecord(StorageRecord):
    amount: Decimal
    due_date: date


class TestInMemoryStorage:
    """Test basic CRUD on the in-memory backend"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_save_and_load(self):
        self.storage.save("loans", "L1", {"id": "L1", "total_paid": "100.00"})

        assert self.storage.load("loans", "L1") == {"id": "L1", "total_paid": "100.00"}
        assert self.storage.exists("loans", "L1")
        assert self.storage.count("loans") == 1

    def test_load_missing(self):
        assert self.storage.load("loans", "missing") is None
        assert not self.storage.exists("loans", "missing")

    def test_loaded_copy_is_detached(self):
        self.storage.save("loans", "L1", {"id": "L1", "tags": ["a"]})

        loaded = self.storage.load("loans", "L1")
        loaded["tags"].append("b")

        assert self.storage.load("loans", "L1")["tags"] == ["a"]

    def test_load_all_and_find(self):
        self.storage.save("loan_payments", "P1", {"loan_id": "L1", "month_for": 1})
        self.storage.save("loan_payments", "P2", {"loan_id": "L1", "month_for": 2})
        self.storage.save("loan_payments", "P3", {"loan_id": "L2", "month_for": 1})

        assert len(self.storage.load_all("loan_payments")) == 3
        assert len(self.storage.find("loan_payments", {"loan_id": "L1"})) == 2
        assert len(self.storage.find("loan_payments", {"loan_id": "L1", "month_for": 2})) == 1
        assert self.storage.find("loan_payments", {"unknown": 1}) == []

    def test_delete_and_clear(self):
        self.storage.save("loans", "L1", {"id": "L1"})
        self.storage.save("loans", "L2", {"id": "L2"})

        assert self.storage.delete("loans", "L1")
        assert not self.storage.delete("loans", "L1")

        self.storage.clear_table("loans")
        assert self.storage.count("loans") == 0


class TestAppendOnlyInsert:
    """insert() never overwrites"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_insert_new(self):
        self.storage.insert("integrity_checks", "R1", {"id": "R1"})
        assert self.storage.exists("integrity_checks", "R1")

    def test_insert_existing_raises(self):
        self.storage.insert("integrity_checks", "R1", {"id": "R1", "notes": "first"})

        with pytest.raises(AppendOnlyViolation):
            self.storage.insert("integrity_checks", "R1", {"id": "R1", "notes": "second"})

        assert self.storage.load("integrity_checks", "R1")["notes"] == "first"


class TestVersionedSave:
    """save_if_version() implements optimistic concurrency"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.storage.save("loans", "L1", {"id": "L1", "version": 3, "total_paid": "0.00"})

    def test_matching_version_saves(self):
        self.storage.save_if_version("loans", "L1", {"id": "L1", "version": 4, "total_paid": "50.00"}, 3)
        assert self.storage.load("loans", "L1")["version"] == 4

    def test_stale_version_raises(self):
        with pytest.raises(StaleLoanVersion) as exc_info:
            self.storage.save_if_version("loans", "L1", {"id": "L1", "version": 3}, 2)

        assert exc_info.value.loan_id == "L1"
        assert exc_info.value.expected_version == 2
        assert exc_info.value.actual_version == 3
        assert self.storage.load("loans", "L1")["total_paid"] == "0.00"

    def test_missing_record_reports_minus_one(self):
        with pytest.raises(StaleLoanVersion) as exc_info:
            self.storage.save_if_version("loans", "L9", {"id": "L9"}, 0)

        assert exc_info.value.actual_version == -1

    def test_unversioned_record_counts_as_zero(self):
        self.storage.save("loans", "L2", {"id": "L2"})
        self.storage.save_if_version("loans", "L2", {"id": "L2", "version": 1}, 0)

        assert self.storage.load("loans", "L2")["version"] == 1

    def test_only_one_concurrent_writer_wins(self):
        outcomes = []

        def writer(n):
            try:
                self.storage.save_if_version("loans", "L1", {"id": "L1", "version": 4, "writer": n}, 3)
                outcomes.append("saved")
            except StaleLoanVersion:
                outcomes.append("stale")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count("saved") == 1
        assert outcomes.count("stale") == 7


class TestAtomic:
    """Test transaction support"""

    def setup_method(self):
        self.storage = InMemoryStorage()

    def test_commit(self):
        with self.storage.atomic():
            self.storage.save("loans", "L1", {"id": "L1"})
            self.storage.insert("loan_payments", "P1", {"id": "P1"})

        assert self.storage.exists("loans", "L1")
        assert self.storage.exists("loan_payments", "P1")

    def test_rollback_on_exception(self):
        self.storage.save("loans", "L1", {"id": "L1", "total_paid": "0.00"})

        with pytest.raises(RuntimeError):
            with self.storage.atomic():
                self.storage.insert("loan_payments", "P1", {"id": "P1"})
                self.storage.save("loans", "L1", {"id": "L1", "total_paid": "100.00"})
                raise RuntimeError("write failed")

        assert not self.storage.exists("loan_payments", "P1")
        assert self.storage.load("loans", "L1")["total_paid"] == "0.00"

    def test_storage_usable_after_rollback(self):
        with pytest.raises(ValueError):
            with self.storage.atomic():
                raise ValueError("boom")

        self.storage.save("loans", "L1", {"id": "L1"})
        assert self.storage.exists("loans", "L1")


class TestStorageRecord:
    def test_to_dict_serializes_decimals_and_dates(self):
        now = datetime(2024, 5, 1, 8, 30, tzinfo=timezone.utc)
        record = SampleRecord(
            id="S1",
            created_at=now,
            updated_at=now,
            amount=Decimal('19418.55'),
            due_date=date(2024, 5, 31),
        )
        data = record.to_dict()

        assert data["amount"] == "19418.55"
        assert data["due_date"] == "2024-05-31"
        assert data["created_at"] == now.isoformat()
