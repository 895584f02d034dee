"""
Tests for the append-only transaction log
"""

import pytest
from datetime import datetime, timezone, timedelta

from takaflow.storage import InMemoryStorage, DuplicateRecordError
from takaflow.ledger import (
    TransactionLog, TransactionRecord, TransactionStatus, PartySnapshot
)


ALICE = PartySnapshot(account_id="acc_alice", name="Alice", email="alice@example.com", phone="01700000001")
BOB = PartySnapshot(account_id="acc_bob", name="Bob", email="bob@example.com", phone="01700000002")
CAROL = PartySnapshot(account_id="acc_carol", name="Carol", email="carol@example.com", phone="01700000003")

BASE_TIME = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_record(transaction_id, sender=ALICE, receiver=BOB, amount=50, fee=0, created_at=BASE_TIME):
    return TransactionRecord(
        transaction_id=transaction_id,
        sender=sender,
        receiver=receiver,
        amount=amount,
        fee=fee,
        status=TransactionStatus.SUCCESS,
        created_at=created_at
    )


class TestTransactionLog:
    """Test transaction log behaviour"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.log = TransactionLog(self.storage)

    def test_append_and_get(self):
        """Test a record reads back unchanged"""
        record = make_record("0000000001", amount=150, fee=5)
        self.log.append(record)

        loaded = self.log.get("0000000001")
        assert loaded == record
        assert loaded.total_debit == 155
        assert self.log.exists("0000000001")
        assert self.log.get("9999999999") is None

    def test_duplicate_transaction_id_rejected(self):
        """Test that the log enforces unique transaction ids"""
        self.log.append(make_record("0000000001"))
        with pytest.raises(DuplicateRecordError):
            self.log.append(make_record("0000000001", amount=999))

        assert self.log.count() == 1
        assert self.log.get("0000000001").amount == 50

    def test_history_includes_both_directions(self):
        """Test history covers records where the account sent or received"""
        self.log.append(make_record("1", sender=ALICE, receiver=BOB))
        self.log.append(make_record("2", sender=BOB, receiver=CAROL, created_at=BASE_TIME + timedelta(seconds=1)))
        self.log.append(make_record("3", sender=CAROL, receiver=ALICE, created_at=BASE_TIME + timedelta(seconds=2)))

        assert [r.transaction_id for r in self.log.history("acc_bob")] == ["2", "1"]
        assert [r.transaction_id for r in self.log.history("acc_alice")] == ["3", "1"]
        assert self.log.history("acc_nobody") == []

    def test_history_orders_by_created_at_descending(self):
        """Test most recent first regardless of insertion order"""
        self.log.append(make_record("late", created_at=BASE_TIME + timedelta(minutes=5)))
        self.log.append(make_record("early", created_at=BASE_TIME))
        self.log.append(make_record("middle", created_at=BASE_TIME + timedelta(minutes=1)))

        assert [r.transaction_id for r in self.log.history("acc_alice")] == ["late", "middle", "early"]

    def test_history_ties_broken_by_insertion_order(self):
        """Test records with equal timestamps list the later append first"""
        for transaction_id in ["a", "b", "c"]:
            self.log.append(make_record(transaction_id, created_at=BASE_TIME))

        assert [r.transaction_id for r in self.log.history("acc_alice")] == ["c", "b", "a"]

    def test_history_limit(self):
        for i in range(5):
            self.log.append(make_record(str(i), created_at=BASE_TIME + timedelta(seconds=i)))

        assert [r.transaction_id for r in self.log.history("acc_alice", limit=2)] == ["4", "3"]

    def test_total_fees(self):
        """Test that fees are recoverable from the log"""
        self.log.append(make_record("1", amount=50, fee=0))
        self.log.append(make_record("2", amount=150, fee=5))
        self.log.append(make_record("3", amount=500, fee=5))

        assert self.log.total_fees() == 10

    def test_records_are_immutable(self):
        record = make_record("1")
        with pytest.raises(AttributeError):
            record.amount = 1
        with pytest.raises(AttributeError):
            record.sender.name = "Mallory"

    def test_involves(self):
        record = make_record("1")
        assert record.involves("acc_alice")
        assert record.involves("acc_bob")
        assert not record.involves("acc_carol")

    def test_history_limit_zero_returns_nothing(self):
        self.log.append(make_record("1"))
        assert self.log.history("acc_alice", limit=0) == []
        assert len(self.log.history("acc_alice", limit=None)) == 1
