"""
Transaction Log Module

Append-only store of completed transfer records. Records hold snapshots of
both counterparties taken at transfer time, so later profile edits never
change history. Records are inserted once and never updated or deleted.
"""

from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface


class TransactionStatus(Enum):
    """Status of a persisted transaction record"""
    SUCCESS = "success"


@dataclass(frozen=True)
class PartySnapshot:
    """Immutable copy of a counterparty's identity at transfer time"""
    account_id: str
    name: str
    email: str
    phone: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "account_id": self.account_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PartySnapshot':
        return cls(
            account_id=data['account_id'],
            name=data['name'],
            email=data['email'],
            phone=data['phone']
        )


@dataclass(frozen=True)
class TransactionRecord:
    """
    A completed transfer.

    ``amount`` is what the receiver was credited; the sender was debited
    ``amount + fee``.
    """
    transaction_id: str
    sender: PartySnapshot
    receiver: PartySnapshot
    amount: int
    fee: int
    status: TransactionStatus
    created_at: datetime

    @property
    def total_debit(self) -> int:
        return self.amount + self.fee

    def involves(self, account_id: str) -> bool:
        return account_id in (self.sender.account_id, self.receiver.account_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.transaction_id,
            "transaction_id": self.transaction_id,
            "sender": self.sender.to_dict(),
            "receiver": self.receiver.to_dict(),
            "sender_id": self.sender.account_id,
            "receiver_id": self.receiver.account_id,
            "amount": self.amount,
            "fee": self.fee,
            "status": self.status.value,
            "created_at": self.created_at.isoformat()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionRecord':
        return cls(
            transaction_id=data['transaction_id'],
            sender=PartySnapshot.from_dict(data['sender']),
            receiver=PartySnapshot.from_dict(data['receiver']),
            amount=int(data['amount']),
            fee=int(data.get('fee', 0)),
            status=TransactionStatus(data['status']),
            created_at=datetime.fromisoformat(data['created_at'])
        )


class TransactionLog:
    """
    Append-only transaction log backed by the shared storage
    """

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name

    def append(self, record: TransactionRecord) -> None:
        """
        Append a record. Raises DuplicateRecordError if the transaction id
        is already present; call inside the same unit of work as the balance
        changes the record documents.
        """
        self.storage.insert(self.table_name, record.transaction_id, record.to_dict())

    def exists(self, transaction_id: str) -> bool:
        return self.storage.exists(self.table_name, transaction_id)

    def get(self, transaction_id: str) -> Optional[TransactionRecord]:
        """Get transaction record by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if data:
            return TransactionRecord.from_dict(data)
        return None

    def history(self, account_id: str, limit: Optional[int] = None) -> List[TransactionRecord]:
        """
        Records where the account is sender or receiver, most recent first.

        Ordered by ``created_at`` descending; records with equal timestamps
        keep reverse insertion order (the later append comes first).
        """
        records = [
            TransactionRecord.from_dict(data)
            for data in self.storage.load_all(self.table_name)
            if account_id in (data.get('sender_id'), data.get('receiver_id'))
        ]

        # Stable sort over the reversed insertion order
        records.reverse()
        records.sort(key=lambda r: r.created_at, reverse=True)

        if limit is not None:
            records = records[:limit]
        return records

    def count(self) -> int:
        return self.storage.count(self.table_name)

    def total_fees(self) -> int:
        """Total fees retained across all records"""
        return sum(int(data.get('fee', 0)) for data in self.storage.load_all(self.table_name))
