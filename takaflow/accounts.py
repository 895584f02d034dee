"""
Account Store Module

Holds account state (role, status, balance, PIN hash) for the transfer core.
Balances change only through version-checked writes so that concurrent
units of work cannot overwrite each other's updates. Email and phone
uniqueness is enforced through a contact index table whose ids are the
contact strings themselves.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Any, Union
from enum import Enum
import hashlib
import hmac
import secrets
import uuid

from .storage import StorageInterface, StorageRecord, DuplicateRecordError
from .logging_config import get_logger, log_action


class AccountError(Exception):
    """Base class for account store errors"""


class AccountAlreadyExistsError(AccountError):
    """Raised when registering with an email or phone that is already taken"""


class AccountNotFoundError(AccountError):
    """Raised when the requested account cannot be found"""


class Role(Enum):
    """Account roles"""
    CUSTOMER = "customer"
    AGENT = "agent"
    ADMIN = "admin"


class AccountStatus(Enum):
    """Account lifecycle states"""
    PENDING = "pending"    # Registered, awaiting approval
    ACTIVE = "active"      # Approved, may transact
    BLOCKED = "blocked"    # Suspended by an administrator


def generate_salt() -> str:
    """Generate random salt for PIN hashing"""
    return secrets.token_hex(16)


def hash_pin(pin: Union[str, int], salt: str) -> str:
    """Hash a PIN with salt using scrypt"""
    return hashlib.scrypt(
        str(pin).encode(),
        salt=salt.encode(),
        n=16384, r=8, p=1
    ).hex()


@dataclass
class Account(StorageRecord):
    """
    Account state as held by the store. ``version`` increases by one on
    every write and is the compare-and-swap token for balance updates.
    """
    name: str
    email: str
    phone: str
    role: Role
    status: AccountStatus
    balance: int
    pin_hash: str
    pin_salt: str
    photo_url: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.balance < 0:
            raise ValueError("Account balance cannot be negative")

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def can_receive_transfers(self) -> bool:
        """Only active customer accounts are valid transfer destinations"""
        return self.is_active and self.role == Role.CUSTOMER

    def verify_pin(self, pin: Union[str, int]) -> bool:
        """Check a PIN against the stored salted hash"""
        if not self.pin_hash or not self.pin_salt:
            return False
        return hmac.compare_digest(self.pin_hash, hash_pin(pin, self.pin_salt))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        data = dict(data)
        data['role'] = Role(data['role'])
        data['status'] = AccountStatus(data['status'])
        return super().from_dict(data)


class AccountStore:
    """
    Durable mapping from account id to account state
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "accounts"
        self.contacts_table = "account_contacts"
        self.logger = get_logger("takaflow.accounts")

    def register(
        self,
        name: str,
        email: str,
        phone: str,
        role: Union[Role, str],
        pin: Union[str, int],
        photo_url: Optional[str] = None
    ) -> Account:
        """
        Register a new account in PENDING state with a zero balance

        Raises:
            AccountAlreadyExistsError: If the email or phone is already in use
            ValueError: If the role is unknown
        """
        role = Role(role)
        now = datetime.now(timezone.utc)
        salt = generate_salt()

        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            email=email,
            phone=phone,
            role=role,
            status=AccountStatus.PENDING,
            balance=0,
            pin_hash=hash_pin(pin, salt),
            pin_salt=salt,
            photo_url=photo_url
        )

        try:
            with self.storage.atomic():
                for contact in (email, phone):
                    self.storage.insert(self.contacts_table, contact, {
                        "id": contact,
                        "account_id": account.id
                    })
                self.storage.insert(self.table_name, account.id, account.to_dict())
        except DuplicateRecordError as e:
            raise AccountAlreadyExistsError("User already exists") from e

        log_action(
            self.logger, "info", "Account registered",
            user_id=account.id, action="register_account",
            resource=f"account:{account.id}",
            extra={"role": role.value}
        )
        return account

    def get(self, account_id: str) -> Optional[Account]:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id)
        if data:
            return Account.from_dict(data)
        return None

    def find_by_contact(self, identifier: str) -> Optional[Account]:
        """Resolve an email address or phone number to an account"""
        if not identifier:
            return None
        entry = self.storage.load(self.contacts_table, str(identifier))
        if not entry:
            return None
        return self.get(entry['account_id'])

    def list_accounts(self) -> List[Account]:
        return [Account.from_dict(data) for data in self.storage.load_all(self.table_name)]

    def total_balance(self) -> int:
        """Sum of all account balances"""
        return sum(account.balance for account in self.list_accounts())

    def write(self, account: Account, **changes) -> Account:
        """
        Persist ``changes`` to an account previously read from the store.

        The write only succeeds if nobody else has written the account since
        it was read; otherwise ConcurrencyConflictError is raised.
        """
        updated = replace(
            account,
            version=account.version + 1,
            updated_at=datetime.now(timezone.utc),
            **changes
        )
        self.storage.save_if_version(
            self.table_name, account.id, updated.to_dict(), expected_version=account.version
        )
        return updated

    def activate(self, account_id: str, initial_balance: int = 0) -> Account:
        """Approve a pending account and seed its opening balance"""
        if initial_balance < 0:
            raise ValueError("Initial balance cannot be negative")

        with self.storage.atomic():
            account = self._require(account_id)
            account = self.write(
                account,
                status=AccountStatus.ACTIVE,
                balance=account.balance + initial_balance
            )

        log_action(
            self.logger, "info", "Account activated",
            user_id=account_id, action="activate_account",
            resource=f"account:{account_id}",
            extra={"initial_balance": initial_balance}
        )
        return account

    def block(self, account_id: str) -> Account:
        """Block an account; blocked accounts neither send nor receive"""
        with self.storage.atomic():
            account = self.write(self._require(account_id), status=AccountStatus.BLOCKED)

        log_action(
            self.logger, "warning", "Account blocked",
            user_id=account_id, action="block_account",
            resource=f"account:{account_id}"
        )
        return account

    def _require(self, account_id: str) -> Account:
        account = self.get(account_id)
        if not account:
            raise AccountNotFoundError(f"Account {account_id} not found")
        return account
