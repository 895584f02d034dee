"""
Transfer Engine Module

Validates and executes two-party balance transfers. Each transfer runs as a
single unit of work spanning the account store and the transaction log:
the sender debit, the receiver credit and the log append commit together or
not at all. Balance writes are version-checked, so two transfers racing on
the same account cannot both apply against the same starting balance.
"""

from decimal import Decimal, InvalidOperation
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Union
import secrets

from .accounts import Account, AccountStore, Role
from .auth import Identity
from .config import TakaflowConfig, get_config
from .errors import (
    TransferError, ValidationError, ReceiverNotEligible, InvalidCredential,
    SelfTransferDenied, InsufficientBalance, TransferFailed
)
from .ledger import TransactionLog, TransactionRecord, TransactionStatus, PartySnapshot
from .logging_config import get_logger, log_action
from .storage import StorageInterface


def generate_transaction_id(length: int = 10) -> str:
    """Random fixed-width decimal identifier"""
    return f"{secrets.randbelow(10 ** length):0{length}d}"


def snapshot(account: Account) -> PartySnapshot:
    return PartySnapshot(
        account_id=account.id,
        name=account.name,
        email=account.email,
        phone=account.phone
    )


class TransferEngine:
    """
    Executes PIN-authorized transfers between accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        log: TransactionLog,
        config: Optional[TakaflowConfig] = None,
        id_generator: Optional[Callable[[], str]] = None
    ):
        config = config or get_config()
        self.storage = storage
        self.accounts = accounts
        self.log = log
        self.transfer_fee = config.transfer_fee
        self.fee_threshold = config.fee_threshold
        self.max_amount = config.max_transfer_amount
        self.max_id_attempts = config.transaction_id_max_attempts
        self.agent_page_size = config.agent_history_page_size
        self.default_page_size = config.default_history_page_size
        self._id_generator = id_generator or (
            lambda: generate_transaction_id(config.transaction_id_length)
        )
        self.logger = get_logger("takaflow.transfers")

    def calculate_fee(self, amount: int) -> int:
        """Flat fee charged to the sender for amounts above the threshold"""
        return self.transfer_fee if amount > self.fee_threshold else 0

    def transfer(
        self,
        caller_id: str,
        receiver_identifier: str,
        amount: Any,
        pin: Union[str, int]
    ) -> TransactionRecord:
        """
        Move ``amount`` from the caller to the account identified by
        ``receiver_identifier`` (email or phone).

        Checks run in a fixed order and stop at the first failure; nothing
        is written unless every check passes.

        Returns:
            The persisted TransactionRecord

        Raises:
            ValidationError: amount is not a positive whole number within the
                configured maximum
            ReceiverNotEligible: receiver unknown, inactive, or not a customer
            InvalidCredential: PIN does not match the caller
            SelfTransferDenied: caller and receiver are the same account
            InsufficientBalance: caller cannot cover amount plus fee
            TransferFailed: the unit of work could not commit
        """
        try:
            amount = self._validate_amount(amount)
            receiver = self._resolve_receiver(receiver_identifier)

            sender = self.accounts.get(caller_id)
            if sender is None or not sender.verify_pin(pin):
                raise InvalidCredential("Invalid PIN")

            if sender.id == receiver.id:
                raise SelfTransferDenied("Cannot send money to yourself")

            fee = self.calculate_fee(amount)
            if sender.balance < amount + fee:
                raise InsufficientBalance("Insufficient balance")

            record = self._execute(sender.id, receiver.id, amount, fee)
        except TransferFailed as e:
            log_action(
                self.logger, "error", f"Transfer failed: {e.message}",
                user_id=caller_id, action="transfer_failed", resource="transfer",
                extra={"cause": repr(e.cause) if e.cause else None}
            )
            raise
        except TransferError as e:
            log_action(
                self.logger, "warning", f"Transfer rejected: {e.message}",
                user_id=caller_id, action="transfer_rejected", resource="transfer",
                extra={"reason": type(e).__name__}
            )
            raise

        log_action(
            self.logger, "info", "Transfer completed",
            user_id=caller_id, action="transfer",
            resource=f"transaction:{record.transaction_id}",
            extra={
                "transaction_id": record.transaction_id,
                "receiver_id": record.receiver.account_id,
                "amount": record.amount,
                "fee": record.fee
            }
        )
        return record

    def _validate_amount(self, amount: Any) -> int:
        if isinstance(amount, bool):
            raise ValidationError("Amount must be a number")
        try:
            value = Decimal(str(amount).strip())
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError("Amount must be a number")

        if not value.is_finite():
            raise ValidationError("Amount must be a number")
        # Bounded while still a Decimal; int() of an unbounded exponent would not return
        if value > self.max_amount:
            raise ValidationError(f"Amount must not exceed {self.max_amount}")
        if value != value.to_integral_value():
            raise ValidationError("Amount must be a whole number of currency units")
        if value <= 0:
            raise ValidationError("Amount must be positive")
        return int(value)

    def _resolve_receiver(self, receiver_identifier: str) -> Account:
        receiver = self.accounts.find_by_contact(receiver_identifier)
        if receiver is None or not receiver.can_receive_transfers:
            raise ReceiverNotEligible("Receiver not found or not eligible")
        return receiver

    def _execute(self, sender_id: str, receiver_id: str, amount: int, fee: int) -> TransactionRecord:
        """Debit, credit and append as one unit of work"""
        try:
            with self.storage.atomic():
                # Re-read inside the unit; the versions read here guard the writes
                sender = self.accounts.get(sender_id)
                receiver = self.accounts.get(receiver_id)
                if receiver is None or not receiver.can_receive_transfers:
                    raise ReceiverNotEligible("Receiver not found or not eligible")
                if sender is None or sender.balance < amount + fee:
                    raise InsufficientBalance("Insufficient balance")

                record = TransactionRecord(
                    transaction_id=self._allocate_transaction_id(),
                    sender=snapshot(sender),
                    receiver=snapshot(receiver),
                    amount=amount,
                    fee=fee,
                    status=TransactionStatus.SUCCESS,
                    created_at=datetime.now(timezone.utc)
                )

                self.accounts.write(sender, balance=sender.balance - amount - fee)
                self.accounts.write(receiver, balance=receiver.balance + amount)
                self.log.append(record)
        except TransferError:
            raise
        except Exception as e:
            raise TransferFailed("Transfer could not be completed", cause=e) from e

        return record

    def _allocate_transaction_id(self) -> str:
        for _ in range(self.max_id_attempts):
            candidate = self._id_generator()
            if not self.log.exists(candidate):
                return candidate
        raise TransferFailed("Could not allocate a unique transaction id")

    def page_size_for(self, role: Role) -> int:
        return self.agent_page_size if role == Role.AGENT else self.default_page_size

    def history(self, identity: Identity, limit: Optional[int] = None) -> List[TransactionRecord]:
        """Transactions involving the caller, most recent first"""
        if limit is None:
            limit = self.page_size_for(identity.role)
        return self.log.history(identity.account_id, limit=limit)

    def get_transaction(self, identity: Identity, transaction_id: str) -> Optional[TransactionRecord]:
        """
        Look up one record by id, e.g. to settle whether a transfer whose
        response timed out actually committed. Only parties to the transfer
        and admins can see it.
        """
        record = self.log.get(transaction_id)
        if record is None:
            return None
        if identity.role != Role.ADMIN and not record.involves(identity.account_id):
            return None
        return record
