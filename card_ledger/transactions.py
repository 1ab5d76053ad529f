"""
Transaction Ledger Module

Append-only history of every account event: deposits, withdrawals,
transfers, balance inquiries and non-monetary events such as logins, PIN
changes and administrator actions. Records are never updated or removed
one by one; the only deletion is the bulk removal of a card's history when
its account is deleted.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
import threading

from .accounts import parse_timestamp
from .errors import ErrorCode, OperationResult, PersistenceError
from .logging_config import get_logger, log_action
from .money import to_amount, ZERO
from .storage import StorageInterface, TRANSACTIONS_COLLECTION


class TransactionType(Enum):
    """Types of ledger records"""
    DEPOSIT = "deposit"                  # Cash deposit or incoming transfer
    WITHDRAWAL = "withdrawal"            # Cash withdrawal
    TRANSFER = "transfer"                # Outgoing transfer
    BALANCE_INQUIRY = "balance_inquiry"
    OTHER = "other"                      # Login, PIN change, admin action


# Integer codes used by the legacy persisted format
LEGACY_TYPE_CODES = {
    0: TransactionType.DEPOSIT,
    1: TransactionType.WITHDRAWAL,
    2: TransactionType.BALANCE_INQUIRY,
    3: TransactionType.TRANSFER,
    4: TransactionType.OTHER,
}


@dataclass(frozen=True)
class Transaction:
    """Immutable ledger record"""
    card_number: str
    timestamp: datetime
    type: TransactionType
    amount: Decimal
    balance_after: Decimal
    description: str = ""
    target_card_number: Optional[str] = None  # Counterparty of a transfer or admin action

    def __post_init__(self):
        if self.amount < 0:
            raise ValueError("Transaction amount must not be negative")

    @property
    def is_income(self) -> bool:
        return self.type == TransactionType.DEPOSIT

    @property
    def is_expense(self) -> bool:
        return self.type in (TransactionType.WITHDRAWAL, TransactionType.TRANSFER)

    @property
    def signed_amount(self) -> Decimal:
        """Effect on the balance: positive for income, negative for expense"""
        if self.is_income:
            return self.amount
        if self.is_expense:
            return -self.amount
        return ZERO

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted JSON shape"""
        return {
            "cardNumber": self.card_number,
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "amount": str(self.amount),
            "balanceAfter": str(self.balance_after),
            "description": self.description,
            "targetCardNumber": self.target_card_number or "",
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        """
        Create a Transaction from its persisted shape.

        Accepts the legacy integer type codes and float amounts.
        """
        raw_type = data["type"]
        if isinstance(raw_type, int) and not isinstance(raw_type, bool):
            transaction_type = LEGACY_TYPE_CODES[raw_type]
        else:
            transaction_type = TransactionType(raw_type)

        timestamp = parse_timestamp(data["timestamp"])
        if timestamp is None:
            raise ValueError("Transaction timestamp is missing")

        return cls(
            card_number=str(data["cardNumber"]),
            timestamp=timestamp,
            type=transaction_type,
            amount=to_amount(data.get("amount", 0)),
            balance_after=to_amount(data.get("balanceAfter", 0)),
            description=str(data.get("description", "")),
            target_card_number=data.get("targetCardNumber") or None,
        )


class TransactionLedger:
    """
    Append-only store of Transaction records.

    Insertion order is kept, but it is not guaranteed to be chronological
    across every path, so recency queries sort by timestamp.

    After a failed load nothing is written back until a load succeeds.
    """

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self._transactions: List[Transaction] = []
        self._load_failed = False
        self._lock = threading.RLock()
        self.logger = get_logger("card_ledger.transactions")

    def load(self) -> OperationResult:
        """Load the whole history from storage"""
        with self._lock:
            try:
                records = self.storage.load_collection(TRANSACTIONS_COLLECTION)
            except PersistenceError as e:
                self.logger.error(f"Cannot load transactions: {e}")
                self._transactions = []
                self._load_failed = True
                return OperationResult.fail(ErrorCode.PERSISTENCE_FAILURE, f"Cannot load transactions: {e}")

            self._load_failed = False
            self._transactions = []
            for record in records or []:
                try:
                    self._transactions.append(Transaction.from_dict(record))
                except (KeyError, ValueError, TypeError) as e:
                    self.logger.warning(f"Skipping malformed transaction record: {e}")

            self.logger.info(f"Loaded {len(self._transactions)} transactions")
            return OperationResult.ok()

    def flush(self) -> OperationResult:
        """Write the whole history to storage"""
        with self._lock:
            if self._load_failed:
                self.logger.error("Refusing to save transactions: the stored history could not be loaded")
                return OperationResult.fail(
                    ErrorCode.PERSISTENCE_FAILURE,
                    "Transaction history was not saved because it could not be loaded"
                )
            records = [transaction.to_dict() for transaction in self._transactions]
            try:
                self.storage.save_collection(TRANSACTIONS_COLLECTION, records)
            except PersistenceError as e:
                self.logger.error(f"Cannot save transactions: {e}")
                return OperationResult.fail(ErrorCode.PERSISTENCE_FAILURE, "Unable to save transaction history")
        return OperationResult.ok()

    def append(self, transaction: Transaction) -> OperationResult:
        """
        Append a record and flush.

        The record stays in memory even when the flush fails.
        """
        return self.append_many([transaction])

    def append_many(self, transactions: List[Transaction]) -> OperationResult:
        """Append several records with a single flush"""
        with self._lock:
            self._transactions.extend(transactions)
            for transaction in transactions:
                log_action(
                    self.logger, "debug", f"Transaction recorded: {transaction.type.value}",
                    card_number=transaction.card_number, action="append_transaction",
                    extra={
                        "amount": str(transaction.amount),
                        "balance_after": str(transaction.balance_after),
                        "target_card_number": transaction.target_card_number
                    }
                )
            result = self.flush()
        if not result.success:
            return result
        return OperationResult.ok(value=transactions[-1] if transactions else None)

    def for_card(self, card_number: str) -> List[Transaction]:
        """All records of a card in insertion order"""
        with self._lock:
            return [t for t in self._transactions if t.card_number == card_number]

    def recent(self, card_number: str, count: int) -> List[Transaction]:
        """Newest first, at most count records"""
        if count <= 0:
            return []
        transactions = self.for_card(card_number)
        transactions.sort(key=lambda t: t.timestamp, reverse=True)
        return transactions[:count]

    def all(self) -> List[Transaction]:
        with self._lock:
            return list(self._transactions)

    def clear_for_card(self, card_number: str) -> OperationResult:
        """
        Remove every record of a card, then flush.

        The records are gone from memory even when the flush fails.

        Returns:
            OperationResult whose value is the number of records removed,
            or the flush failure
        """
        with self._lock:
            before = len(self._transactions)
            self._transactions = [t for t in self._transactions if t.card_number != card_number]
            removed = before - len(self._transactions)
            result = self.flush()

        log_action(
            self.logger, "info", f"Cleared {removed} transactions",
            card_number=card_number, action="clear_transactions"
        )
        if not result.success:
            return result
        return OperationResult.ok(value=removed)
