"""
Ledger Service Module

Cardholder-facing operations: login, withdrawal, deposit, transfer, PIN
change and balance inquiry. Every mutating operation runs validate, mutate,
persist and append under the locks of the cards it touches, and publishes
the outcome on the event dispatcher.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional

from .accounts import Account, AccountStore
from .concurrency import AccountLocks
from .credentials import Clock, CredentialPolicy
from .errors import LedgerStateError, LoginResult, OperationResult
from .events import EventDispatcher, LedgerEvent, transaction_event_data
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .transactions import Transaction, TransactionLedger, TransactionType
from .validation import AccountValidator, CredentialCheck, run_rules

RECENT_TRANSACTIONS = 10


@dataclass(frozen=True)
class AccountSnapshot:
    """Consistent view of an account and its latest history"""
    account: Account
    recent_transactions: List[Transaction] = field(default_factory=list)
    is_temporarily_locked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "card_number": self.account.card_number,
            "holder_name": self.account.holder_name,
            "balance": str(self.account.balance),
            "withdraw_limit": str(self.account.withdraw_limit),
            "is_locked": self.account.is_locked,
            "is_temporarily_locked": self.is_temporarily_locked,
            "is_admin": self.account.is_admin,
            "recent_transactions": [t.to_dict() for t in self.recent_transactions],
        }


class LedgerService:
    """
    Orchestrates cardholder operations over the account store and the
    transaction ledger.
    """

    def __init__(
        self,
        store: AccountStore,
        ledger: TransactionLedger,
        policy: CredentialPolicy,
        validator: AccountValidator,
        locks: Optional[AccountLocks] = None,
        dispatcher: Optional[EventDispatcher] = None,
        clock: Optional[Clock] = None
    ):
        self.store = store
        self.ledger = ledger
        self.policy = policy
        self.validator = validator
        self.locks = locks or AccountLocks()
        self.dispatcher = dispatcher or EventDispatcher()
        self.clock = clock or policy.clock
        self.logger = get_logger("card_ledger.service")

    # Authentication

    def login(self, card_number: str, pin: str) -> LoginResult:
        """
        Authenticate a cardholder.

        A wrong PIN counts towards the temporary lock; a correct one resets
        the counter and appends a Login record.
        """
        with self.locks.hold(card_number):
            check = self.validator.validate_credentials(card_number, pin)
            persisted = self._persist_credential_state(check)

            if not check.success:
                self._login_failed(card_number, check)
                return LoginResult.from_failure(check.result)
            if not persisted.success:
                return LoginResult.from_failure(persisted)

            account = self._require_account(card_number)
            self._record_event(account, "Login")

        log_action(
            self.logger, "info", "Login succeeded",
            card_number=card_number, action="login"
        )
        self.dispatcher.emit(LedgerEvent.LOGIN_SUCCEEDED, card_number, {"is_admin": account.is_admin})
        return LoginResult.ok(
            is_admin=account.is_admin,
            holder_name=account.holder_name,
            balance=account.balance,
            withdraw_limit=account.withdraw_limit
        )

    def change_pin(self, card_number: str, current_pin: str, new_pin: str,
                   confirm_pin: Optional[str] = None) -> OperationResult:
        """Replace the PIN, re-hashing it with a fresh salt"""
        with self.locks.hold(card_number):
            check = self.validator.validate_pin_change(card_number, current_pin, new_pin, confirm_pin)
            persisted = self._persist_credential_state(check)
            if not check.success:
                if check.account is not None and self.policy.is_temporarily_locked(check.account):
                    self._emit_temporarily_locked(check.account)
                return self._failed("change_pin", card_number, check.result)
            if not persisted.success:
                return self._failed("change_pin", card_number, persisted)

            account = self._require_account(card_number)
            saved = self.store.save(self.policy.set_pin(account, new_pin))
            if not saved.success:
                return self._failed("change_pin", card_number, saved)
            self._record_event(account, "PIN changed")

        log_action(
            self.logger, "info", "PIN changed",
            card_number=card_number, action="change_pin"
        )
        self.dispatcher.emit(LedgerEvent.ACCOUNT_UPDATED, card_number, {"change": "pin"})
        return OperationResult.ok(message="PIN changed successfully")

    # Money movement

    def withdraw(self, card_number: str, amount: Any) -> OperationResult:
        """
        Withdraw cash.

        Returns:
            OperationResult whose value is the appended Transaction
        """
        with self.locks.hold(card_number):
            result = self.validator.validate_withdrawal(card_number, amount)
            if not result.success:
                return self._failed("withdraw", card_number, result)

            value = to_amount(amount)
            account = self._require_account(card_number)
            updated = replace(account, balance=account.balance - value)
            saved = self.store.save(updated)

            transaction = Transaction(
                card_number=card_number,
                timestamp=self.clock(),
                type=TransactionType.WITHDRAWAL,
                amount=value,
                balance_after=updated.balance,
                description="Cash withdrawal"
            )
            return self._complete("withdraw", [transaction], saved)

    def deposit(self, card_number: str, amount: Any) -> OperationResult:
        """
        Deposit cash.

        Returns:
            OperationResult whose value is the appended Transaction
        """
        with self.locks.hold(card_number):
            result = self.validator.validate_deposit(card_number, amount)
            if not result.success:
                return self._failed("deposit", card_number, result)

            value = to_amount(amount)
            account = self._require_account(card_number)
            updated = replace(account, balance=account.balance + value)
            saved = self.store.save(updated)

            transaction = Transaction(
                card_number=card_number,
                timestamp=self.clock(),
                type=TransactionType.DEPOSIT,
                amount=value,
                balance_after=updated.balance,
                description="Cash deposit"
            )
            return self._complete("deposit", [transaction], saved)

    def transfer(self, from_card: str, to_card: str, amount: Any) -> OperationResult:
        """
        Move money between two accounts.

        Both balances are persisted with a single flush. The sender gets a
        TRANSFER record and the receiver a DEPOSIT record, each naming the
        other card.

        Returns:
            OperationResult whose value is the sender's Transaction
        """
        with self.locks.hold(from_card, to_card):
            result = self.validator.validate_transfer(from_card, to_card, amount)
            if not result.success:
                return self._failed("transfer", from_card, result)

            value = to_amount(amount)
            sender = self._require_account(from_card)
            receiver = self._require_account(to_card)
            sender = replace(sender, balance=sender.balance - value)
            receiver = replace(receiver, balance=receiver.balance + value)

            saved = self.store.save_many([sender, receiver])

            now = self.clock()
            outgoing = Transaction(
                card_number=from_card,
                timestamp=now,
                type=TransactionType.TRANSFER,
                amount=value,
                balance_after=sender.balance,
                description=f"Transfer to {receiver.holder_name}",
                target_card_number=to_card
            )
            incoming = Transaction(
                card_number=to_card,
                timestamp=now,
                type=TransactionType.DEPOSIT,
                amount=value,
                balance_after=receiver.balance,
                description=f"Transfer from {sender.holder_name}",
                target_card_number=from_card
            )
            return self._complete("transfer", [outgoing, incoming], saved)

    def balance_inquiry(self, card_number: str) -> OperationResult:
        """
        Look up the balance and record the inquiry.

        Returns:
            OperationResult whose value is the current balance
        """
        with self.locks.hold(card_number):
            result = run_rules([
                lambda: self.validator.validate_account_exists(card_number),
                lambda: self.validator.validate_account_not_locked(card_number),
            ])
            if not result.success:
                return self._failed("balance_inquiry", card_number, result)

            account = self._require_account(card_number)
            appended = self.ledger.append(Transaction(
                card_number=card_number,
                timestamp=self.clock(),
                type=TransactionType.BALANCE_INQUIRY,
                amount=ZERO,
                balance_after=account.balance,
                description="Balance inquiry"
            ))
            if not appended.success:
                return self._failed("balance_inquiry", card_number, appended)

        return OperationResult.ok(value=account.balance)

    # Queries

    def get_account(self, card_number: str) -> Optional[Account]:
        return self.store.get(card_number)

    def get_target_holder_name(self, card_number: str) -> OperationResult:
        """Preview the holder of a transfer target"""
        result = self.validator.validate_target_account(card_number)
        if not result.success:
            return result
        return OperationResult.ok(value=self.store.get(card_number).holder_name)

    def snapshot(self, card_number: str, recent: int = RECENT_TRANSACTIONS) -> Optional[AccountSnapshot]:
        """Current account state plus its most recent transactions, newest first"""
        account = self.store.get(card_number)
        if account is None:
            return None
        return AccountSnapshot(
            account=account,
            recent_transactions=self.ledger.recent(card_number, recent),
            is_temporarily_locked=self.policy.is_temporarily_locked(account)
        )

    # Helpers

    def _require_account(self, card_number: str) -> Account:
        account = self.store.get(card_number)
        if account is None:
            raise LedgerStateError(f"Account {card_number} disappeared after validation")
        return account

    def _persist_credential_state(self, check: CredentialCheck) -> OperationResult:
        if check.account is None:
            return OperationResult.ok()
        return self.store.save(check.account)

    def _record_event(self, account: Account, description: str) -> None:
        """Append a non-monetary OTHER record"""
        result = self.ledger.append(Transaction(
            card_number=account.card_number,
            timestamp=self.clock(),
            type=TransactionType.OTHER,
            amount=ZERO,
            balance_after=account.balance,
            description=description
        ))
        if not result.success:
            self.logger.warning(f"Could not record '{description}': {result.message}")

    def _complete(self, operation: str, transactions: List[Transaction],
                  saved: OperationResult) -> OperationResult:
        """
        Append the records of an applied operation and announce them.

        The balance change is already applied in memory when this runs, so
        the records are appended even if the account flush failed.
        """
        primary = transactions[0]
        appended = self.ledger.append_many(transactions)

        log_action(
            self.logger, "info", f"{operation.capitalize()} completed",
            card_number=primary.card_number, action=operation,
            extra={
                "amount": str(primary.amount),
                "balance_after": str(primary.balance_after),
                "target_card_number": primary.target_card_number
            }
        )
        for transaction in transactions:
            self.dispatcher.emit(
                LedgerEvent.TRANSACTION_COMPLETED, transaction.card_number,
                transaction_event_data(transaction)
            )

        if not saved.success:
            return saved
        if not appended.success:
            return appended
        return OperationResult.ok(value=primary)

    def _login_failed(self, card_number: str, check: CredentialCheck) -> None:
        log_action(
            self.logger, "warning", f"Login failed: {check.result.message}",
            card_number=card_number, action="login",
            extra={"error_code": check.result.error_code.value}
        )
        self.dispatcher.emit(LedgerEvent.LOGIN_FAILED, card_number, check.result.to_dict())
        if check.account is not None and self.policy.is_temporarily_locked(check.account):
            self._emit_temporarily_locked(check.account)

    def _emit_temporarily_locked(self, account: Account) -> None:
        self.dispatcher.emit(
            LedgerEvent.ACCOUNT_TEMPORARILY_LOCKED, account.card_number,
            {"locked_until": account.temporary_lock_until.isoformat()}
        )

    def _failed(self, operation: str, card_number: str, result: OperationResult) -> OperationResult:
        log_action(
            self.logger, "warning", f"{operation} rejected: {result.message}",
            card_number=card_number, action=operation,
            extra={"error_code": result.error_code.value if result.error_code else None}
        )
        data = result.to_dict()
        data["operation"] = operation
        self.dispatcher.emit(LedgerEvent.OPERATION_FAILED, card_number, data)
        return result
