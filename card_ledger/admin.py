"""
Administration Module

Privileged account lifecycle: creating, editing, locking, deleting accounts
and resetting PINs and withdraw limits. Every operation takes the acting
administrator's card number and is refused unless that account is an
unlocked administrator. Each mutation leaves OTHER audit records in the
transaction ledger on the administrator's card and on the affected card.
"""

from dataclasses import replace
from typing import Any, List, Optional

from .accounts import Account, AccountRole, AccountStore
from .concurrency import AccountLocks
from .credentials import Clock, CredentialPolicy
from .errors import ErrorCode, LedgerStateError, LoginResult, OperationResult
from .events import EventDispatcher, LedgerEvent
from .logging_config import get_logger, log_action
from .money import ZERO, to_amount
from .transactions import Transaction, TransactionLedger, TransactionType
from .validation import AccountValidator, run_rules


class AdminService:
    """Administrative operations over accounts"""

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
        self.logger = get_logger("card_ledger.admin")

    def admin_login(self, card_number: str, pin: str) -> LoginResult:
        """Authenticate an administrator; failed PINs count as for any login"""
        with self.locks.hold(card_number):
            check = self.validator.validate_admin_login(card_number, pin)
            persisted = OperationResult.ok()
            if check.account is not None:
                persisted = self.store.save(check.account)

            if not check.success:
                log_action(
                    self.logger, "warning", f"Administrator login failed: {check.result.message}",
                    card_number=card_number, action="admin_login"
                )
                self.dispatcher.emit(LedgerEvent.LOGIN_FAILED, card_number, check.result.to_dict())
                return LoginResult.from_failure(check.result)
            if not persisted.success:
                return LoginResult.from_failure(persisted)

            admin = self._require_account(card_number)
            self._audit(admin, None, "Administrator login")

        self.dispatcher.emit(LedgerEvent.LOGIN_SUCCEEDED, card_number, {"is_admin": True})
        return LoginResult.ok(
            is_admin=True,
            holder_name=admin.holder_name,
            balance=admin.balance,
            withdraw_limit=admin.withdraw_limit
        )

    def create_account(self, actor_card: str, card_number: str, pin: str, holder_name: str,
                       balance: Any, withdraw_limit: Any,
                       role: AccountRole = AccountRole.CUSTOMER) -> OperationResult:
        """
        Open a new account.

        Returns:
            OperationResult whose value is the created Account
        """
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_create_account(
                    card_number, pin, holder_name, balance, withdraw_limit
                ),
            ])
            if not result.success:
                return self._failed("create_account", actor_card, card_number, result)

            account = self.policy.set_pin(Account(
                card_number=card_number,
                holder_name=holder_name.strip(),
                balance=to_amount(balance),
                withdraw_limit=to_amount(withdraw_limit),
                role=role
            ), pin)
            saved = self.store.save(account)
            if not saved.success:
                return self._failed("create_account", actor_card, card_number, saved)

            self._audit(self._require_account(actor_card), account, "Account created")

        self._done("create_account", actor_card, card_number, LedgerEvent.ACCOUNT_CREATED,
                   {"holder_name": account.holder_name, "role": role.value})
        return OperationResult.ok(value=account, message="Account created")

    def update_account(self, actor_card: str, card_number: str, holder_name: str,
                       balance: Any, withdraw_limit: Any) -> OperationResult:
        """Change holder name, balance and withdraw limit; the card number never changes"""
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_update_account(
                    card_number, holder_name, balance, withdraw_limit
                ),
            ])
            if not result.success:
                return self._failed("update_account", actor_card, card_number, result)

            account = replace(
                self._require_account(card_number),
                holder_name=holder_name.strip(),
                balance=to_amount(balance),
                withdraw_limit=to_amount(withdraw_limit)
            )
            saved = self.store.save(account)
            if not saved.success:
                return self._failed("update_account", actor_card, card_number, saved)

            self._audit(self._require_account(actor_card), account, "Account updated")

        self._done("update_account", actor_card, card_number, LedgerEvent.ACCOUNT_UPDATED,
                   {"change": "details"})
        return OperationResult.ok(value=account, message="Account updated")

    def delete_account(self, actor_card: str, card_number: str) -> OperationResult:
        """
        Remove an account together with its transaction history.

        Once the account is gone from memory its history is always cleared,
        even if the account flush failed. A failed flush of either collection
        is returned as PERSISTENCE_FAILURE.
        """
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_account_exists(card_number),
                lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "Administrators cannot delete their own account")
                         if card_number == actor_card else OperationResult.ok()),
                lambda: self._check_not_last_admin(card_number),
            ])
            if not result.success:
                return self._failed("delete_account", actor_card, card_number, result)

            deleted = self.store.delete(card_number)
            if deleted.error_code == ErrorCode.NOT_FOUND:
                return self._failed("delete_account", actor_card, card_number, deleted)
            cleared = self.ledger.clear_for_card(card_number)

            self._audit(self._require_account(actor_card), None, f"Account {card_number} deleted",
                        target_card_number=card_number)

        removed = cleared.value if cleared.success else None
        self._done("delete_account", actor_card, card_number, LedgerEvent.ACCOUNT_DELETED,
                   {"transactions_removed": removed})
        if not deleted.success:
            return self._failed("delete_account", actor_card, card_number, deleted)
        if not cleared.success:
            return self._failed("delete_account", actor_card, card_number, cleared)
        return OperationResult.ok(value=removed, message="Account deleted")

    def set_locked(self, actor_card: str, card_number: str, locked: bool) -> OperationResult:
        """
        Set or clear the administrative lock.

        Unlocking also clears failed login attempts and any temporary lock.
        """
        operation = "lock_account" if locked else "unlock_account"
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_account_exists(card_number),
                lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "Administrators cannot lock their own account")
                         if locked and card_number == actor_card else OperationResult.ok()),
            ])
            if not result.success:
                return self._failed(operation, actor_card, card_number, result)

            account = replace(self._require_account(card_number), is_locked=locked)
            if not locked:
                account = self.policy.reset_failures(account)
            saved = self.store.save(account)
            if not saved.success:
                return self._failed(operation, actor_card, card_number, saved)

            self._audit(self._require_account(actor_card), account,
                        "Account locked" if locked else "Account unlocked")

        self._done(operation, actor_card, card_number, LedgerEvent.ACCOUNT_UPDATED,
                   {"change": "lock", "is_locked": locked})
        return OperationResult.ok(value=account, message="Account locked" if locked else "Account unlocked")

    def reset_pin(self, actor_card: str, card_number: str, new_pin: str) -> OperationResult:
        """Set a new PIN without knowing the old one; clears the failure counter"""
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_account_exists(card_number),
                lambda: self.validator.validate_pin_format(new_pin),
            ])
            if not result.success:
                return self._failed("reset_pin", actor_card, card_number, result)

            account = self.policy.set_pin(self._require_account(card_number), new_pin)
            account = self.policy.reset_failures(account)
            saved = self.store.save(account)
            if not saved.success:
                return self._failed("reset_pin", actor_card, card_number, saved)

            self._audit(self._require_account(actor_card), account, "PIN reset by administrator")

        self._done("reset_pin", actor_card, card_number, LedgerEvent.ACCOUNT_UPDATED, {"change": "pin"})
        return OperationResult.ok(message="PIN reset")

    def set_withdraw_limit(self, actor_card: str, card_number: str, withdraw_limit: Any) -> OperationResult:
        with self.locks.hold(actor_card, card_number):
            result = run_rules([
                lambda: self.validator.validate_admin_operation(actor_card),
                lambda: self.validator.validate_account_exists(card_number),
                lambda: self.validator.validate_withdraw_limit_value(withdraw_limit),
            ])
            if not result.success:
                return self._failed("set_withdraw_limit", actor_card, card_number, result)

            account = replace(self._require_account(card_number), withdraw_limit=to_amount(withdraw_limit))
            saved = self.store.save(account)
            if not saved.success:
                return self._failed("set_withdraw_limit", actor_card, card_number, saved)

            self._audit(self._require_account(actor_card), account,
                        f"Withdraw limit set to {account.withdraw_limit}")

        self._done("set_withdraw_limit", actor_card, card_number, LedgerEvent.ACCOUNT_UPDATED,
                   {"change": "withdraw_limit", "withdraw_limit": str(account.withdraw_limit)})
        return OperationResult.ok(value=account, message="Withdraw limit updated")

    def list_accounts(self, actor_card: str) -> OperationResult:
        """
        Returns:
            OperationResult whose value is every Account, sorted by card number
        """
        result = self.validator.validate_admin_operation(actor_card)
        if not result.success:
            return result
        accounts: List[Account] = sorted(self.store.all(), key=lambda a: a.card_number)
        return OperationResult.ok(value=accounts)

    # Helpers

    def _check_not_last_admin(self, card_number: str) -> OperationResult:
        account = self.store.get(card_number)
        if account is not None and account.is_admin and self.store.count_admins() <= 1:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Cannot delete the last administrator account")
        return OperationResult.ok()

    def _require_account(self, card_number: str) -> Account:
        account = self.store.get(card_number)
        if account is None:
            raise LedgerStateError(f"Account {card_number} disappeared after validation")
        return account

    def _audit(self, admin: Account, target: Optional[Account], description: str,
               target_card_number: Optional[str] = None) -> None:
        """Append OTHER records on the administrator's card and the affected card"""
        now = self.clock()
        records = [Transaction(
            card_number=admin.card_number,
            timestamp=now,
            type=TransactionType.OTHER,
            amount=ZERO,
            balance_after=admin.balance,
            description=description,
            target_card_number=target.card_number if target else target_card_number
        )]
        if target is not None and target.card_number != admin.card_number:
            records.append(Transaction(
                card_number=target.card_number,
                timestamp=now,
                type=TransactionType.OTHER,
                amount=ZERO,
                balance_after=target.balance,
                description=description,
                target_card_number=admin.card_number
            ))
        result = self.ledger.append_many(records)
        if not result.success:
            self.logger.warning(f"Could not record audit entry '{description}': {result.message}")

    def _done(self, operation: str, actor_card: str, card_number: str,
              event_type: LedgerEvent, data: dict) -> None:
        log_action(
            self.logger, "info", f"Administrator operation {operation} completed",
            card_number=card_number, action=operation, resource=f"admin:{actor_card}"
        )
        self.dispatcher.emit(event_type, card_number, dict(data, actor=actor_card))

    def _failed(self, operation: str, actor_card: str, card_number: str,
                result: OperationResult) -> OperationResult:
        log_action(
            self.logger, "warning", f"Administrator operation {operation} rejected: {result.message}",
            card_number=card_number, action=operation, resource=f"admin:{actor_card}",
            extra={"error_code": result.error_code.value if result.error_code else None}
        )
        data = result.to_dict()
        data.update(operation=operation, actor=actor_card)
        self.dispatcher.emit(LedgerEvent.OPERATION_FAILED, card_number, data)
        return result
