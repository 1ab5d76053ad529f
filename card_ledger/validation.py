"""
Validation Module

Ordered rule pipelines for every ledger operation. Each rule returns an
OperationResult; a pipeline runs its rules in order and stops at the first
failure. Format rules are pure predicates. Existence and state rules read
the AccountStore but never write to it: where a credential check changes
lockout state, the new Account value is handed back to the caller to persist.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional

from .accounts import Account, AccountStore, is_valid_card_number, is_valid_pin
from .credentials import CredentialPolicy
from .errors import ErrorCode, OperationResult
from .money import format_amount, is_multiple_of, parse_amount

Rule = Callable[[], OperationResult]

SUCCESS = OperationResult.ok()


@dataclass(frozen=True)
class CredentialCheck:
    """
    Outcome of a credential check.

    account is the account with its updated lockout state whenever the
    check changed it (failure recorded or counter reset), otherwise None.
    """
    result: OperationResult
    account: Optional[Account] = None

    @property
    def success(self) -> bool:
        return self.result.success


def run_rules(rules: Iterable[Rule]) -> OperationResult:
    """Run rules in order, returning the first failure"""
    for rule in rules:
        result = rule()
        if not result.success:
            return result
    return SUCCESS


class AccountValidator:
    """Business rule checks over the account store"""

    def __init__(self, store: AccountStore, policy: CredentialPolicy, config=None):
        if config is None:
            from .config import get_config
            config = get_config()
        self.store = store
        self.policy = policy
        self.denomination = Decimal(config.withdrawal_denomination)
        self.max_deposit = Decimal(config.max_deposit_amount)
        self.max_transfer = Decimal(config.max_transfer_amount)

    # Format rules

    def validate_card_number_format(self, card_number: Any) -> OperationResult:
        if not is_valid_card_number(card_number):
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Card number must be 16 digits")
        return SUCCESS

    def validate_pin_format(self, pin: Any) -> OperationResult:
        if not is_valid_pin(pin):
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "PIN must be 4 to 6 digits")
        return SUCCESS

    def validate_amount_positive(self, amount: Optional[Decimal], label: str = "Amount") -> OperationResult:
        if amount is None:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, f"{label} is not a valid number")
        if amount <= 0:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, f"{label} must be positive")
        return SUCCESS

    def validate_denomination(self, amount: Decimal) -> OperationResult:
        if not is_multiple_of(amount, self.denomination):
            return OperationResult.fail(
                ErrorCode.INVALID_INPUT,
                f"Withdrawal amount must be a multiple of {format_amount(self.denomination)}"
            )
        return SUCCESS

    def validate_ceiling(self, amount: Decimal, ceiling: Decimal, label: str) -> OperationResult:
        if amount > ceiling:
            return OperationResult.fail(
                ErrorCode.LIMIT_EXCEEDED,
                f"A single {label} may not exceed {format_amount(ceiling)}"
            )
        return SUCCESS

    # State rules

    def validate_account_exists(self, card_number: str) -> OperationResult:
        if not card_number:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Card number must not be empty")
        if not self.store.exists(card_number):
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        return SUCCESS

    def validate_account_not_locked(self, card_number: str) -> OperationResult:
        account = self.store.get(card_number)
        if account is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        if account.is_locked:
            return OperationResult.fail(
                ErrorCode.PERMANENTLY_LOCKED,
                "This account is locked, please contact an administrator"
            )
        if self.policy.is_temporarily_locked(account):
            return self._temporarily_locked(account)
        return SUCCESS

    def validate_withdraw_limit(self, card_number: str, amount: Decimal) -> OperationResult:
        account = self.store.get(card_number)
        if account is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        if amount > account.withdraw_limit:
            return OperationResult.fail(
                ErrorCode.LIMIT_EXCEEDED,
                f"Amount exceeds the per-withdrawal limit of {format_amount(account.withdraw_limit)}"
            )
        return SUCCESS

    def validate_sufficient_balance(self, card_number: str, amount: Decimal) -> OperationResult:
        account = self.store.get(card_number)
        if account is None:
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
        if amount > account.balance:
            return OperationResult.fail(ErrorCode.INSUFFICIENT_FUNDS, "Insufficient balance")
        return SUCCESS

    # Credential pipelines

    def validate_credentials(self, card_number: str, pin: str) -> CredentialCheck:
        """
        Check a card/PIN pair.

        A wrong PIN is recorded against the returned account; a correct PIN
        resets the failure counter on it.
        """
        result = run_rules([
            lambda: self._require(card_number, "Please enter a card number"),
            lambda: self._require(pin, "Please enter a PIN"),
            lambda: self.validate_card_number_format(card_number),
        ])
        if not result.success:
            return CredentialCheck(result)

        account = self.store.get(card_number)
        if account is None:
            return CredentialCheck(OperationResult.fail(ErrorCode.NOT_FOUND, "Card number or PIN is incorrect"))

        if account.is_locked:
            return CredentialCheck(OperationResult.fail(
                ErrorCode.PERMANENTLY_LOCKED,
                "This account is locked, please contact an administrator"
            ))

        if self.policy.is_temporarily_locked(account):
            return CredentialCheck(self._temporarily_locked(account))

        if not self.policy.verify(pin, account):
            updated = self.policy.record_failed_login(account)
            if self.policy.is_temporarily_locked(updated):
                return CredentialCheck(self._temporarily_locked(updated, prefix="Incorrect PIN. "), updated)
            return CredentialCheck(OperationResult.fail(
                ErrorCode.INVALID_INPUT,
                f"Card number or PIN is incorrect, {self.policy.remaining_attempts(updated)} attempts remaining"
            ), updated)

        if account.failed_login_attempts > 0 or account.temporary_lock_until is not None:
            return CredentialCheck(SUCCESS, self.policy.reset_failures(account))
        return CredentialCheck(SUCCESS)

    def validate_admin_login(self, card_number: str, pin: str) -> CredentialCheck:
        check = self.validate_credentials(card_number, pin)
        if not check.success:
            return check
        account = check.account or self.store.get(card_number)
        if account is None or not account.is_admin:
            return CredentialCheck(
                OperationResult.fail(ErrorCode.UNAUTHORIZED, "This account has no administrative rights"),
                check.account
            )
        return check

    def validate_pin_change(self, card_number: str, current_pin: str, new_pin: str,
                            confirm_pin: Optional[str] = None) -> CredentialCheck:
        check = self.validate_credentials(card_number, current_pin)
        if not check.success:
            return check

        result = run_rules([
            lambda: self.validate_pin_format(new_pin),
            lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "New PIN must differ from the current PIN")
                     if new_pin == current_pin else SUCCESS),
            lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "New PIN and confirmation do not match")
                     if confirm_pin and new_pin != confirm_pin else SUCCESS),
        ])
        return CredentialCheck(result, check.account)

    # Money movement pipelines

    def validate_withdrawal(self, card_number: str, amount: Any) -> OperationResult:
        value = parse_amount(amount)
        return run_rules([
            lambda: self._require(card_number, "Please log in first"),
            lambda: self.validate_amount_positive(value, "Withdrawal amount"),
            lambda: self.validate_denomination(value),
            lambda: self.validate_account_exists(card_number),
            lambda: self.validate_account_not_locked(card_number),
            lambda: self.validate_withdraw_limit(card_number, value),
            lambda: self.validate_sufficient_balance(card_number, value),
        ])

    def validate_deposit(self, card_number: str, amount: Any) -> OperationResult:
        value = parse_amount(amount)
        return run_rules([
            lambda: self._require(card_number, "Please log in first"),
            lambda: self.validate_amount_positive(value, "Deposit amount"),
            lambda: self.validate_account_exists(card_number),
            lambda: self.validate_account_not_locked(card_number),
            lambda: self.validate_ceiling(value, self.max_deposit, "deposit"),
        ])

    def validate_transfer(self, from_card: str, to_card: str, amount: Any) -> OperationResult:
        value = parse_amount(amount)
        return run_rules([
            lambda: self._require(from_card, "Please log in first"),
            lambda: self._require(to_card, "Please enter the target card number"),
            lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "Source and target card must differ")
                     if from_card == to_card else SUCCESS),
            lambda: self.validate_account_exists(from_card),
            lambda: self.validate_account_not_locked(from_card),
            lambda: self.validate_target_account(to_card),
            lambda: self.validate_amount_positive(value, "Transfer amount"),
            lambda: self.validate_sufficient_balance(from_card, value),
            lambda: self.validate_ceiling(value, self.max_transfer, "transfer"),
        ])

    def validate_target_account(self, card_number: str) -> OperationResult:
        """Check that a transfer counterparty can receive money"""
        result = run_rules([
            lambda: self._require(card_number, "Target card number must not be empty"),
            lambda: self.validate_card_number_format(card_number),
        ])
        if not result.success:
            return result
        if not self.store.exists(card_number):
            return OperationResult.fail(ErrorCode.NOT_FOUND, "Target account does not exist")
        result = self.validate_account_not_locked(card_number)
        if not result.success:
            return OperationResult.fail(result.error_code, "Target account is locked")
        return SUCCESS

    # Administration pipelines

    def validate_admin_operation(self, actor_card: str) -> OperationResult:
        """Check that the acting account may perform privileged operations"""
        if not actor_card:
            return OperationResult.fail(ErrorCode.UNAUTHORIZED, "Administrator card number must not be empty")
        actor = self.store.get(actor_card)
        if actor is None or not actor.is_admin:
            return OperationResult.fail(ErrorCode.UNAUTHORIZED, "This account has no administrative rights")
        if actor.is_locked:
            return OperationResult.fail(ErrorCode.PERMANENTLY_LOCKED, "Administrator account is locked")
        return SUCCESS

    def validate_create_account(self, card_number: str, pin: str, holder_name: str,
                                balance: Any, withdraw_limit: Any) -> OperationResult:
        return run_rules([
            lambda: self.validate_card_number_format(card_number),
            lambda: (OperationResult.fail(ErrorCode.INVALID_INPUT, "Card number already exists")
                     if self.store.exists(card_number) else SUCCESS),
            lambda: self.validate_pin_format(pin),
            lambda: self._validate_holder_name(holder_name),
            lambda: self._validate_balance(balance),
            lambda: self.validate_withdraw_limit_value(withdraw_limit),
        ])

    def validate_update_account(self, card_number: str, holder_name: str,
                                balance: Any, withdraw_limit: Any) -> OperationResult:
        return run_rules([
            lambda: self.validate_account_exists(card_number),
            lambda: self._validate_holder_name(holder_name),
            lambda: self._validate_balance(balance),
            lambda: self.validate_withdraw_limit_value(withdraw_limit),
        ])

    def validate_withdraw_limit_value(self, withdraw_limit: Any) -> OperationResult:
        value = parse_amount(withdraw_limit)
        if value is None or value <= 0:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Withdraw limit must be positive")
        return SUCCESS

    # Helpers

    @staticmethod
    def _require(value: Any, message: str) -> OperationResult:
        if not value:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, message)
        return SUCCESS

    @staticmethod
    def _validate_holder_name(holder_name: Any) -> OperationResult:
        if not isinstance(holder_name, str) or not holder_name.strip():
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Holder name must not be empty")
        return SUCCESS

    @staticmethod
    def _validate_balance(balance: Any) -> OperationResult:
        value = parse_amount(balance)
        if value is None or value < 0:
            return OperationResult.fail(ErrorCode.INVALID_INPUT, "Balance must not be negative")
        return SUCCESS

    def _temporarily_locked(self, account: Account, prefix: str = "") -> OperationResult:
        minutes = self.policy.minutes_until_unlock(account)
        until = account.temporary_lock_until.strftime("%H:%M UTC")
        return OperationResult.fail(
            ErrorCode.TEMPORARILY_LOCKED,
            f"{prefix}Account temporarily locked after repeated failed logins, "
            f"try again in {minutes} minutes (after {until})"
        )
