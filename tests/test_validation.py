"""
Tests for the validation pipelines

Checks the order in which rules fire and that validation never writes to
the account store.
"""

from decimal import Decimal

import pytest

from card_ledger.errors import ErrorCode, OperationResult
from card_ledger.storage import ACCOUNTS_COLLECTION
from card_ledger.validation import run_rules

from tests.support import ADMIN_CARD, FixedClock, make_system, open_account

CARD = "1111222233334444"
TARGET = "5555666677778888"


class TestRunRules:
    """Test the pipeline runner"""

    def test_first_failure_wins(self):
        calls = []

        def rule(name, result):
            def check():
                calls.append(name)
                return result
            return check

        result = run_rules([
            rule("a", OperationResult.ok()),
            rule("b", OperationResult.fail(ErrorCode.NOT_FOUND, "b failed")),
            rule("c", OperationResult.fail(ErrorCode.INVALID_INPUT, "c failed")),
        ])

        assert result.message == "b failed"
        assert calls == ["a", "b"]

    def test_empty_pipeline_succeeds(self):
        assert run_rules([]).success


class TestAccountValidator:
    """Test the ordered rule pipelines"""

    def setup_method(self):
        self.clock = FixedClock()
        self.system = make_system(clock=self.clock)
        self.validator = self.system.validator
        open_account(self.system, CARD, pin="1234", balance="500", withdraw_limit="2000")
        open_account(self.system, TARGET, pin="5678", balance="100")

    def test_credentials_do_not_write(self):
        before = self.system.storage.load_collection(ACCOUNTS_COLLECTION)

        check = self.validator.validate_credentials(CARD, "0000")

        assert not check.success
        assert check.account.failed_login_attempts == 1
        assert self.system.accounts.get(CARD).failed_login_attempts == 0
        assert self.system.storage.load_collection(ACCOUNTS_COLLECTION) == before

    def test_correct_credentials_without_failures_return_no_account(self):
        check = self.validator.validate_credentials(CARD, "1234")
        assert check.success
        assert check.account is None

    def test_denomination_checked_before_balance(self):
        result = self.validator.validate_withdrawal(CARD, Decimal("1050"))
        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_limit_checked_before_balance(self):
        result = self.validator.validate_withdrawal(CARD, Decimal("2500"))
        assert result.error_code == ErrorCode.LIMIT_EXCEEDED

    def test_balance_checked_last(self):
        result = self.validator.validate_withdrawal(CARD, Decimal("600"))
        assert result.error_code == ErrorCode.INSUFFICIENT_FUNDS

    def test_amount_checked_before_existence(self):
        result = self.validator.validate_withdrawal("0000000000000000", Decimal("-5"))
        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_temporarily_locked_account_cannot_withdraw(self):
        for _ in range(3):
            self.system.service.login(CARD, "0000")

        result = self.validator.validate_withdrawal(CARD, Decimal("100"))
        assert result.error_code == ErrorCode.TEMPORARILY_LOCKED

    def test_transfer_same_card_checked_first(self):
        result = self.validator.validate_transfer(CARD, CARD, Decimal("-1"))
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert "differ" in result.message

    def test_transfer_target_before_amount(self):
        result = self.validator.validate_transfer(CARD, "0000000000000000", Decimal("-1"))
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_transfer_empty_target(self):
        result = self.validator.validate_transfer(CARD, "", Decimal("1"))
        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_deposit_ceiling_is_configurable(self):
        system = make_system(max_deposit_amount=Decimal("500"))
        open_account(system, CARD)
        result = system.validator.validate_deposit(CARD, Decimal("501"))
        assert result.error_code == ErrorCode.LIMIT_EXCEEDED

    @pytest.mark.parametrize("actor,code", [
        ("", ErrorCode.UNAUTHORIZED),
        ("0000000000000000", ErrorCode.UNAUTHORIZED),
        (CARD, ErrorCode.UNAUTHORIZED),
    ])
    def test_admin_operation_guard(self, actor, code):
        assert self.validator.validate_admin_operation(actor).error_code == code

    def test_admin_operation_allowed(self):
        assert self.validator.validate_admin_operation(ADMIN_CARD).success

    def test_target_account(self):
        assert self.validator.validate_target_account(TARGET).success
        self.system.admin.set_locked(ADMIN_CARD, TARGET, True)
        result = self.validator.validate_target_account(TARGET)
        assert result.error_code == ErrorCode.PERMANENTLY_LOCKED
        assert result.message == "Target account is locked"

    def test_pin_change_order(self):
        assert self.validator.validate_pin_change(CARD, "1234", "12").result.error_code == ErrorCode.INVALID_INPUT
        same = self.validator.validate_pin_change(CARD, "1234", "1234", "9999")
        assert "differ" in same.result.message

    def test_admin_login_requires_admin_role(self):
        check = self.validator.validate_admin_login(CARD, "1234")
        assert check.result.error_code == ErrorCode.UNAUTHORIZED
        assert self.validator.validate_admin_login(ADMIN_CARD, "8888").success
