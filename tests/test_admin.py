"""
Test suite for administrative operations

Tests the admin guard, account lifecycle, lock management, PIN resets and
the audit records every administrative mutation leaves behind.
"""

from decimal import Decimal

import pytest

from card_ledger.accounts import AccountRole
from card_ledger.errors import ErrorCode, PersistenceError
from card_ledger.events import LedgerEvent
from card_ledger.storage import InMemoryStorage
from card_ledger.transactions import TransactionType

from tests.support import ADMIN_CARD, FixedClock, make_system, open_account

CARD = "1111222233334444"
OTHER_CARD = "5555666677778888"
SECOND_ADMIN = "9000000000000009"


class FlakyStorage(InMemoryStorage):
    def __init__(self):
        super().__init__()
        self.fail_writes = False

    def save_collection(self, name, records):
        if self.fail_writes:
            raise PersistenceError("disk full")
        super().save_collection(name, records)


class TestAdminGuard:
    """Only unlocked administrators may act"""

    def setup_method(self):
        self.system = make_system()
        self.admin = self.system.admin
        open_account(self.system, CARD)

    def test_customer_cannot_administer(self):
        result = self.admin.set_locked(CARD, ADMIN_CARD, True)
        assert result.error_code == ErrorCode.UNAUTHORIZED

    def test_unknown_actor(self):
        result = self.admin.list_accounts("0000000000000000")
        assert result.error_code == ErrorCode.UNAUTHORIZED

    def test_customer_cannot_list_accounts(self):
        assert self.admin.list_accounts(CARD).error_code == ErrorCode.UNAUTHORIZED

    def test_locked_admin_cannot_act(self):
        self.admin.create_account(ADMIN_CARD, SECOND_ADMIN, "1111", "Deputy", Decimal("0"),
                                  Decimal("1000"), role=AccountRole.ADMIN)
        self.admin.set_locked(ADMIN_CARD, SECOND_ADMIN, True)

        result = self.admin.list_accounts(SECOND_ADMIN)
        assert result.error_code == ErrorCode.PERMANENTLY_LOCKED

    def test_admin_login(self):
        result = self.admin.admin_login(ADMIN_CARD, "8888")
        assert result.success
        assert result.is_admin
        assert result.holder_name == "Administrator"

    def test_admin_login_rejects_customer(self):
        result = self.admin.admin_login(CARD, "1234")
        assert result.error_code == ErrorCode.UNAUTHORIZED

    def test_admin_login_wrong_pin_counts(self):
        result = self.admin.admin_login(ADMIN_CARD, "0000")
        assert not result.success
        assert self.system.accounts.get(ADMIN_CARD).failed_login_attempts == 1


class TestAccountLifecycle:
    """Test create, update, list and delete"""

    def setup_method(self):
        self.system = make_system()
        self.admin = self.system.admin

    def test_create_account(self):
        events = []
        self.system.dispatcher.subscribe(LedgerEvent.ACCOUNT_CREATED, events.append)

        result = self.admin.create_account(ADMIN_CARD, CARD, "1234", "  Dana  ", "5000", "2000")

        assert result.success
        account = self.system.accounts.get(CARD)
        assert account.holder_name == "Dana"
        assert account.balance == Decimal("5000.00")
        assert account.role == AccountRole.CUSTOMER
        assert self.system.policy.verify("1234", account)
        assert events[0].card_number == CARD

    def test_create_duplicate_card(self):
        open_account(self.system, CARD)
        result = self.admin.create_account(ADMIN_CARD, CARD, "1234", "Dup", "0", "100")
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert "already exists" in result.message

    @pytest.mark.parametrize("card,pin,name,balance,limit", [
        ("123", "1234", "Name", "0", "100"),
        (CARD, "12", "Name", "0", "100"),
        (CARD, "1234", "   ", "0", "100"),
        (CARD, "1234", "Name", "-1", "100"),
        (CARD, "1234", "Name", "0", "0"),
        (CARD, "1234", "Name", "0", "lots"),
    ])
    def test_create_rejects_bad_input(self, card, pin, name, balance, limit):
        result = self.admin.create_account(ADMIN_CARD, card, pin, name, balance, limit)
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert not self.system.accounts.exists(CARD)

    def test_update_account(self):
        open_account(self.system, CARD)
        result = self.admin.update_account(ADMIN_CARD, CARD, "Renamed", "7000", "3000")

        assert result.success
        account = self.system.accounts.get(CARD)
        assert account.holder_name == "Renamed"
        assert account.balance == Decimal("7000.00")
        assert account.withdraw_limit == Decimal("3000.00")
        assert account.card_number == CARD

    def test_update_unknown_account(self):
        result = self.admin.update_account(ADMIN_CARD, CARD, "Nobody", "0", "100")
        assert result.error_code == ErrorCode.NOT_FOUND

    def test_list_accounts_sorted(self):
        open_account(self.system, OTHER_CARD)
        open_account(self.system, CARD)

        accounts = self.admin.list_accounts(ADMIN_CARD).value

        assert [a.card_number for a in accounts] == [CARD, OTHER_CARD, ADMIN_CARD]

    def test_delete_account_cascades_history(self):
        open_account(self.system, CARD)
        self.system.service.deposit(CARD, "100")

        result = self.admin.delete_account(ADMIN_CARD, CARD)

        assert result.success
        assert result.value == 2
        assert not self.system.accounts.exists(CARD)
        assert self.system.transactions.for_card(CARD) == []

    def test_delete_cascades_even_when_flush_fails(self):
        storage = FlakyStorage()
        system = make_system(storage=storage)
        open_account(system, CARD)
        system.service.deposit(CARD, "100")
        events = []
        system.dispatcher.subscribe(LedgerEvent.ACCOUNT_DELETED, events.append)

        storage.fail_writes = True
        result = system.admin.delete_account(ADMIN_CARD, CARD)

        assert result.error_code == ErrorCode.PERSISTENCE_FAILURE
        assert not system.accounts.exists(CARD)
        assert system.transactions.for_card(CARD) == []
        assert len(events) == 1

    @pytest.mark.parametrize("balance,limit", [("1e30", "2000"), ("5000", "1e30")])
    def test_create_rejects_out_of_range_amounts(self, balance, limit):
        result = self.admin.create_account(ADMIN_CARD, CARD, "1234", "Dana", Decimal(balance), Decimal(limit))

        assert result.error_code == ErrorCode.INVALID_INPUT
        assert not self.system.accounts.exists(CARD)

    def test_delete_unknown_account(self):
        assert self.admin.delete_account(ADMIN_CARD, CARD).error_code == ErrorCode.NOT_FOUND

    def test_cannot_delete_self(self):
        result = self.admin.delete_account(ADMIN_CARD, ADMIN_CARD)
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert self.system.accounts.exists(ADMIN_CARD)

    def test_admin_can_delete_another_admin(self):
        self.admin.create_account(ADMIN_CARD, SECOND_ADMIN, "1111", "Deputy", "0", "1000",
                                  role=AccountRole.ADMIN)
        assert self.admin.delete_account(SECOND_ADMIN, ADMIN_CARD).success

        open_account_by_deputy = self.admin.create_account(SECOND_ADMIN, CARD, "1234", "Eve", "0", "100")
        assert open_account_by_deputy.success
        assert self.system.accounts.count_admins() == 1

    def test_last_admin_is_never_deleted(self):
        self.admin.create_account(ADMIN_CARD, SECOND_ADMIN, "1111", "Deputy", "0", "1000",
                                  role=AccountRole.ADMIN)
        self.admin.delete_account(SECOND_ADMIN, ADMIN_CARD)
        result = self.admin.delete_account(SECOND_ADMIN, SECOND_ADMIN)
        assert result.error_code == ErrorCode.INVALID_INPUT
        assert self.admin._check_not_last_admin(SECOND_ADMIN).error_code == ErrorCode.INVALID_INPUT


class TestLocksAndCredentials:
    """Test lock management, PIN resets and limits"""

    def setup_method(self):
        self.clock = FixedClock()
        self.system = make_system(clock=self.clock)
        self.admin = self.system.admin
        self.service = self.system.service
        open_account(self.system, CARD, pin="1234")

    def test_lock_and_unlock(self):
        assert self.admin.set_locked(ADMIN_CARD, CARD, True).success
        assert self.system.accounts.get(CARD).is_locked

        assert self.admin.set_locked(ADMIN_CARD, CARD, False).success
        assert not self.system.accounts.get(CARD).is_locked
        assert self.service.login(CARD, "1234").success

    def test_cannot_lock_self(self):
        result = self.admin.set_locked(ADMIN_CARD, ADMIN_CARD, True)
        assert result.error_code == ErrorCode.INVALID_INPUT

    def test_unlock_clears_temporary_lock(self):
        for _ in range(3):
            self.service.login(CARD, "0000")
        assert self.system.policy.is_temporarily_locked(self.system.accounts.get(CARD))

        self.admin.set_locked(ADMIN_CARD, CARD, False)

        account = self.system.accounts.get(CARD)
        assert account.failed_login_attempts == 0
        assert account.temporary_lock_until is None
        assert self.service.login(CARD, "1234").success

    def test_reset_pin(self):
        self.service.login(CARD, "0000")

        result = self.admin.reset_pin(ADMIN_CARD, CARD, "246810")

        assert result.success
        assert self.system.accounts.get(CARD).failed_login_attempts == 0
        assert self.service.login(CARD, "246810").success

    def test_reset_pin_rejects_bad_format(self):
        assert self.admin.reset_pin(ADMIN_CARD, CARD, "12").error_code == ErrorCode.INVALID_INPUT

    def test_set_withdraw_limit(self):
        result = self.admin.set_withdraw_limit(ADMIN_CARD, CARD, "500")

        assert result.success
        assert self.system.accounts.get(CARD).withdraw_limit == Decimal("500.00")
        assert self.service.withdraw(CARD, "600").error_code == ErrorCode.LIMIT_EXCEEDED

    def test_set_withdraw_limit_must_be_positive(self):
        result = self.admin.set_withdraw_limit(ADMIN_CARD, CARD, "0")
        assert result.error_code == ErrorCode.INVALID_INPUT


class TestAuditRecords:
    """Every administrative mutation is visible in both histories"""

    def setup_method(self):
        self.system = make_system()
        self.admin = self.system.admin
        open_account(self.system, CARD)

    def _other(self, card_number):
        return [t for t in self.system.transactions.for_card(card_number)
                if t.type == TransactionType.OTHER]

    def test_lock_is_audited_on_both_cards(self):
        self.admin.set_locked(ADMIN_CARD, CARD, True)

        admin_record = self._other(ADMIN_CARD)[-1]
        target_record = self._other(CARD)[-1]
        assert admin_record.description == "Account locked"
        assert admin_record.target_card_number == CARD
        assert target_record.description == "Account locked"
        assert target_record.target_card_number == ADMIN_CARD
        assert target_record.amount == Decimal("0.00")

    def test_delete_is_audited_on_admin_card(self):
        self.admin.delete_account(ADMIN_CARD, CARD)

        record = self._other(ADMIN_CARD)[-1]
        assert record.description == f"Account {CARD} deleted"
        assert record.target_card_number == CARD

    def test_rejected_operation_leaves_no_audit(self):
        before = len(self.system.transactions.all())
        self.admin.set_locked(CARD, ADMIN_CARD, True)
        assert len(self.system.transactions.all()) == before
