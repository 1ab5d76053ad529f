"""
Test suite for the transaction ledger
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from card_ledger.errors import ErrorCode, PersistenceError
from card_ledger.storage import TRANSACTIONS_COLLECTION, InMemoryStorage
from card_ledger.transactions import Transaction, TransactionLedger, TransactionType

from tests.support import START

CARD = "1111222233334444"
OTHER = "5555666677778888"


def make_transaction(card=CARD, minutes=0, type=TransactionType.DEPOSIT, amount="100", balance="100",
                     target=None):
    return Transaction(
        card_number=card,
        timestamp=START + timedelta(minutes=minutes),
        type=type,
        amount=Decimal(amount),
        balance_after=Decimal(balance),
        description="test",
        target_card_number=target
    )


class ReadOnlyStorage(InMemoryStorage):
    def save_collection(self, name, records):
        raise PersistenceError("read-only")


class CorruptOnceStorage(InMemoryStorage):
    """Storage whose first read fails, as if the file were damaged"""

    def __init__(self):
        super().__init__()
        self.corrupt = True

    def load_collection(self, name):
        if self.corrupt:
            raise PersistenceError("malformed JSON")
        return super().load_collection(name)


class TestTransaction:
    """Test the Transaction record"""

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            make_transaction(amount="-1")

    def test_signed_amounts(self):
        assert make_transaction(type=TransactionType.DEPOSIT).signed_amount == Decimal("100")
        assert make_transaction(type=TransactionType.WITHDRAWAL).signed_amount == Decimal("-100")
        assert make_transaction(type=TransactionType.TRANSFER).signed_amount == Decimal("-100")
        assert make_transaction(type=TransactionType.OTHER, amount="0").signed_amount == Decimal("0")

    def test_round_trip(self):
        transaction = make_transaction(type=TransactionType.TRANSFER, target=OTHER)
        data = transaction.to_dict()

        assert data["type"] == "transfer"
        assert data["targetCardNumber"] == OTHER
        assert Transaction.from_dict(data) == transaction

    def test_empty_target_means_none(self):
        data = make_transaction().to_dict()
        assert data["targetCardNumber"] == ""
        assert Transaction.from_dict(data).target_card_number is None

    @pytest.mark.parametrize("code,expected", [
        (0, TransactionType.DEPOSIT),
        (1, TransactionType.WITHDRAWAL),
        (2, TransactionType.BALANCE_INQUIRY),
        (3, TransactionType.TRANSFER),
        (4, TransactionType.OTHER),
    ])
    def test_legacy_type_codes(self, code, expected):
        data = make_transaction().to_dict()
        data["type"] = code
        data["amount"] = 12.5
        transaction = Transaction.from_dict(data)
        assert transaction.type == expected
        assert transaction.amount == Decimal("12.50")


class TestTransactionLedger:
    """Test the append-only ledger"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.ledger = TransactionLedger(self.storage)
        self.ledger.load()

    def test_append_flushes(self):
        result = self.ledger.append(make_transaction())

        assert result.success
        assert result.value == make_transaction()
        assert len(self.storage.load_collection(TRANSACTIONS_COLLECTION)) == 1

    def test_for_card_keeps_insertion_order(self):
        self.ledger.append(make_transaction(minutes=5, amount="1"))
        self.ledger.append(make_transaction(card=OTHER))
        self.ledger.append(make_transaction(minutes=1, amount="2"))

        assert [t.amount for t in self.ledger.for_card(CARD)] == [Decimal("1"), Decimal("2")]

    def test_recent_is_newest_first(self):
        for minutes in (3, 1, 2):
            self.ledger.append(make_transaction(minutes=minutes, amount=str(minutes)))

        recent = self.ledger.recent(CARD, 2)
        assert [t.amount for t in recent] == [Decimal("3"), Decimal("2")]
        assert self.ledger.recent(CARD, 0) == []

    def test_clear_for_card(self):
        self.ledger.append_many([make_transaction(), make_transaction(), make_transaction(card=OTHER)])

        result = self.ledger.clear_for_card(CARD)

        assert result.success
        assert result.value == 2
        assert self.ledger.for_card(CARD) == []
        assert len(self.ledger.all()) == 1
        assert len(self.storage.load_collection(TRANSACTIONS_COLLECTION)) == 1

    def test_failed_flush_keeps_record_in_memory(self):
        ledger = TransactionLedger(ReadOnlyStorage())
        result = ledger.append(make_transaction())

        assert result.error_code == ErrorCode.PERSISTENCE_FAILURE
        assert len(ledger.all()) == 1

    def test_load_skips_malformed_records(self):
        self.storage.save_collection(TRANSACTIONS_COLLECTION, [
            make_transaction().to_dict(),
            {"cardNumber": CARD, "type": "bogus", "timestamp": START.isoformat()},
        ])
        ledger = TransactionLedger(self.storage)

        assert ledger.load().success
        assert len(ledger.all()) == 1

    def test_failed_clear_flush_is_reported(self):
        storage = ReadOnlyStorage()
        ledger = TransactionLedger(storage)
        ledger.append(make_transaction())

        result = ledger.clear_for_card(CARD)

        assert result.error_code == ErrorCode.PERSISTENCE_FAILURE
        assert ledger.for_card(CARD) == []


class TestUnreadableHistory:
    """A history that failed to load is never overwritten"""

    def setup_method(self):
        self.storage = CorruptOnceStorage()
        self.storage.save_collection(TRANSACTIONS_COLLECTION, [
            make_transaction(minutes=minutes).to_dict() for minutes in range(7)
        ])
        self.ledger = TransactionLedger(self.storage)

    def stored(self):
        return self.storage.get_all_data()[TRANSACTIONS_COLLECTION]

    def test_append_after_failed_load_does_not_overwrite(self):
        assert self.ledger.load().error_code == ErrorCode.PERSISTENCE_FAILURE

        result = self.ledger.append(make_transaction(minutes=30))

        assert result.error_code == ErrorCode.PERSISTENCE_FAILURE
        assert len(self.stored()) == 7

    def test_clear_after_failed_load_does_not_overwrite(self):
        self.ledger.load()

        assert self.ledger.clear_for_card(CARD).error_code == ErrorCode.PERSISTENCE_FAILURE
        assert len(self.stored()) == 7

    def test_successful_reload_enables_writes(self):
        self.ledger.load()
        self.storage.corrupt = False

        assert self.ledger.load().success
        assert self.ledger.append(make_transaction(minutes=30)).success
        assert len(self.stored()) == 8
