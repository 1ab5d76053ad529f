"""
Shared builders for the test suite: deterministic clock and salts, a cheap
configuration and a fully wired in-memory ledger.
"""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

from card_ledger.config import LedgerConfig
from card_ledger.credentials import CredentialPolicy
from card_ledger.storage import InMemoryStorage
from card_ledger.system import LedgerSystem

ADMIN_CARD = "9999888877776666"
ADMIN_PIN = "8888"
START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Clock that only moves when told to"""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class CountingSalts:
    """Predictable 16-character salts"""

    def __init__(self):
        self.count = 0

    def __call__(self) -> str:
        self.count += 1
        return f"salt{self.count:012d}"


def make_config(**overrides) -> LedgerConfig:
    values = dict(storage_backend="memory", pin_hash_cost=16, log_level="DEBUG")
    values.update(overrides)
    return LedgerConfig(**values)


def make_policy(clock=None) -> CredentialPolicy:
    return CredentialPolicy(hash_cost=16, clock=clock or FixedClock(), salt_source=CountingSalts())


def make_system(storage=None, clock=None, **overrides) -> LedgerSystem:
    system = LedgerSystem(
        config=make_config(**overrides),
        storage=storage or InMemoryStorage(),
        clock=clock or FixedClock(),
        salt_source=CountingSalts()
    )
    system.load()
    return system


def open_account(system: LedgerSystem, card_number: str, pin: str = "1234",
                 holder_name: str = "Test Holder", balance="5000", withdraw_limit="2000"):
    result = system.admin.create_account(
        ADMIN_CARD, card_number, pin, holder_name, Decimal(balance), Decimal(withdraw_limit)
    )
    assert result.success, result.message
    return result.value
