"""
Account Management Module

Defines the Account record and the AccountStore repository: a durable map
from card number to Account, loaded fully into memory at startup and flushed
to the storage backend after every mutating call.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional
import threading

from .errors import ErrorCode, OperationResult, PersistenceError
from .logging_config import get_logger, log_action
from .money import to_amount
from .storage import StorageInterface, ACCOUNTS_COLLECTION

if TYPE_CHECKING:
    from .config import LedgerConfig
    from .credentials import CredentialPolicy


CARD_NUMBER_LENGTH = 16
PIN_MIN_LENGTH = 4
PIN_MAX_LENGTH = 6

# Demo cardholders created on first start when seed_demo_accounts is set
DEMO_ACCOUNTS = [
    ("1234567890123456", "1234", "Zhang San", Decimal("50000"), Decimal("20000"), False),
    ("2345678901234567", "2345", "Li Si", Decimal("100000"), Decimal("30000"), False),
    ("3456789012345678", "3456", "Wang Wu", Decimal("75000"), Decimal("25000"), True),
]


def is_valid_card_number(card_number: Any) -> bool:
    """16 ASCII digits"""
    return (isinstance(card_number, str) and len(card_number) == CARD_NUMBER_LENGTH
            and card_number.isascii() and card_number.isdigit())


def is_valid_pin(pin: Any) -> bool:
    """4 to 6 ASCII digits"""
    return (isinstance(pin, str) and PIN_MIN_LENGTH <= len(pin) <= PIN_MAX_LENGTH
            and pin.isascii() and pin.isdigit())


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string; naive values are taken as UTC"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class AccountRole(Enum):
    """What an account may do"""
    CUSTOMER = "customer"
    ADMIN = "admin"


@dataclass(frozen=True)
class Account:
    """
    Card account. Immutable: every change produces a new value, so a reader
    holding an Account always sees a consistent snapshot.
    """
    card_number: str
    holder_name: str
    balance: Decimal
    withdraw_limit: Decimal
    pin_hash: str = ""
    salt: str = ""
    is_locked: bool = False  # Administrative lock, cleared only by an admin
    role: AccountRole = AccountRole.CUSTOMER
    failed_login_attempts: int = 0
    last_failed_login_at: Optional[datetime] = None
    temporary_lock_until: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == AccountRole.ADMIN

    def validation_error(self) -> Optional[str]:
        """Describe why this account may not be stored, or None"""
        if not is_valid_card_number(self.card_number):
            return "Card number must be 16 digits"
        if not self.holder_name or not self.holder_name.strip():
            return "Holder name must not be empty"
        if self.balance < 0:
            return "Balance must not be negative"
        if self.withdraw_limit <= 0:
            return "Withdraw limit must be positive"
        if not self.pin_hash or not self.salt:
            return "Account has no PIN set"
        if self.failed_login_attempts < 0:
            return "Failed login attempts must not be negative"
        return None

    def is_valid(self) -> bool:
        return self.validation_error() is None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the persisted JSON shape"""
        return {
            "cardNumber": self.card_number,
            "pinHash": self.pin_hash,
            "salt": self.salt,
            "holderName": self.holder_name,
            "balance": str(self.balance),
            "withdrawLimit": str(self.withdraw_limit),
            "isLocked": self.is_locked,
            "role": self.role.value,
            "failedLoginAttempts": self.failed_login_attempts,
            "lastFailedLoginAt": format_timestamp(self.last_failed_login_at),
            "temporaryLockUntil": format_timestamp(self.temporary_lock_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Account':
        """
        Create an Account from its persisted shape.

        Accepts the legacy isAdmin flag in place of role. A legacy plaintext
        "pin" field is ignored here; AccountStore migrates it.

        Raises:
            KeyError, ValueError: If the record is malformed
        """
        if "role" in data:
            role = AccountRole(data["role"])
        else:
            role = AccountRole.ADMIN if data.get("isAdmin") else AccountRole.CUSTOMER

        return cls(
            card_number=str(data["cardNumber"]),
            holder_name=str(data["holderName"]),
            balance=to_amount(data["balance"]),
            withdraw_limit=to_amount(data["withdrawLimit"]),
            pin_hash=data.get("pinHash") or "",
            salt=data.get("salt") or "",
            is_locked=bool(data.get("isLocked", False)),
            role=role,
            failed_login_attempts=int(data.get("failedLoginAttempts", 0)),
            last_failed_login_at=parse_timestamp(data.get("lastFailedLoginAt")),
            temporary_lock_until=parse_timestamp(data.get("temporaryLockUntil")),
        )


class AccountStore:
    """
    Repository of accounts keyed by card number.

    Mutations are applied in memory first and then flushed. If the flush
    fails the caller gets a PERSISTENCE_FAILURE result, but the in-memory
    state keeps the change for the rest of the process lifetime.

    After a failed load nothing is written back until a load succeeds, so
    an unreadable collection is never replaced by the partial in-memory view.
    """

    def __init__(
        self,
        storage: StorageInterface,
        policy: 'CredentialPolicy',
        config: Optional['LedgerConfig'] = None
    ):
        if config is None:
            from .config import get_config
            config = get_config()
        self.storage = storage
        self.policy = policy
        self.config = config
        self._accounts: Dict[str, Account] = {}
        self._load_failed = False
        self._lock = threading.RLock()
        self.logger = get_logger("card_ledger.accounts")

    # Load / flush boundary

    def load(self) -> OperationResult:
        """
        Load all accounts from storage.

        Migrates legacy plaintext PINs, seeds demo accounts on a fresh store
        if configured, and makes sure the bootstrap administrator exists.
        """
        with self._lock:
            try:
                records = self.storage.load_collection(ACCOUNTS_COLLECTION)
            except PersistenceError as e:
                self.logger.error(f"Cannot load accounts: {e}")
                self._accounts = {}
                self._load_failed = True
                self._ensure_admin_account()
                return OperationResult.fail(ErrorCode.PERSISTENCE_FAILURE, f"Cannot load accounts: {e}")

            self._load_failed = False
            changed = False
            self._accounts = {}
            if records is None:
                if self.config.seed_demo_accounts:
                    self._seed_demo_accounts()
                changed = True
            else:
                for record in records:
                    account, migrated = self._account_from_record(record)
                    if account is None:
                        continue
                    self._accounts[account.card_number] = account
                    changed = changed or migrated

            if self._ensure_admin_account():
                changed = True

            self.logger.info(f"Loaded {len(self._accounts)} accounts")

            if changed:
                return self.flush()
            return OperationResult.ok()

    def flush(self) -> OperationResult:
        """Write the whole collection to storage"""
        with self._lock:
            if self._load_failed:
                self.logger.error("Refusing to save accounts: the stored collection could not be loaded")
                return OperationResult.fail(
                    ErrorCode.PERSISTENCE_FAILURE,
                    "Account data was not saved because it could not be loaded"
                )
            records = [account.to_dict() for account in self._accounts.values()]
            try:
                self.storage.save_collection(ACCOUNTS_COLLECTION, records)
            except PersistenceError as e:
                self.logger.error(f"Cannot save accounts: {e}")
                return OperationResult.fail(ErrorCode.PERSISTENCE_FAILURE, "Unable to save account data")
        return OperationResult.ok()

    # Queries

    def get(self, card_number: str) -> Optional[Account]:
        """Get account by card number"""
        return self._accounts.get(card_number)

    def exists(self, card_number: str) -> bool:
        return card_number in self._accounts

    def all(self) -> List[Account]:
        with self._lock:
            return list(self._accounts.values())

    def count_admins(self) -> int:
        return sum(1 for account in self.all() if account.is_admin)

    # Mutations

    def save(self, account: Account) -> OperationResult:
        """Insert or replace an account, then flush"""
        return self.save_many([account])

    def save_many(self, accounts: List[Account]) -> OperationResult:
        """Insert or replace several accounts with a single flush"""
        for account in accounts:
            error = account.validation_error()
            if error:
                return OperationResult.fail(ErrorCode.INVALID_INPUT, f"Invalid account data: {error}")

        with self._lock:
            for account in accounts:
                self._accounts[account.card_number] = account
            return self.flush()

    def delete(self, card_number: str) -> OperationResult:
        """Remove an account, then flush"""
        with self._lock:
            if card_number not in self._accounts:
                return OperationResult.fail(ErrorCode.NOT_FOUND, "Account does not exist")
            del self._accounts[card_number]
            return self.flush()

    # Helpers

    def _account_from_record(self, record: Dict[str, Any]):
        """Returns (account or None, migrated)"""
        try:
            account = Account.from_dict(record)
        except (KeyError, ValueError, TypeError) as e:
            self.logger.warning(f"Skipping malformed account record: {e}")
            return None, False

        if not account.pin_hash and record.get("pin"):
            account = self.policy.set_pin(account, str(record["pin"]))
            log_action(
                self.logger, "info", "Migrated plaintext PIN to salted hash",
                card_number=account.card_number, action="migrate_pin"
            )
            return account, True
        return account, False

    def _ensure_admin_account(self) -> bool:
        """Create the bootstrap administrator if absent. Returns True if created."""
        card_number = self.config.admin_card_number
        if card_number in self._accounts:
            return False

        self.logger.warning(f"Administrator account missing, creating {card_number}")
        admin = Account(
            card_number=card_number,
            holder_name=self.config.admin_holder_name,
            balance=to_amount(self.config.admin_initial_balance),
            withdraw_limit=to_amount(self.config.admin_withdraw_limit),
            role=AccountRole.ADMIN
        )
        self._accounts[card_number] = self.policy.set_pin(admin, self.config.admin_initial_pin)
        return True

    def _seed_demo_accounts(self) -> None:
        for card_number, pin, name, balance, limit, locked in DEMO_ACCOUNTS:
            account = Account(
                card_number=card_number,
                holder_name=name,
                balance=to_amount(balance),
                withdraw_limit=to_amount(limit),
                is_locked=locked
            )
            self._accounts[card_number] = self.policy.set_pin(account, pin)
        self.logger.info(f"Seeded {len(DEMO_ACCOUNTS)} demo accounts")
