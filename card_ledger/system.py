"""
Ledger System Module

Wires storage, repositories, policy, validator, locks and event dispatcher
into the cardholder, administrator and analytics services.
"""

from typing import Callable, Optional

from .accounts import AccountStore
from .admin import AdminService
from .analytics import AnalyticsEngine
from .concurrency import AccountLocks
from .config import LedgerConfig, get_config
from .credentials import Clock, CredentialPolicy
from .errors import OperationResult
from .events import EventDispatcher
from .logging_config import get_logger, setup_logging_from_config
from .service import LedgerService
from .storage import StorageInterface, create_storage
from .transactions import TransactionLedger
from .validation import AccountValidator


class LedgerSystem:
    """Card ledger with all components initialized"""

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None,
        salt_source: Optional[Callable[[], str]] = None
    ):
        self.config = config or get_config()
        if self.config.configure_logging:
            setup_logging_from_config(self.config)
        self.storage = storage or create_storage(self.config)
        self.logger = get_logger("card_ledger.system")
        self.load_result: Optional[OperationResult] = None

        # Core components
        self.policy = CredentialPolicy.from_config(self.config, clock=clock, salt_source=salt_source)
        self.clock = self.policy.clock
        self.dispatcher = EventDispatcher()
        self.locks = AccountLocks()
        self.accounts = AccountStore(self.storage, self.policy, self.config)
        self.transactions = TransactionLedger(self.storage)
        self.validator = AccountValidator(self.accounts, self.policy, self.config)

        # Services share the locks so cardholder and admin operations serialize
        self.service = LedgerService(
            self.accounts, self.transactions, self.policy, self.validator,
            self.locks, self.dispatcher, self.clock
        )
        self.admin = AdminService(
            self.accounts, self.transactions, self.policy, self.validator,
            self.locks, self.dispatcher, self.clock
        )
        self.analytics = AnalyticsEngine(self.accounts, self.transactions, self.config, self.clock)

    def load(self) -> OperationResult:
        """
        Load accounts and transactions; the first failure is returned.

        The result is also kept on load_result. A collection that failed to
        load is not written back until a later load succeeds.
        """
        accounts = self.accounts.load()
        transactions = self.transactions.load()
        failure = next((r for r in (accounts, transactions) if not r.success), None)
        if failure is not None:
            self.logger.error(f"Card ledger loaded with errors: {failure.message}")
            self.load_result = failure
        else:
            self.logger.info("Card ledger ready")
            self.load_result = OperationResult.ok()
        return self.load_result

    def close(self) -> None:
        self.storage.close()


def create_ledger_system(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    clock: Optional[Clock] = None,
    salt_source: Optional[Callable[[], str]] = None
) -> LedgerSystem:
    """
    Build a LedgerSystem and load its state from storage.

    Check system.load_result before serving requests; a failed load is
    logged at ERROR and leaves the affected collections read-only.
    """
    system = LedgerSystem(config, storage, clock, salt_source)
    system.load()
    return system
