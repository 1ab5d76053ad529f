"""
Operation Results and Errors Module

Every public ledger operation returns a result that distinguishes success
from a tagged failure carrying a human-readable reason. Exceptions are only
used for storage faults and for states that indicate a programming error.
"""

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class ErrorCode(Enum):
    """Failure categories"""
    NOT_FOUND = "not_found"                    # Card or target missing
    INVALID_INPUT = "invalid_input"            # Format or range violation
    PERMANENTLY_LOCKED = "permanently_locked"  # Locked by an administrator
    TEMPORARILY_LOCKED = "temporarily_locked"  # Too many failed PIN attempts
    INSUFFICIENT_FUNDS = "insufficient_funds"
    LIMIT_EXCEEDED = "limit_exceeded"          # Withdraw limit or per-transaction ceiling
    UNAUTHORIZED = "unauthorized"              # Non-admin attempting privileged op
    PERSISTENCE_FAILURE = "persistence_failure"


class PersistenceError(Exception):
    """Raised by storage backends when a collection cannot be read or written"""


class LedgerStateError(Exception):
    """Raised when ledger state contradicts a check that just passed"""


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a ledger operation"""
    success: bool
    error_code: Optional[ErrorCode] = None
    message: str = ""
    value: Any = None

    @classmethod
    def ok(cls, value: Any = None, message: str = "") -> 'OperationResult':
        return cls(success=True, message=message, value=value)

    @classmethod
    def fail(cls, error_code: ErrorCode, message: str) -> 'OperationResult':
        return cls(success=False, error_code=error_code, message=message)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "error_code": self.error_code.value if self.error_code else None,
            "message": self.message,
        }


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a login attempt"""
    success: bool
    error_code: Optional[ErrorCode] = None
    message: str = ""
    is_admin: bool = False
    holder_name: str = ""
    balance: Decimal = Decimal("0.00")
    withdraw_limit: Decimal = Decimal("0.00")

    @classmethod
    def ok(cls, is_admin: bool, holder_name: str, balance: Decimal,
           withdraw_limit: Decimal) -> 'LoginResult':
        return cls(
            success=True,
            is_admin=is_admin,
            holder_name=holder_name,
            balance=balance,
            withdraw_limit=withdraw_limit
        )

    @classmethod
    def from_failure(cls, result: OperationResult) -> 'LoginResult':
        return cls(success=False, error_code=result.error_code, message=result.message)
