"""
Credential Policy Module

Salts and hashes PINs, verifies them, and runs the failed-login lockout
state machine:

    ACTIVE --(max_failed_attempts consecutive failures)--> TEMPORARILY_LOCKED
    TEMPORARILY_LOCKED --(lock window elapsed)--> ACTIVE

The administrative lock (Account.is_locked) is orthogonal and is never set
or cleared here. All methods return new Account values; persisting them is
the caller's job.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional
import hashlib
import hmac
import secrets
import string

from .accounts import Account

SALT_ALPHABET = string.ascii_letters + string.digits

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CredentialPolicy:
    """PIN hashing and lockout rules"""

    def __init__(
        self,
        max_failed_attempts: int = 3,
        lock_duration: timedelta = timedelta(minutes=15),
        hash_cost: int = 16384,
        salt_length: int = 16,
        clock: Optional[Clock] = None,
        salt_source: Optional[Callable[[], str]] = None
    ):
        if salt_length < 16:
            raise ValueError("Salt length must be at least 16 characters")
        self.max_failed_attempts = max_failed_attempts
        self.lock_duration = lock_duration
        self.hash_cost = hash_cost
        self.salt_length = salt_length
        self.clock = clock or utc_now
        self._salt_source = salt_source

    @classmethod
    def from_config(cls, config, clock: Optional[Clock] = None,
                    salt_source: Optional[Callable[[], str]] = None) -> 'CredentialPolicy':
        return cls(
            max_failed_attempts=config.max_failed_attempts,
            lock_duration=timedelta(minutes=config.temporary_lock_minutes),
            hash_cost=config.pin_hash_cost,
            salt_length=config.salt_length,
            clock=clock,
            salt_source=salt_source
        )

    # Hashing

    def generate_salt(self) -> str:
        """Generate a random alphanumeric salt from a CSPRNG"""
        if self._salt_source:
            return self._salt_source()
        return ''.join(secrets.choice(SALT_ALPHABET) for _ in range(self.salt_length))

    def hash_pin(self, pin: str, salt: str) -> str:
        """Hash PIN with salt using scrypt"""
        return hashlib.scrypt(
            pin.encode(),
            salt=salt.encode(),
            n=self.hash_cost, r=8, p=1
        ).hex()

    def verify(self, pin: str, account: Account) -> bool:
        """Verify a PIN against the account's stored hash"""
        if not account.pin_hash or not account.salt:
            return False
        return hmac.compare_digest(self.hash_pin(pin, account.salt), account.pin_hash)

    def set_pin(self, account: Account, pin: str) -> Account:
        """Return the account with a fresh salt and the hash of pin"""
        salt = self.generate_salt()
        return replace(account, salt=salt, pin_hash=self.hash_pin(pin, salt))

    # Lockout state machine

    def is_temporarily_locked(self, account: Account) -> bool:
        """Check if the account is inside a temporary lock window"""
        return (account.temporary_lock_until is not None and
                self.clock() < account.temporary_lock_until)

    def remaining_attempts(self, account: Account) -> int:
        return max(0, self.max_failed_attempts - account.failed_login_attempts)

    def minutes_until_unlock(self, account: Account) -> int:
        """Whole minutes, rounded up, until a temporary lock expires"""
        if not self.is_temporarily_locked(account):
            return 0
        seconds = (account.temporary_lock_until - self.clock()).total_seconds()
        return max(1, int(-(-seconds // 60)))

    def record_failed_login(self, account: Account) -> Account:
        """
        Count a failed PIN attempt.

        A failure after an expired lock window starts a fresh count. Reaching
        the threshold opens a new lock window.
        """
        now = self.clock()
        attempts = account.failed_login_attempts
        if account.temporary_lock_until is not None and now >= account.temporary_lock_until:
            attempts = 0
        attempts += 1

        lock_until = None
        if attempts >= self.max_failed_attempts:
            lock_until = now + self.lock_duration

        return replace(
            account,
            failed_login_attempts=attempts,
            last_failed_login_at=now,
            temporary_lock_until=lock_until
        )

    def reset_failures(self, account: Account) -> Account:
        """Clear the failure counter and any temporary lock"""
        return replace(account, failed_login_attempts=0, temporary_lock_until=None)
