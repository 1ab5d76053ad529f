"""
Per-Account Locking Module

Serializes mutating operations per card number. An operation holds the lock
of every card it touches from validation through the ledger append, so two
concurrent operations on one card can never both pass validation against a
stale balance. Locks are always taken in sorted card-number order, which
keeps two transfers in opposite directions from deadlocking.
"""

from contextlib import ExitStack, contextmanager
from typing import Dict, Iterator
import threading


class AccountLocks:
    """Registry of reentrant locks keyed by card number"""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, card_number: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(card_number)
            if lock is None:
                lock = threading.RLock()
                self._locks[card_number] = lock
            return lock

    @contextmanager
    def hold(self, *card_numbers: str) -> Iterator[None]:
        """Acquire the locks of all given cards in a fixed global order"""
        ordered = sorted({card for card in card_numbers if card})
        with ExitStack() as stack:
            for card_number in ordered:
                stack.enter_context(self._lock_for(card_number))
            yield

