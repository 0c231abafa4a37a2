"""
Per-account exclusive locks for the vouch transaction engine
"""
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Dict, Iterable, List

from vouch_service.errors import LockTimeout

logger = logging.getLogger(__name__)

class FairLock:
    """Mutex that hands ownership to waiters in arrival order.

    A waiter that times out removes itself from the queue, so an abandoned
    slot never blocks the next caller.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locked = False
        self._waiters: deque = deque()

    def acquire(self, timeout: float) -> bool:
        with self._guard:
            if not self._locked and not self._waiters:
                self._locked = True
                return True
            granted = threading.Event()
            self._waiters.append(granted)

        granted.wait(max(timeout, 0))

        with self._guard:
            if granted.is_set():
                return True
            self._waiters.remove(granted)
            return False

    def release(self) -> None:
        with self._guard:
            if not self._locked:
                raise RuntimeError("release of unlocked FairLock")
            if self._waiters:
                # ownership passes straight to the next waiter; _locked stays True
                self._waiters.popleft().set()
            else:
                self._locked = False

    @property
    def locked(self) -> bool:
        return self._locked

class AccountLockManager:
    """Hands out one FairLock per account id.

    An entry lives only while some caller holds or waits on it, so ids that
    never turn out to exist do not accumulate.
    """

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, FairLock] = {}
        self._users: Dict[str, int] = {}
        self._registry_guard = threading.Lock()

    def _checkout(self, account_id: str) -> FairLock:
        with self._registry_guard:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = self._locks[account_id] = FairLock()
            self._users[account_id] = self._users.get(account_id, 0) + 1
            return lock

    def _checkin(self, account_id: str) -> None:
        with self._registry_guard:
            remaining = self._users[account_id] - 1
            if remaining:
                self._users[account_id] = remaining
            else:
                del self._users[account_id]
                del self._locks[account_id]

    @property
    def size(self) -> int:
        """Number of account ids currently held or waited on"""
        with self._registry_guard:
            return len(self._locks)

    @contextmanager
    def hold(self, account_ids: Iterable[str], timeout: float = None):
        """Acquire every lock in sorted id order or none of them.

        Raises LockTimeout if the whole set is not held before the deadline.
        """
        timeout = self.timeout_seconds if timeout is None else timeout
        ordered = sorted(set(account_ids))
        deadline = time.monotonic() + timeout
        locks = [self._checkout(account_id) for account_id in ordered]
        acquired: List[FairLock] = []
        try:
            for account_id, lock in zip(ordered, locks):
                if not lock.acquire(deadline - time.monotonic()):
                    logger.warning(f"Lock timeout on {account_id} after {timeout:.2f}s", extra={
                        "account_ids": ordered,
                    })
                    raise LockTimeout(ordered, timeout)
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for account_id in ordered:
                self._checkin(account_id)
