"""
Per-claim exclusive locks.

Every mutation of a claim runs under the lock for its key (the claim id,
or "serial:<issuer>:<serial>" while minting). Waiting is bounded: after
the timeout the caller gets ClaimBusy, and a set cancel event aborts the
wait with OperationCancelled. Neither path has side effects.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, Optional

from .config import LOCK_TIMEOUT_SECONDS
from .errors import ClaimBusy, OperationCancelled

logger = logging.getLogger(__name__)

# Granularity of cancellation checks while waiting.
_POLL_SECONDS = 0.05


class _Slot:
    __slots__ = ("lock", "waiters")

    def __init__(self):
        self.lock = threading.Lock()
        self.waiters = 0


class ClaimLockManager:
    """Keyed lock table. Entries are dropped once no thread holds or waits."""

    def __init__(self, timeout_seconds: float = LOCK_TIMEOUT_SECONDS):
        self._timeout = timeout_seconds
        self._slots: Dict[str, _Slot] = {}
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> _Slot:
        with self._guard:
            slot = self._slots.get(key)
            if slot is None:
                slot = self._slots[key] = _Slot()
            slot.waiters += 1
            return slot

    def _release(self, key: str, slot: _Slot) -> None:
        with self._guard:
            slot.waiters -= 1
            if slot.waiters == 0:
                self._slots.pop(key, None)

    @contextmanager
    def acquire(
        self,
        key: str,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None
    ) -> Iterator[None]:
        timeout = self._timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        slot = self._checkout(key)
        acquired = False
        try:
            while True:
                if cancel is not None and cancel.is_set():
                    raise OperationCancelled(f"Operation on {key} cancelled", {"key": key})
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning("Lock wait on %s exceeded %.2fs", key, timeout)
                    raise ClaimBusy(f"{key} is busy, retry later", {"key": key})
                wait = min(remaining, _POLL_SECONDS) if cancel is not None else remaining
                if slot.lock.acquire(timeout=wait):
                    acquired = True
                    break
            yield
        finally:
            if acquired:
                slot.lock.release()
            self._release(key, slot)

    def is_locked(self, key: str) -> bool:
        with self._guard:
            slot = self._slots.get(key)
            return slot is not None and slot.lock.locked()
