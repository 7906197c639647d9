from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from .events import EventBus, UnitConsumed


logger = logging.getLogger(__name__)


class CreditProjection:
    """
    Local view of the metered analysis credit balance.

    The owning billing service is the source of truth. This projection only moves on `UnitConsumed`
    events and is periodically replaced by `reconcile()`.
    """

    def __init__(self, bus: EventBus, *, balance: Optional[int] = None) -> None:
        self._balance = balance
        self._consumed_since_reconcile = 0
        self._last_reconciled_at: Optional[float] = None
        self._lock = threading.Lock()
        self._unsubscribe = bus.subscribe(UnitConsumed, self._on_unit_consumed)

    @property
    def balance(self) -> Optional[int]:
        with self._lock:
            return self._balance

    @property
    def consumed_since_reconcile(self) -> int:
        with self._lock:
            return self._consumed_since_reconcile

    def _on_unit_consumed(self, event: UnitConsumed) -> None:
        with self._lock:
            self._consumed_since_reconcile += event.units
            if self._balance is not None:
                self._balance = max(0, self._balance - event.units)

    def reconcile(self, authoritative: int) -> None:
        with self._lock:
            if self._balance is not None and self._balance != authoritative:
                logger.info("Credit balance reconciled: local=%s authoritative=%s", self._balance, authoritative)
            self._balance = int(authoritative)
            self._consumed_since_reconcile = 0
            self._last_reconciled_at = time.monotonic()

    def maybe_reconcile(self, fetch_balance: Callable[[], int], *, interval_s: float = 300.0) -> bool:
        """
        Reconcile against `fetch_balance()` if the last reconciliation is older than `interval_s`.
        Returns True when a reconciliation happened.
        """
        with self._lock:
            last = self._last_reconciled_at
        if last is not None and (time.monotonic() - last) < interval_s:
            return False
        self.reconcile(fetch_balance())
        return True

    def close(self) -> None:
        self._unsubscribe()
