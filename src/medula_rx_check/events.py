from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, ClassVar, Optional

from pydantic import BaseModel, Field

from .models import SessionStatus


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(BaseModel):
    """
    Base class for everything published on the `EventBus`.

    `guaranteed` events are delivered at least once: if a handler raises, the delivery is kept and
    retried on `EventBus.redeliver()` (and opportunistically on later publishes). Everything else is
    fire-and-forget.
    """

    guaranteed: ClassVar[bool] = False

    at: datetime = Field(default_factory=_utcnow)


class LoginAttemptStarted(Event):
    attempt: int
    max_attempts: int


class SessionStatusChanged(Event):
    status: SessionStatus
    attempt_count: int = 0
    error: Optional[str] = None


class RecordFetched(Event):
    recete_no: str
    from_cache: bool
    medicine_count: int = 0


class RecordsListed(Event):
    period: str
    count: int


class AnalysisProgress(Event):
    recete_no: str
    barkod: str
    done: int
    total: int
    ok: bool
    error: Optional[str] = None


class AnalysisCompleted(Event):
    guaranteed: ClassVar[bool] = True

    recete_no: str
    computed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    from_cache: list[str] = Field(default_factory=list)


class UnitConsumed(Event):
    """One metered scoring call succeeded; the owner of the credit balance must see this."""

    guaranteed: ClassVar[bool] = True

    recete_no: str
    barkod: str
    units: int = 1


Handler = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._pending: list[tuple[Handler, Event]] = []
        self._lock = threading.RLock()

    def subscribe(self, event_type: type, handler: Handler) -> Callable[[], None]:
        with self._lock:
            self._handlers[event_type].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                try:
                    self._handlers[event_type].remove(handler)
                except ValueError:
                    pass

        return _unsubscribe

    def _handlers_for(self, event: Event) -> list[Handler]:
        with self._lock:
            out: list[Handler] = []
            for cls in type(event).__mro__:
                out.extend(self._handlers.get(cls, ()))
            return out

    def publish(self, event: Event) -> None:
        if self._pending:
            self.redeliver()

        for handler in self._handlers_for(event):
            try:
                handler(event)
            except Exception:
                if event.guaranteed:
                    logger.warning(
                        "Delivery of %s failed; queued for redelivery.", type(event).__name__, exc_info=True
                    )
                    with self._lock:
                        self._pending.append((handler, event))
                else:
                    logger.debug("Event handler failed for %s (dropped).", type(event).__name__, exc_info=True)

    def redeliver(self) -> int:
        """
        Retry queued guaranteed deliveries once. Returns how many are still pending.
        """
        with self._lock:
            pending, self._pending = self._pending, []

        still: list[tuple[Handler, Event]] = []
        for handler, event in pending:
            try:
                handler(event)
            except Exception:
                logger.debug("Redelivery of %s failed again.", type(event).__name__, exc_info=True)
                still.append((handler, event))

        with self._lock:
            self._pending = still + self._pending
            return len(self._pending)

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
