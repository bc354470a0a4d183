"""
Flash sale transition events.

Implements the Publish-Subscribe pattern for campaign state changes. The
activation service and the admin cancel path publish after their transition
is committed; subscribers (cache invalidation, storefront refresh, ...) run on
a small worker pool so a slow or failing subscriber never holds up, or fails,
the transition itself.
"""
from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from flashsale.config import Config
from flashsale.observability import increment_counter, record_event

FLASH_SALE_ACTIVATED = "flash_sale.activated"
FLASH_SALE_ENDED = "flash_sale.ended"
FLASH_SALE_CANCELLED = "flash_sale.cancelled"


@dataclass(frozen=True)
class FlashSaleTransitionEvent:
    """A committed campaign status change."""
    name: str
    flash_sale_id: int
    from_status: str
    to_status: str
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    released_reservations: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "flash_sale_id": self.flash_sale_id,
            "from_status": self.from_status,
            "to_status": self.to_status,
            "occurred_at": self.occurred_at.isoformat(),
            "released_reservations": self.released_reservations,
        }


Subscriber = Callable[[FlashSaleTransitionEvent], None]


class FlashSaleEventPublisher:
    """Fans transition events out to subscribers without blocking the publisher."""

    def __init__(self, max_workers: Optional[int] = None) -> None:
        self._subscribers: List[Subscriber] = []
        self._pending: List[Future] = []
        self._lock = Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers or Config.FLASH_SALE_EVENT_WORKERS,
            thread_name_prefix="flash-sale-events",
        )
        self.logger = logging.getLogger(__name__)

    def subscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    def publish(self, event: FlashSaleTransitionEvent) -> None:
        record_event(event.name, event.to_dict())
        increment_counter(
            "flash_sale_transitions_total",
            labels={"from": event.from_status, "to": event.to_status},
        )

        with self._lock:
            subscribers = list(self._subscribers)
            self._pending = [future for future in self._pending if not future.done()]
            for subscriber in subscribers:
                try:
                    self._pending.append(self._executor.submit(self._deliver, subscriber, event))
                except RuntimeError:
                    # Executor already shut down during process teardown
                    self.logger.warning("Dropped %s event for flash sale %s", event.name, event.flash_sale_id)

    def _deliver(self, subscriber: Subscriber, event: FlashSaleTransitionEvent) -> None:
        try:
            subscriber(event)
        except Exception:
            increment_counter("flash_sale_event_delivery_failures_total", labels={"event": event.name})
            self.logger.exception(
                "Subscriber %r failed for %s (flash sale %s)",
                subscriber,
                event.name,
                event.flash_sale_id,
            )

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight deliveries. Used by tests and graceful shutdown."""
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)


_default_publisher: Optional[FlashSaleEventPublisher] = None
_default_lock = Lock()


def get_event_publisher() -> FlashSaleEventPublisher:
    """Process-wide publisher shared by the API and the scheduler."""
    global _default_publisher
    if _default_publisher is None:
        with _default_lock:
            if _default_publisher is None:
                _default_publisher = FlashSaleEventPublisher()
    return _default_publisher
