"""Background driver for campaign activation, closing and hold expiry."""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from flashsale.clock import Clock, SystemClock
from flashsale.config import Config
from flashsale.database import SessionLocal
from flashsale.events import FlashSaleEventPublisher, get_event_publisher
from flashsale.observability import increment_counter, record_event, set_gauge, timed
from flashsale.schemas import SchedulerTickResult
from flashsale.services.activation_service import FlashSaleActivationService
from flashsale.services.reservation_service import FlashSaleReservationService

logger = logging.getLogger(__name__)


class FlashSaleScheduler:
    """Runs ``activate -> close -> cleanup`` once per interval on a daemon thread.

    ``run_once`` can also be called on demand (ops endpoint, tests); a lock
    keeps an on-demand tick and the background tick from overlapping.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        clock: Optional[Clock] = None,
        publisher: Optional[FlashSaleEventPublisher] = None,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        self.publisher = publisher or get_event_publisher()
        self.interval_seconds = interval_seconds or Config.FLASH_SALE_SCHEDULER_INTERVAL_SECONDS
        self.last_tick_at: Optional[datetime] = None
        self.last_result: Optional[SchedulerTickResult] = None

        self._tick_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> SchedulerTickResult:
        with self._tick_lock:
            started_at = self.clock.now()
            session = self.session_factory()
            try:
                with timed("flash_sale_scheduler_tick_ms"):
                    reservations = FlashSaleReservationService(session, clock=self.clock)
                    activation = FlashSaleActivationService(
                        session,
                        clock=self.clock,
                        reservation_service=reservations,
                        publisher=self.publisher,
                    )
                    activated = activation.activate_scheduled_flash_sales()
                    closed = activation.close_expired_flash_sales()
                    cleaned = reservations.cleanup_expired_reservations()
            finally:
                session.close()

            result = SchedulerTickResult(
                activated=activated.transitioned,
                closed=closed.transitioned,
                cleaned=cleaned.cleaned,
                timestamp=started_at,
                errors=activated.errors + closed.errors + cleaned.errors,
            )
            self.last_tick_at = started_at
            self.last_result = result

        outcome = "partial" if result.errors else "ok"
        increment_counter("flash_sale_scheduler_ticks_total", labels={"outcome": outcome})
        set_gauge("flash_sale_scheduler_last_tick_errors", len(result.errors))
        if result.activated or result.closed or result.cleaned or result.errors:
            record_event("flash_sale.scheduler_tick", result.to_dict())
            logger.info(
                "Flash sale tick: %d activated, %d closed, %d holds expired",
                result.activated,
                result.closed,
                result.cleaned,
                extra={"errors": len(result.errors)},
            )
        return result

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="flash-sale-scheduler", daemon=True)
        self._thread.start()
        logger.info("Flash sale scheduler started (every %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Flash sale scheduler stopped")

    def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                increment_counter("flash_sale_scheduler_ticks_total", labels={"outcome": "error"})
                logger.exception("Flash sale scheduler tick failed")
            if self._stop_event.wait(self.interval_seconds):
                break
