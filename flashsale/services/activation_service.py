# flashsale/services/activation_service.py
"""Time-driven campaign transitions: scheduled -> active -> ended, plus admin cancellation."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from flashsale.clock import Clock, SystemClock
from flashsale.errors import InvalidStateError, NotFoundError
from flashsale.events import (
    FLASH_SALE_ACTIVATED,
    FLASH_SALE_CANCELLED,
    FLASH_SALE_ENDED,
    FlashSaleEventPublisher,
    FlashSaleTransitionEvent,
    get_event_publisher,
)
from flashsale.models import FlashSale, FlashSaleStatus
from flashsale.observability import increment_counter
from flashsale.schemas import ActivationResult
from flashsale.services.reservation_service import FlashSaleReservationService

logger = logging.getLogger(__name__)


class FlashSaleActivationService:
    """Moves campaigns through their lifecycle with compare-and-set status updates.

    Every transition is ``UPDATE ... WHERE status = <expected>`` so two
    scheduler instances (or a scheduler and an admin) racing on the same
    campaign produce exactly one transition; the loser sees zero rows and
    skips it silently.
    """

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        reservation_service: Optional[FlashSaleReservationService] = None,
        publisher: Optional[FlashSaleEventPublisher] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.reservations = reservation_service or FlashSaleReservationService(db_session, clock=self.clock)
        self.publisher = publisher or get_event_publisher()

    def activate_scheduled_flash_sales(self) -> ActivationResult:
        """Activate every scheduled campaign whose start time has been reached."""
        now = self.clock.now()
        result = ActivationResult()
        candidate_ids = [
            row[0]
            for row in self.db.query(FlashSale.flashSaleID)
            .filter(
                FlashSale.status == FlashSaleStatus.SCHEDULED,
                FlashSale._start_time <= now,
            )
            .order_by(FlashSale._start_time)
            .all()
        ]

        for flash_sale_id in candidate_ids:
            try:
                if self._transition(flash_sale_id, FlashSaleStatus.SCHEDULED, FlashSaleStatus.ACTIVE, now):
                    result.transitioned += 1
                    result.flash_sale_ids.append(flash_sale_id)
                    self._publish(FLASH_SALE_ACTIVATED, flash_sale_id, FlashSaleStatus.SCHEDULED,
                                  FlashSaleStatus.ACTIVE, now)
            except Exception as exc:
                self.db.rollback()
                increment_counter("flash_sale_batch_errors_total", labels={"stage": "activate"})
                logger.exception(f"Error activating flash sale {flash_sale_id}")
                result.errors.append({"stage": "activate", "flash_sale_id": flash_sale_id, "error": str(exc)})

        if result.transitioned:
            logger.info(f"Activated {result.transitioned} flash sales", extra={"flash_sale_ids": result.flash_sale_ids})
        return result

    def close_expired_flash_sales(self) -> ActivationResult:
        """End every active campaign whose end time has been reached and release its holds."""
        now = self.clock.now()
        result = ActivationResult()
        candidate_ids = [
            row[0]
            for row in self.db.query(FlashSale.flashSaleID)
            .filter(
                FlashSale.status == FlashSaleStatus.ACTIVE,
                FlashSale._end_time <= now,
            )
            .order_by(FlashSale._end_time)
            .all()
        ]

        for flash_sale_id in candidate_ids:
            try:
                if not self._transition(flash_sale_id, FlashSaleStatus.ACTIVE, FlashSaleStatus.ENDED, now):
                    continue
            except Exception as exc:
                self.db.rollback()
                increment_counter("flash_sale_batch_errors_total", labels={"stage": "close"})
                logger.exception(f"Error closing flash sale {flash_sale_id}")
                result.errors.append({"stage": "close", "flash_sale_id": flash_sale_id, "error": str(exc)})
                continue

            result.transitioned += 1
            result.flash_sale_ids.append(flash_sale_id)
            released = self.reservations.release_held_for_flash_sale(flash_sale_id)
            result.errors.extend(released.errors)
            self._publish(FLASH_SALE_ENDED, flash_sale_id, FlashSaleStatus.ACTIVE,
                          FlashSaleStatus.ENDED, now, released.cleaned)

        # Holds that slipped past an earlier close (failed release, late commit of a reserve)
        stragglers = self.reservations.release_held_for_closed_flash_sales()
        result.errors.extend(stragglers.errors)
        if stragglers.cleaned:
            logger.warning(f"Released {stragglers.cleaned} holds left on closed flash sales")

        if result.transitioned:
            logger.info(f"Closed {result.transitioned} flash sales", extra={"flash_sale_ids": result.flash_sale_ids})
        return result

    def cancel_flash_sale(self, flash_sale_id: int) -> FlashSale:
        """Admin cancellation from scheduled or active. Cancelled is terminal."""
        now = self.clock.now()
        flash_sale = self.db.get(FlashSale, flash_sale_id, populate_existing=True)
        if flash_sale is None:
            raise NotFoundError(f"Flash sale {flash_sale_id} not found")

        current = flash_sale.status
        if not flash_sale.can_transition(FlashSaleStatus.CANCELLED):
            raise InvalidStateError(
                f"Cannot cancel a flash sale that is {current.value}",
                {"flash_sale_id": flash_sale_id, "status": current.value},
            )

        try:
            changed = self._transition(flash_sale_id, current, FlashSaleStatus.CANCELLED, now)
        except Exception:
            self.db.rollback()
            raise
        if not changed:
            # The scheduler moved it between our read and the update
            refreshed = self.db.get(FlashSale, flash_sale_id, populate_existing=True)
            raise InvalidStateError(
                f"Flash sale {flash_sale_id} changed state concurrently, now {refreshed.status.value}",
                {"flash_sale_id": flash_sale_id, "status": refreshed.status.value},
            )

        released = self.reservations.release_held_for_flash_sale(flash_sale_id)
        self._publish(FLASH_SALE_CANCELLED, flash_sale_id, current, FlashSaleStatus.CANCELLED,
                      now, released.cleaned)
        logger.info(f"Cancelled flash sale {flash_sale_id}", extra={"released_reservations": released.cleaned})
        return self.db.get(FlashSale, flash_sale_id, populate_existing=True)

    def _transition(
        self,
        flash_sale_id: int,
        expected: FlashSaleStatus,
        target: FlashSaleStatus,
        now: datetime,
    ) -> bool:
        if target not in FlashSale.allowed_transitions(expected):
            raise InvalidStateError(f"Illegal transition {expected.value} -> {target.value}")

        updated = (
            self.db.query(FlashSale)
            .filter(FlashSale.flashSaleID == flash_sale_id, FlashSale.status == expected)
            .update({FlashSale.status: target, FlashSale.updated_at: now}, synchronize_session=False)
        )
        if not updated:
            self.db.rollback()
            logger.debug(f"Flash sale {flash_sale_id} no longer {expected.value}, skipping")
            return False
        self.db.commit()
        return True

    def _publish(self, name, flash_sale_id, from_status, to_status, now, released: int = 0) -> None:
        self.publisher.publish(
            FlashSaleTransitionEvent(
                name=name,
                flash_sale_id=flash_sale_id,
                from_status=from_status.value,
                to_status=to_status.value,
                occurred_at=now,
                released_reservations=released,
            )
        )
