"""
Flash sale stock reservations.

Every stock movement is one guarded UPDATE against a single row: the guard
states the precondition (enough available stock, holder still under the
limit, reservation still held) and a zero row count means the precondition
no longer holds. There is no read-modify-write across round trips, so any
number of concurrent checkouts and the cleanup sweep can race on the same
item without overselling or resolving a hold twice.

Lock order inside a transaction is always reservation -> holder usage ->
item, which keeps concurrent reserve/release/commit calls deadlock free on
row-locking databases.
"""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import List, Optional, Union

from sqlalchemy import insert, literal, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flashsale.clock import Clock, SystemClock
from flashsale.config import Config
from flashsale.errors import (
    InsufficientStockError,
    InvalidStateError,
    LimitExceededError,
    NotFoundError,
    ValidationError,
)
from flashsale.models import (
    FlashSale,
    FlashSaleHolderUsage,
    FlashSaleItem,
    FlashSaleReservation,
    FlashSaleStatus,
    MAX_QUANTITY,
    ReservationStatus,
)
from flashsale.observability import increment_counter
from flashsale.schemas import CleanupResult, ReservationValidation

TTL = Union[int, float, timedelta, None]


class FlashSaleReservationService:
    """Holds, commits, releases and expires temporary claims on flash sale stock."""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        config: type[Config] = Config,
    ) -> None:
        self.db = db_session
        self.clock = clock or SystemClock()
        self.config = config
        self.logger = logging.getLogger(__name__)

    # ------------------------------------------------------------------
    # Checkout flows
    # ------------------------------------------------------------------
    def reserve(
        self,
        flash_sale_item_id: int,
        holder_id: str,
        quantity: int,
        ttl: TTL = None,
    ) -> FlashSaleReservation:
        """Hold ``quantity`` units of an item for ``holder_id`` until ``now + ttl``.

        Raises NotFoundError, InvalidStateError (campaign not open),
        LimitExceededError, InsufficientStockError or ValidationError. On any
        failure nothing is mutated.
        """
        quantity = self._validate_quantity(quantity)
        ttl_delta = self._resolve_ttl(ttl)
        holder_id = self._validate_holder(holder_id)
        now = self.clock.now()

        item = self.db.get(FlashSaleItem, flash_sale_item_id)
        if item is None:
            raise NotFoundError(f"Flash sale item {flash_sale_item_id} not found")

        item_id = item.flashSaleItemID
        flash_sale_id = item.flashSaleID
        sale_price = item.sale_price
        flash_sale = item.flash_sale
        if not flash_sale.is_open(now):
            increment_counter("flash_sale_reservations_total", labels={"outcome": "invalid_state"})
            raise InvalidStateError(
                "Flash sale is not active",
                {"flash_sale_id": flash_sale_id, "status": flash_sale.status.value},
            )

        try:
            self._ensure_usage_row(item_id, holder_id)
            limit_subquery = (
                select(FlashSaleItem.per_user_limit)
                .where(FlashSaleItem.flashSaleItemID == item_id)
                .scalar_subquery()
            )
            within_limit = (
                self.db.query(FlashSaleHolderUsage)
                .filter(
                    FlashSaleHolderUsage.flashSaleItemID == item_id,
                    FlashSaleHolderUsage.holder_id == holder_id,
                    FlashSaleHolderUsage.quantity + quantity <= limit_subquery,
                )
                .update(
                    {FlashSaleHolderUsage.quantity: FlashSaleHolderUsage.quantity + quantity},
                    synchronize_session=False,
                )
            )
            if not within_limit:
                raise LimitExceededError(
                    "Purchase limit per customer exceeded for this item",
                    {"flash_sale_item_id": item_id, "holder_id": holder_id, "requested": quantity},
                )

            campaign_open = (
                select(FlashSale.flashSaleID)
                .where(
                    FlashSale.flashSaleID == flash_sale_id,
                    FlashSale.status == FlashSaleStatus.ACTIVE,
                    FlashSale._end_time > now,
                )
                .exists()
            )
            stock_taken = (
                self.db.query(FlashSaleItem)
                .filter(
                    FlashSaleItem.flashSaleItemID == item_id,
                    FlashSaleItem.total_quantity
                    - FlashSaleItem.reserved_quantity
                    - FlashSaleItem.sold_quantity
                    >= quantity,
                    campaign_open,
                )
                .update(
                    {FlashSaleItem.reserved_quantity: FlashSaleItem.reserved_quantity + quantity},
                    synchronize_session=False,
                )
            )
            if not stock_taken:
                raise self._explain_stock_failure(item_id, flash_sale_id, quantity, now)

            reservation = FlashSaleReservation(
                flashSaleItemID=item_id,
                flashSaleID=flash_sale_id,
                holder_id=holder_id,
                quantity=quantity,
                sale_price=sale_price,
                status=ReservationStatus.HELD,
            )
            reservation.created_at = now
            reservation.expires_at = now + ttl_delta
            self.db.add(reservation)
            self.db.commit()
        except LimitExceededError:
            self.db.rollback()
            increment_counter("flash_sale_reservations_total", labels={"outcome": "limit_exceeded"})
            raise
        except InsufficientStockError:
            self.db.rollback()
            increment_counter("flash_sale_reservations_total", labels={"outcome": "insufficient_stock"})
            raise
        except InvalidStateError:
            self.db.rollback()
            increment_counter("flash_sale_reservations_total", labels={"outcome": "invalid_state"})
            raise
        except Exception:
            self.db.rollback()
            self.logger.exception("Error reserving flash sale item %s for %s", item_id, holder_id)
            raise

        increment_counter("flash_sale_reservations_total", labels={"outcome": "held"})
        self.logger.info(
            "Reserved %d of flash sale item %s",
            quantity,
            item_id,
            extra={
                "reservation_id": reservation.reservationID,
                "holder": holder_id,
                "expires_at": reservation.expires_at.isoformat(),
            },
        )
        return reservation

    def commit(self, reservation_id: int, order_id: Optional[str] = None) -> FlashSaleReservation:
        """Turn a held reservation into a sale once the owning order is confirmed."""
        now = self.clock.now()
        reservation = self.get_reservation(reservation_id)
        if reservation.status != ReservationStatus.HELD:
            raise InvalidStateError(
                f"Reservation {reservation_id} is already {reservation.status.value}",
                {"reservation_id": reservation_id, "status": reservation.status.value},
            )
        if reservation.is_expired(now):
            raise InvalidStateError(
                f"Reservation {reservation_id} has expired",
                {"reservation_id": reservation_id, "expires_at": reservation.expires_at.isoformat()},
            )

        quantity = reservation.quantity
        item_id = reservation.flashSaleItemID
        try:
            flipped = self._flip_held(reservation_id, ReservationStatus.COMMITTED, now, order_id=order_id)
            if not flipped:
                raise InvalidStateError(
                    f"Reservation {reservation_id} was resolved concurrently",
                    {"reservation_id": reservation_id},
                )

            moved = (
                self.db.query(FlashSaleItem)
                .filter(
                    FlashSaleItem.flashSaleItemID == item_id,
                    FlashSaleItem.reserved_quantity >= quantity,
                )
                .update(
                    {
                        FlashSaleItem.reserved_quantity: FlashSaleItem.reserved_quantity - quantity,
                        FlashSaleItem.sold_quantity: FlashSaleItem.sold_quantity + quantity,
                    },
                    synchronize_session=False,
                )
            )
            if not moved:
                raise InvalidStateError(
                    "Reserved stock does not cover this reservation",
                    {"reservation_id": reservation_id, "flash_sale_item_id": item_id},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        increment_counter("flash_sale_reservations_total", labels={"outcome": "committed"})
        self.logger.info(
            "Committed reservation %s",
            reservation_id,
            extra={"order_id": order_id, "quantity": quantity, "flash_sale_item_id": item_id},
        )
        return self.get_reservation(reservation_id)

    def release(self, reservation_id: int) -> FlashSaleReservation:
        """Give held stock back. Releasing an already resolved reservation is a no-op."""
        now = self.clock.now()
        reservation = self.get_reservation(reservation_id)
        if reservation.is_terminal:
            self.logger.debug(
                "Release of reservation %s ignored, already %s", reservation_id, reservation.status.value
            )
            return reservation

        try:
            released = self._resolve_hold(reservation, ReservationStatus.RELEASED, now)
            if released:
                self.db.commit()
            else:
                self.db.rollback()
        except Exception:
            self.db.rollback()
            raise

        if released:
            increment_counter("flash_sale_reservations_total", labels={"outcome": "released"})
            self.logger.info("Released reservation %s", reservation_id)
        return self.get_reservation(reservation_id)

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------
    def cleanup_expired_reservations(self) -> CleanupResult:
        """Expire every held reservation whose ``expires_at`` is in the past."""
        now = self.clock.now()
        reservation_ids = [
            row[0]
            for row in self.db.query(FlashSaleReservation.reservationID)
            .filter(
                FlashSaleReservation.status == ReservationStatus.HELD,
                FlashSaleReservation._expires_at < now,
            )
            .order_by(FlashSaleReservation._expires_at)
            .all()
        ]
        result = self._resolve_batch(reservation_ids, ReservationStatus.EXPIRED, stage="cleanup")
        if result.cleaned:
            self.logger.info("Expired %d flash sale reservations", result.cleaned)
        return result

    def release_held_for_flash_sale(self, flash_sale_id: int) -> CleanupResult:
        """Release every outstanding hold of a campaign that has ended or been cancelled."""
        reservation_ids = [
            row[0]
            for row in self.db.query(FlashSaleReservation.reservationID)
            .filter(
                FlashSaleReservation.flashSaleID == flash_sale_id,
                FlashSaleReservation.status == ReservationStatus.HELD,
            )
            .all()
        ]
        result = self._resolve_batch(reservation_ids, ReservationStatus.RELEASED, stage="campaign_release")
        if result.cleaned:
            self.logger.info(
                "Released %d held reservations of flash sale %s", result.cleaned, flash_sale_id
            )
        return result

    def release_held_for_closed_flash_sales(self) -> CleanupResult:
        """Release holds left behind on campaigns that are already ended or cancelled."""
        reservation_ids = [
            row[0]
            for row in self.db.query(FlashSaleReservation.reservationID)
            .join(FlashSale, FlashSale.flashSaleID == FlashSaleReservation.flashSaleID)
            .filter(
                FlashSaleReservation.status == ReservationStatus.HELD,
                FlashSale.status.in_([FlashSaleStatus.ENDED, FlashSaleStatus.CANCELLED]),
            )
            .all()
        ]
        return self._resolve_batch(reservation_ids, ReservationStatus.RELEASED, stage="campaign_release")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_reservation(self, reservation_id: int) -> FlashSaleReservation:
        reservation = self.db.get(FlashSaleReservation, reservation_id, populate_existing=True)
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        return reservation

    def get_holder_reservations(
        self,
        holder_id: str,
        flash_sale_id: Optional[int] = None,
        include_committed: bool = False,
    ) -> List[FlashSaleReservation]:
        statuses = [ReservationStatus.HELD]
        if include_committed:
            statuses.append(ReservationStatus.COMMITTED)
        query = self.db.query(FlashSaleReservation).filter(
            FlashSaleReservation.holder_id == holder_id,
            FlashSaleReservation.status.in_(statuses),
        )
        if flash_sale_id is not None:
            query = query.filter(FlashSaleReservation.flashSaleID == flash_sale_id)
        return query.order_by(FlashSaleReservation._created_at.desc()).all()

    def validate_reservation(self, reservation_id: int) -> ReservationValidation:
        """Re-check a hold right before payment is taken."""
        now = self.clock.now()
        reservation = self.db.get(FlashSaleReservation, reservation_id, populate_existing=True)
        if reservation is None:
            return ReservationValidation(valid=False, reason="Reservation not found")
        if reservation.status != ReservationStatus.HELD:
            return ReservationValidation(
                valid=False,
                reason=f"Reservation is already {reservation.status.value}",
                reservation_id=reservation_id,
            )
        if reservation.is_expired(now):
            return ReservationValidation(
                valid=False, reason="Reservation has expired", reservation_id=reservation_id
            )

        item = reservation.item
        if not item.flash_sale.is_open(now):
            return ReservationValidation(
                valid=False, reason="Flash sale is no longer active", reservation_id=reservation_id
            )
        return ReservationValidation(
            valid=True,
            reservation_id=reservation_id,
            sale_price=float(reservation.sale_price),
            available_quantity=item.available_quantity,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _resolve_batch(
        self,
        reservation_ids: List[int],
        target: ReservationStatus,
        stage: str,
    ) -> CleanupResult:
        result = CleanupResult()
        for reservation_id in reservation_ids:
            try:
                now = self.clock.now()
                reservation = self.db.get(FlashSaleReservation, reservation_id, populate_existing=True)
                if reservation is None or reservation.status != ReservationStatus.HELD:
                    continue
                if self._resolve_hold(reservation, target, now):
                    self.db.commit()
                    result.cleaned += 1
                    result.reservation_ids.append(reservation_id)
                    increment_counter("flash_sale_reservations_total", labels={"outcome": target.value})
                else:
                    self.db.rollback()
            except Exception as exc:
                self.db.rollback()
                increment_counter("flash_sale_batch_errors_total", labels={"stage": stage})
                self.logger.exception("Error resolving reservation %s as %s", reservation_id, target.value)
                result.errors.append(
                    {"stage": stage, "reservation_id": reservation_id, "error": str(exc)}
                )
        return result

    def _resolve_hold(
        self,
        reservation: FlashSaleReservation,
        target: ReservationStatus,
        now,
    ) -> bool:
        """Flip held -> target and hand the quantity back. False if someone else resolved it first."""
        reservation_id = reservation.reservationID
        quantity = reservation.quantity
        item_id = reservation.flashSaleItemID
        holder_id = reservation.holder_id

        if not self._flip_held(reservation_id, target, now):
            self.logger.debug("Reservation %s already resolved elsewhere", reservation_id)
            return False

        (
            self.db.query(FlashSaleHolderUsage)
            .filter(
                FlashSaleHolderUsage.flashSaleItemID == item_id,
                FlashSaleHolderUsage.holder_id == holder_id,
                FlashSaleHolderUsage.quantity >= quantity,
            )
            .update(
                {FlashSaleHolderUsage.quantity: FlashSaleHolderUsage.quantity - quantity},
                synchronize_session=False,
            )
        )

        returned = (
            self.db.query(FlashSaleItem)
            .filter(
                FlashSaleItem.flashSaleItemID == item_id,
                FlashSaleItem.reserved_quantity >= quantity,
            )
            .update(
                {FlashSaleItem.reserved_quantity: FlashSaleItem.reserved_quantity - quantity},
                synchronize_session=False,
            )
        )
        if not returned:
            raise InvalidStateError(
                "Reserved stock does not cover this reservation",
                {"reservation_id": reservation_id, "flash_sale_item_id": item_id},
            )
        return True

    def _flip_held(
        self,
        reservation_id: int,
        target: ReservationStatus,
        now,
        order_id: Optional[str] = None,
    ) -> bool:
        values = {
            FlashSaleReservation.status: target,
            FlashSaleReservation._resolved_at: now,
        }
        if order_id is not None:
            values[FlashSaleReservation.order_id] = order_id
        flipped = (
            self.db.query(FlashSaleReservation)
            .filter(
                FlashSaleReservation.reservationID == reservation_id,
                FlashSaleReservation.status == ReservationStatus.HELD,
            )
            .update(values, synchronize_session=False)
        )
        return bool(flipped)

    def _ensure_usage_row(self, item_id: int, holder_id: str) -> None:
        """Insert the holder's zero usage row inside the current transaction unless it exists."""
        already_there = (
            select(FlashSaleHolderUsage.usageID)
            .where(
                FlashSaleHolderUsage.flashSaleItemID == item_id,
                FlashSaleHolderUsage.holder_id == holder_id,
            )
            .correlate(None)
            .exists()
        )
        statement = insert(FlashSaleHolderUsage.__table__).from_select(
            ["flashSaleItemID", "holder_id", "quantity"],
            select(literal(item_id), literal(holder_id), literal(0)).where(~already_there),
        )
        try:
            self.db.execute(statement)
        except IntegrityError:
            # A concurrent checkout of the same holder committed the row first;
            # nothing else has been written in this transaction yet
            self.db.rollback()

    def _explain_stock_failure(self, item_id: int, flash_sale_id: int, quantity: int, now):
        self.db.rollback()
        flash_sale = self.db.get(FlashSale, flash_sale_id, populate_existing=True)
        if flash_sale is None or not flash_sale.is_open(now):
            return InvalidStateError(
                "Flash sale is not active",
                {"flash_sale_id": flash_sale_id},
            )
        item = self.db.get(FlashSaleItem, item_id, populate_existing=True)
        available = item.available_quantity if item else 0
        return InsufficientStockError(
            f"Not enough items available. Only {available} left",
            {"flash_sale_item_id": item_id, "requested": quantity, "available": available},
        )

    def _validate_quantity(self, quantity: int) -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError("Quantity must be an integer", {"quantity": "invalid integer"})
        if quantity <= 0:
            raise ValidationError("Quantity must be positive", {"quantity": "must be > 0"})
        if quantity > MAX_QUANTITY:
            raise ValidationError("Quantity is too large", {"quantity": f"max {MAX_QUANTITY}"})
        return quantity

    def _validate_holder(self, holder_id: str) -> str:
        holder = str(holder_id).strip() if holder_id is not None else ""
        if not holder:
            raise ValidationError("Holder id is required", {"holder_id": "required"})
        if len(holder) > 64:
            raise ValidationError("Holder id is too long", {"holder_id": "max 64 characters"})
        return holder

    def _resolve_ttl(self, ttl: TTL) -> timedelta:
        if ttl is None:
            return timedelta(seconds=self.config.FLASH_SALE_RESERVATION_TTL_SECONDS)
        if isinstance(ttl, timedelta):
            seconds = ttl.total_seconds()
        else:
            try:
                seconds = float(ttl)
            except (TypeError, ValueError, OverflowError):
                raise ValidationError("Reservation TTL must be a number", {"ttl": "invalid number"}) from None
        # NaN fails every comparison
        if not seconds > 0:
            raise ValidationError("Reservation TTL must be positive", {"ttl": "must be > 0"})
        if seconds > self.config.FLASH_SALE_MAX_TTL_SECONDS:
            raise ValidationError(
                "Reservation TTL is too long",
                {"ttl": f"max {self.config.FLASH_SALE_MAX_TTL_SECONDS} seconds"},
            )
        return ttl if isinstance(ttl, timedelta) else timedelta(seconds=seconds)
