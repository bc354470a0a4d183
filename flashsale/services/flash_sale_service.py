# flashsale/services/flash_sale_service.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flashsale.clock import Clock, SystemClock, as_utc
from flashsale.config import Config
from flashsale.errors import InvalidStateError, NotFoundError, ValidationError
from flashsale.models import (
    FlashSale,
    FlashSaleHolderUsage,
    FlashSaleItem,
    FlashSaleReservation,
    FlashSaleStatus,
    MAX_QUANTITY,
    Product,
    ReservationStatus,
    TERMINAL_FLASH_SALE_STATUSES,
)
from flashsale.schemas import AvailabilityCheck, FlashSaleStats, ItemAvailability
from flashsale.services.activation_service import FlashSaleActivationService

logger = logging.getLogger(__name__)

EDITABLE_ITEM_STATUSES = (FlashSaleStatus.SCHEDULED, FlashSaleStatus.ACTIVE)


class FlashSaleService:
    """Campaign registry: admin CRUD over campaigns and their items, plus storefront reads"""

    def __init__(
        self,
        db_session: Session,
        clock: Optional[Clock] = None,
        activation_service: Optional[FlashSaleActivationService] = None,
    ):
        self.db = db_session
        self.clock = clock or SystemClock()
        self.activation = activation_service or FlashSaleActivationService(db_session, clock=self.clock)

    # ------------------------------------------------------------------
    # Campaigns
    # ------------------------------------------------------------------
    def create_flash_sale(
        self,
        name: str,
        start_time: datetime,
        end_time: datetime,
        force_active: bool = False,
    ) -> FlashSale:
        """Create a new flash sale, scheduled unless the admin forces it live"""
        now = self.clock.now()
        if not name or not name.strip():
            raise ValidationError("Name is required", {"name": "required"})
        start_time, end_time = as_utc(start_time), as_utc(end_time)
        self._validate_window(start_time, end_time, now)

        status = FlashSaleStatus.SCHEDULED
        if force_active:
            if start_time > now:
                raise ValidationError(
                    "A flash sale can only be forced active once its start time has passed",
                    {"force_active": "start_time is in the future"},
                )
            status = FlashSaleStatus.ACTIVE

        flash_sale = FlashSale(name=name.strip(), status=status)
        flash_sale.start_time = start_time
        flash_sale.end_time = end_time
        try:
            self.db.add(flash_sale)
            self.db.commit()
            self.db.refresh(flash_sale)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating flash sale: {e}")
            raise

        logger.info(f"Created flash sale {flash_sale.flashSaleID} ({status.value})")
        return flash_sale

    def get_flash_sale(self, flash_sale_id: int) -> FlashSale:
        flash_sale = self.db.get(FlashSale, flash_sale_id, populate_existing=True)
        if flash_sale is None:
            raise NotFoundError(f"Flash sale {flash_sale_id} not found")
        return flash_sale

    def update_flash_sale(
        self,
        flash_sale_id: int,
        name: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> FlashSale:
        """Rename a live campaign, or move the window of one that has not started yet"""
        now = self.clock.now()
        flash_sale = self.get_flash_sale(flash_sale_id)
        if flash_sale.status in TERMINAL_FLASH_SALE_STATUSES:
            raise InvalidStateError(
                f"Cannot edit a flash sale that is {flash_sale.status.value}",
                {"flash_sale_id": flash_sale_id, "status": flash_sale.status.value},
            )

        values: Dict[Any, Any] = {FlashSale.updated_at: now}
        if name is not None:
            if not name.strip():
                raise ValidationError("Name is required", {"name": "blank"})
            values[FlashSale.name] = name.strip()

        window_changed = start_time is not None or end_time is not None
        expected_status = flash_sale.status
        if window_changed:
            if flash_sale.status != FlashSaleStatus.SCHEDULED:
                raise InvalidStateError(
                    "The time window can only be changed before the flash sale starts",
                    {"flash_sale_id": flash_sale_id, "status": flash_sale.status.value},
                )
            new_start = as_utc(start_time) if start_time is not None else flash_sale.start_time
            new_end = as_utc(end_time) if end_time is not None else flash_sale.end_time
            self._validate_window(new_start, new_end, now)
            values[FlashSale._start_time] = new_start
            values[FlashSale._end_time] = new_end
            expected_status = FlashSaleStatus.SCHEDULED

        try:
            updated = (
                self.db.query(FlashSale)
                .filter(FlashSale.flashSaleID == flash_sale_id, FlashSale.status == expected_status)
                .update(values, synchronize_session=False)
            )
            if not updated:
                raise InvalidStateError(
                    f"Flash sale {flash_sale_id} changed state while being edited",
                    {"flash_sale_id": flash_sale_id},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Updated flash sale {flash_sale_id}")
        return self.get_flash_sale(flash_sale_id)

    def cancel_flash_sale(self, flash_sale_id: int) -> FlashSale:
        return self.activation.cancel_flash_sale(flash_sale_id)

    def delete_flash_sale(self, flash_sale_id: int) -> None:
        """Delete a campaign together with its items and reservations"""
        flash_sale = self.get_flash_sale(flash_sale_id)
        try:
            self.db.delete(flash_sale)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting flash sale {flash_sale_id}: {e}")
            raise
        logger.info(f"Deleted flash sale {flash_sale_id}")

    def list_flash_sales(
        self,
        status: Optional[str] = None,
        page: int = 1,
        per_page: Optional[int] = None,
    ) -> Tuple[List[FlashSale], Dict[str, int]]:
        """Admin listing, newest first, with pagination info"""
        if per_page is None:
            per_page = Config.FLASH_SALE_PAGE_SIZE
        if page < 1 or per_page < 1:
            raise ValidationError("page and limit must be positive", {"page": page, "limit": per_page})

        query = self.db.query(FlashSale)
        if status:
            try:
                query = query.filter(FlashSale.status == FlashSaleStatus(status))
            except ValueError:
                raise ValidationError(f"Unknown status '{status}'", {"status": "invalid"}) from None

        total = query.count()
        flash_sales = (
            query.order_by(FlashSale._start_time.desc(), FlashSale.flashSaleID.desc())
            .offset((page - 1) * per_page)
            .limit(per_page)
            .all()
        )
        pagination = {
            "page": page,
            "limit": per_page,
            "total": total,
            "total_pages": (total + per_page - 1) // per_page,
        }
        return flash_sales, pagination

    def list_active_flash_sales(self) -> List[FlashSale]:
        """Get all currently active flash sales"""
        now = self.clock.now()
        return (
            self.db.query(FlashSale)
            .filter(FlashSale.status == FlashSaleStatus.ACTIVE, FlashSale._end_time > now)
            .order_by(FlashSale._end_time)
            .all()
        )

    def list_upcoming_flash_sales(self) -> List[FlashSale]:
        now = self.clock.now()
        return (
            self.db.query(FlashSale)
            .filter(FlashSale.status == FlashSaleStatus.SCHEDULED, FlashSale._start_time > now)
            .order_by(FlashSale._start_time)
            .all()
        )

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------
    def add_item(
        self,
        flash_sale_id: int,
        product_id: int,
        sale_price: Decimal,
        total_quantity: int,
        per_user_limit: int = 1,
        sort_order: int = 1,
    ) -> FlashSaleItem:
        """Attach a product to a campaign with its sale price and stock budget"""
        flash_sale = self.get_flash_sale(flash_sale_id)
        self._require_item_editable(flash_sale)

        product = self.db.query(Product).filter_by(productID=product_id).first()
        if not product:
            raise NotFoundError(f"Product {product_id} not found")

        sale_price = Decimal(str(sale_price))
        self._validate_item_values(product, sale_price, total_quantity, per_user_limit, sort_order)

        duplicate = (
            self.db.query(FlashSaleItem.flashSaleItemID)
            .filter_by(flashSaleID=flash_sale_id, productID=product_id)
            .first()
        )
        if duplicate:
            raise ValidationError(
                "Product is already part of this flash sale",
                {"product_id": product_id, "flash_sale_item_id": duplicate[0]},
            )

        item = FlashSaleItem(
            flashSaleID=flash_sale_id,
            productID=product_id,
            sale_price=sale_price,
            total_quantity=total_quantity,
            reserved_quantity=0,
            sold_quantity=0,
            per_user_limit=per_user_limit,
            sort_order=sort_order,
        )
        try:
            self.db.add(item)
            self.db.commit()
            self.db.refresh(item)
        except IntegrityError:
            self.db.rollback()
            raise ValidationError(
                "Product is already part of this flash sale", {"product_id": product_id}
            ) from None
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Added product {product_id} to flash sale {flash_sale_id} as item {item.flashSaleItemID}")
        return item

    def get_item(self, flash_sale_item_id: int) -> FlashSaleItem:
        item = self.db.get(FlashSaleItem, flash_sale_item_id, populate_existing=True)
        if item is None:
            raise NotFoundError(f"Flash sale item {flash_sale_item_id} not found")
        return item

    def update_item(
        self,
        flash_sale_item_id: int,
        sale_price: Optional[Decimal] = None,
        total_quantity: Optional[int] = None,
        per_user_limit: Optional[int] = None,
        sort_order: Optional[int] = None,
    ) -> FlashSaleItem:
        """Edit an item. Total stock can never drop below what is already held or sold."""
        item = self.get_item(flash_sale_item_id)
        self._require_item_editable(item.flash_sale)

        new_price = Decimal(str(sale_price)) if sale_price is not None else Decimal(str(item.sale_price))
        new_total = total_quantity if total_quantity is not None else item.total_quantity
        new_limit = per_user_limit if per_user_limit is not None else item.per_user_limit
        self._validate_item_values(item.product, new_price, new_total, new_limit, sort_order)

        values: Dict[Any, Any] = {
            FlashSaleItem.sale_price: new_price,
            FlashSaleItem.total_quantity: new_total,
            FlashSaleItem.per_user_limit: new_limit,
        }
        if sort_order is not None:
            values[FlashSaleItem.sort_order] = sort_order

        try:
            updated = (
                self.db.query(FlashSaleItem)
                .filter(
                    FlashSaleItem.flashSaleItemID == flash_sale_item_id,
                    FlashSaleItem.reserved_quantity + FlashSaleItem.sold_quantity <= new_total,
                )
                .update(values, synchronize_session=False)
            )
            if not updated:
                raise InvalidStateError(
                    "Total quantity cannot be lower than reserved plus sold quantity",
                    {"flash_sale_item_id": flash_sale_item_id, "total_quantity": new_total},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"Updated flash sale item {flash_sale_item_id}")
        return self.get_item(flash_sale_item_id)

    def delete_item(self, flash_sale_item_id: int) -> None:
        item = self.get_item(flash_sale_item_id)
        held = (
            self.db.query(func.count(FlashSaleReservation.reservationID))
            .filter(
                FlashSaleReservation.flashSaleItemID == flash_sale_item_id,
                FlashSaleReservation.status == ReservationStatus.HELD,
            )
            .scalar()
        )
        if held:
            raise InvalidStateError(
                "Cannot delete an item with outstanding reservations",
                {"flash_sale_item_id": flash_sale_item_id, "held_reservations": held},
            )
        try:
            self.db.delete(item)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        logger.info(f"Deleted flash sale item {flash_sale_item_id}")

    def list_items(self, flash_sale_id: int, public: bool = False) -> List[ItemAvailability]:
        """Items with live availability. The storefront only sees items of an active campaign."""
        flash_sale = self.get_flash_sale(flash_sale_id)
        if public and not flash_sale.is_open(self.clock.now()):
            raise InvalidStateError(
                "Flash sale is not active",
                {"flash_sale_id": flash_sale_id, "status": flash_sale.status.value},
            )
        items = (
            self.db.query(FlashSaleItem)
            .filter(FlashSaleItem.flashSaleID == flash_sale_id)
            .order_by(FlashSaleItem.sort_order, FlashSaleItem.flashSaleItemID)
            .populate_existing()
            .all()
        )
        return [ItemAvailability.from_item(item) for item in items]

    def check_availability(
        self,
        flash_sale_id: int,
        product_id: int,
        quantity: int = 1,
        holder_id: Optional[str] = None,
    ) -> AvailabilityCheck:
        """Advisory pre-checkout check; the reservation itself re-validates atomically"""
        if quantity < 1:
            raise ValidationError("Quantity must be positive", {"quantity": "must be > 0"})
        now = self.clock.now()
        flash_sale = self.get_flash_sale(flash_sale_id)
        if not flash_sale.is_open(now):
            return AvailabilityCheck(available=False, reason="Flash sale is not active")

        item = (
            self.db.query(FlashSaleItem)
            .filter_by(flashSaleID=flash_sale_id, productID=product_id)
            .populate_existing()
            .first()
        )
        if item is None:
            return AvailabilityCheck(available=False, reason="Product is not part of this flash sale")

        common = {
            "sale_price": float(item.sale_price),
            "per_user_limit": item.per_user_limit,
            "flash_sale_item_id": item.flashSaleItemID,
        }
        remaining = item.available_quantity
        if remaining < quantity:
            return AvailabilityCheck(
                available=False,
                reason=f"Not enough items available. Only {remaining} left",
                remaining=remaining,
                **common,
            )

        used = 0
        if holder_id:
            used = (
                self.db.query(FlashSaleHolderUsage.quantity)
                .filter_by(flashSaleItemID=item.flashSaleItemID, holder_id=holder_id)
                .scalar()
                or 0
            )
        if used + quantity > item.per_user_limit:
            return AvailabilityCheck(
                available=False,
                reason="Purchase limit per customer exceeded",
                remaining=remaining,
                **common,
            )
        return AvailabilityCheck(available=True, remaining=remaining, **common)

    def get_stats(self, flash_sale_id: int) -> FlashSaleStats:
        flash_sale = self.get_flash_sale(flash_sale_id)
        totals = (
            self.db.query(
                func.count(FlashSaleItem.flashSaleItemID),
                func.coalesce(func.sum(FlashSaleItem.total_quantity), 0),
                func.coalesce(func.sum(FlashSaleItem.reserved_quantity), 0),
                func.coalesce(func.sum(FlashSaleItem.sold_quantity), 0),
            )
            .filter(FlashSaleItem.flashSaleID == flash_sale_id)
            .one()
        )
        item_count, total, reserved, sold = (int(value) for value in totals)

        by_status = {status.value: 0 for status in ReservationStatus}
        rows = (
            self.db.query(FlashSaleReservation.status, func.count(FlashSaleReservation.reservationID))
            .filter(FlashSaleReservation.flashSaleID == flash_sale_id)
            .group_by(FlashSaleReservation.status)
            .all()
        )
        for status, count in rows:
            by_status[ReservationStatus(status).value] = count

        reservation_total = sum(by_status.values())
        return FlashSaleStats(
            flash_sale_id=flash_sale_id,
            status=flash_sale.status.value,
            item_count=item_count,
            total_quantity=total,
            reserved_quantity=reserved,
            sold_quantity=sold,
            available_quantity=max(0, total - reserved - sold),
            reservations=by_status,
            conversion_rate=round(by_status["committed"] / reservation_total, 4) if reservation_total else 0.0,
            sell_through_rate=round(sold / total, 4) if total else 0.0,
        )

    # ------------------------------------------------------------------
    # Validation helpers
    # ------------------------------------------------------------------
    def _validate_window(self, start_time: datetime, end_time: datetime, now: datetime) -> None:
        if start_time >= end_time:
            raise ValidationError("Start time must be before end time", {"end_time": "must be after start_time"})
        if end_time <= now:
            raise ValidationError("End time must be in the future", {"end_time": "in the past"})

    def _validate_item_values(
        self,
        product: Product,
        sale_price: Decimal,
        total_quantity: int,
        per_user_limit: int,
        sort_order: Optional[int] = None,
    ) -> None:
        if sale_price <= 0:
            raise ValidationError("Sale price must be positive", {"sale_price": "must be > 0"})
        if product is not None and sale_price >= Decimal(str(product.price)):
            raise ValidationError(
                "Sale price must be lower than the regular price",
                {"sale_price": float(sale_price), "regular_price": float(product.price)},
            )
        if total_quantity is None or total_quantity <= 0:
            raise ValidationError("Total quantity must be positive", {"total_quantity": "must be > 0"})
        if total_quantity > MAX_QUANTITY:
            raise ValidationError("Total quantity is too large", {"total_quantity": f"max {MAX_QUANTITY}"})
        if per_user_limit is None or not 1 <= per_user_limit <= MAX_QUANTITY:
            raise ValidationError("Per user limit must be at least 1", {"per_user_limit": "must be >= 1"})
        if sort_order is not None and abs(sort_order) > MAX_QUANTITY:
            raise ValidationError("Sort order is out of range", {"sort_order": f"max {MAX_QUANTITY}"})

    def _require_item_editable(self, flash_sale: FlashSale) -> None:
        if flash_sale.status not in EDITABLE_ITEM_STATUSES:
            raise InvalidStateError(
                f"Items of a {flash_sale.status.value} flash sale cannot be changed",
                {"flash_sale_id": flash_sale.flashSaleID, "status": flash_sale.status.value},
            )
