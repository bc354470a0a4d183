# flashsale/models.py
from enum import Enum
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    Integer,
    String,
    Numeric,
    DateTime,
    ForeignKey,
    CheckConstraint,
    UniqueConstraint,
    Index,
    Enum as SAEnum,
)
from sqlalchemy.orm import relationship

# Use a single, shared Base for all models
from flashsale.clock import as_utc
from flashsale.database import Base


class FlashSaleStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    ENDED = "ended"
    CANCELLED = "cancelled"


class ReservationStatus(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"
    EXPIRED = "expired"


TERMINAL_FLASH_SALE_STATUSES = frozenset({FlashSaleStatus.ENDED, FlashSaleStatus.CANCELLED})
TERMINAL_RESERVATION_STATUSES = frozenset(
    {ReservationStatus.COMMITTED, ReservationStatus.RELEASED, ReservationStatus.EXPIRED}
)

# Largest value an Integer quantity column holds on every supported backend
MAX_QUANTITY = 2**31 - 1


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _utcnow():
    return datetime.now(timezone.utc)


class Product(Base):
    """Catalog record owned by the catalog service; only the regular price matters here."""

    __tablename__ = 'Product'
    productID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)


class FlashSale(Base):
    __tablename__ = 'FlashSale'
    __table_args__ = (
        CheckConstraint('end_time > start_time', name='ck_flash_sale_window'),
        Index('ix_flash_sale_status_start', 'status', 'start_time'),
        Index('ix_flash_sale_status_end', 'status', 'end_time'),
    )

    flashSaleID = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    _start_time = Column('start_time', DateTime(timezone=True), nullable=False)
    _end_time = Column('end_time', DateTime(timezone=True), nullable=False)
    status = Column(
        SAEnum(
            FlashSaleStatus,
            name="flash_sale_status",
            native_enum=False,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        default=FlashSaleStatus.SCHEDULED,
        nullable=False,
    )
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    items = relationship(
        "FlashSaleItem",
        back_populates="flash_sale",
        cascade="all, delete",
        order_by="FlashSaleItem.sort_order",
    )
    reservations = relationship("FlashSaleReservation", cascade="all, delete")

    _VALID_TRANSITIONS = {
        FlashSaleStatus.SCHEDULED: {FlashSaleStatus.ACTIVE, FlashSaleStatus.CANCELLED},
        FlashSaleStatus.ACTIVE: {FlashSaleStatus.ENDED, FlashSaleStatus.CANCELLED},
    }

    # Stored values come back naive from SQLite; always hand out aware UTC.
    @property
    def start_time(self):
        return as_utc(self._start_time) if self._start_time else None

    @start_time.setter
    def start_time(self, value):
        self._start_time = as_utc(value)

    @property
    def end_time(self):
        return as_utc(self._end_time) if self._end_time else None

    @end_time.setter
    def end_time(self, value):
        self._end_time = as_utc(value)

    @classmethod
    def allowed_transitions(cls, status: FlashSaleStatus) -> frozenset:
        return frozenset(cls._VALID_TRANSITIONS.get(FlashSaleStatus(status), set()))

    def can_transition(self, new_status: FlashSaleStatus) -> bool:
        return new_status in self.allowed_transitions(self.status)

    def is_open(self, now: datetime) -> bool:
        return self.status == FlashSaleStatus.ACTIVE and as_utc(now) < self.end_time


class FlashSaleItem(Base):
    __tablename__ = 'FlashSaleItem'
    __table_args__ = (
        UniqueConstraint('flashSaleID', 'productID', name='uq_flash_sale_product'),
        CheckConstraint('reserved_quantity >= 0', name='ck_item_reserved_non_negative'),
        CheckConstraint('sold_quantity >= 0', name='ck_item_sold_non_negative'),
        CheckConstraint(
            'reserved_quantity + sold_quantity <= total_quantity',
            name='ck_item_no_oversell',
        ),
        CheckConstraint('per_user_limit >= 1', name='ck_item_per_user_limit'),
    )

    flashSaleItemID = Column(Integer, primary_key=True, autoincrement=True)
    flashSaleID = Column(
        Integer, ForeignKey('FlashSale.flashSaleID', ondelete="CASCADE"), nullable=False, index=True
    )
    productID = Column(Integer, ForeignKey('Product.productID'), nullable=False, index=True)
    sale_price = Column(Numeric(10, 2), nullable=False)
    total_quantity = Column(Integer, nullable=False)
    reserved_quantity = Column(Integer, nullable=False, default=0)
    sold_quantity = Column(Integer, nullable=False, default=0)
    per_user_limit = Column(Integer, nullable=False, default=1)
    sort_order = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    flash_sale = relationship("FlashSale", back_populates="items")
    product = relationship("Product")
    reservations = relationship(
        "FlashSaleReservation",
        back_populates="item",
        cascade="all, delete",
    )
    holder_usages = relationship(
        "FlashSaleHolderUsage",
        cascade="all, delete",
    )

    @property
    def available_quantity(self) -> int:
        return max(0, self.total_quantity - self.reserved_quantity - self.sold_quantity)


class FlashSaleReservation(Base):
    __tablename__ = 'FlashSaleReservation'
    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_reservation_quantity_positive'),
        Index('ix_reservation_status_expires', 'status', 'expires_at'),
        Index('ix_reservation_item_holder', 'flashSaleItemID', 'holder_id'),
    )

    reservationID = Column(Integer, primary_key=True, autoincrement=True)
    flashSaleItemID = Column(
        Integer, ForeignKey('FlashSaleItem.flashSaleItemID', ondelete="CASCADE"), nullable=False
    )
    flashSaleID = Column(
        Integer, ForeignKey('FlashSale.flashSaleID', ondelete="CASCADE"), nullable=False, index=True
    )
    holder_id = Column(String(64), nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    sale_price = Column(Numeric(10, 2), nullable=False)
    order_id = Column(String(64))
    status = Column(
        SAEnum(
            ReservationStatus,
            name="reservation_status",
            native_enum=False,
            validate_strings=True,
            values_callable=_enum_values,
        ),
        default=ReservationStatus.HELD,
        nullable=False,
    )
    _created_at = Column('created_at', DateTime(timezone=True), nullable=False)
    _expires_at = Column('expires_at', DateTime(timezone=True), nullable=False)
    _resolved_at = Column('resolved_at', DateTime(timezone=True))

    item = relationship("FlashSaleItem", back_populates="reservations")

    @property
    def created_at(self):
        return as_utc(self._created_at) if self._created_at else None

    @created_at.setter
    def created_at(self, value):
        self._created_at = as_utc(value)

    @property
    def expires_at(self):
        return as_utc(self._expires_at) if self._expires_at else None

    @expires_at.setter
    def expires_at(self, value):
        self._expires_at = as_utc(value)

    @property
    def resolved_at(self):
        return as_utc(self._resolved_at) if self._resolved_at else None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RESERVATION_STATUSES

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) > self.expires_at


class FlashSaleHolderUsage(Base):
    """Committed plus held quantity per holder and item, used to enforce per-user limits."""

    __tablename__ = 'FlashSaleHolderUsage'
    __table_args__ = (
        UniqueConstraint('flashSaleItemID', 'holder_id', name='uq_usage_item_holder'),
        CheckConstraint('quantity >= 0', name='ck_usage_quantity_non_negative'),
    )

    usageID = Column(Integer, primary_key=True, autoincrement=True)
    flashSaleItemID = Column(
        Integer, ForeignKey('FlashSaleItem.flashSaleItemID', ondelete="CASCADE"), nullable=False
    )
    holder_id = Column(String(64), nullable=False)
    quantity = Column(Integer, nullable=False, default=0)
