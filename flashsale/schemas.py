"""Request and response shapes for the flash sale API boundary.

Requests parse loosely typed JSON payloads into typed dataclasses (raising
``ValidationError`` with per-field detail); responses render service results
back into JSON-ready dicts.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional

from flashsale.clock import as_utc
from flashsale.errors import ValidationError
from flashsale.models import FlashSale, FlashSaleItem, FlashSaleReservation

_MISSING = object()


def _field(payload: Mapping[str, Any], name: str, required: bool) -> Any:
    value = payload.get(name, _MISSING)
    if value is _MISSING or value is None:
        if required:
            raise ValidationError(f"'{name}' is required", {name: "required"})
        return None
    return value


def parse_datetime(payload: Mapping[str, Any], name: str, required: bool = True) -> Optional[datetime]:
    value = _field(payload, name, required)
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    try:
        return as_utc(datetime.fromisoformat(str(value).strip().replace("Z", "+00:00")))
    except ValueError:
        raise ValidationError(f"'{name}' must be an ISO-8601 datetime", {name: "invalid datetime"}) from None


def parse_int(payload: Mapping[str, Any], name: str, required: bool = True) -> Optional[int]:
    value = _field(payload, name, required)
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValidationError(f"'{name}' must be an integer", {name: "invalid integer"})
    if isinstance(value, float) and not value.is_integer():
        raise ValidationError(f"'{name}' must be an integer", {name: "invalid integer"})
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"'{name}' must be an integer", {name: "invalid integer"}) from None


def parse_decimal(payload: Mapping[str, Any], name: str, required: bool = True) -> Optional[Decimal]:
    value = _field(payload, name, required)
    if value is None:
        return None
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError(f"'{name}' must be a number", {name: "invalid number"}) from None
    if not parsed.is_finite():
        raise ValidationError(f"'{name}' must be a number", {name: "invalid number"})
    return parsed


_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def parse_bool(payload: Mapping[str, Any], name: str, required: bool = True) -> Optional[bool]:
    value = _field(payload, name, required)
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ValidationError(f"'{name}' must be a boolean", {name: "invalid boolean"})


def parse_str(payload: Mapping[str, Any], name: str, required: bool = True) -> Optional[str]:
    value = _field(payload, name, required)
    if value is None:
        return None
    text = str(value).strip()
    if required and not text:
        raise ValidationError(f"'{name}' must not be blank", {name: "blank"})
    return text or None


# ----------------------------------------------------------------------
# Requests
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class CreateFlashSaleRequest:
    name: str
    start_time: datetime
    end_time: datetime
    force_active: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CreateFlashSaleRequest":
        return cls(
            name=parse_str(payload, "name"),
            start_time=parse_datetime(payload, "start_time"),
            end_time=parse_datetime(payload, "end_time"),
            force_active=bool(parse_bool(payload, "force_active", required=False)),
        )


@dataclass(frozen=True)
class UpdateFlashSaleRequest:
    name: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UpdateFlashSaleRequest":
        return cls(
            name=parse_str(payload, "name", required=False),
            start_time=parse_datetime(payload, "start_time", required=False),
            end_time=parse_datetime(payload, "end_time", required=False),
        )


@dataclass(frozen=True)
class AddItemRequest:
    product_id: int
    sale_price: Decimal
    total_quantity: int
    per_user_limit: int = 1
    sort_order: int = 1

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AddItemRequest":
        per_user_limit = parse_int(payload, "per_user_limit", required=False)
        sort_order = parse_int(payload, "sort_order", required=False)
        return cls(
            product_id=parse_int(payload, "product_id"),
            sale_price=parse_decimal(payload, "sale_price"),
            total_quantity=parse_int(payload, "total_quantity"),
            per_user_limit=1 if per_user_limit is None else per_user_limit,
            sort_order=1 if sort_order is None else sort_order,
        )


@dataclass(frozen=True)
class UpdateItemRequest:
    sale_price: Optional[Decimal] = None
    total_quantity: Optional[int] = None
    per_user_limit: Optional[int] = None
    sort_order: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "UpdateItemRequest":
        return cls(
            sale_price=parse_decimal(payload, "sale_price", required=False),
            total_quantity=parse_int(payload, "total_quantity", required=False),
            per_user_limit=parse_int(payload, "per_user_limit", required=False),
            sort_order=parse_int(payload, "sort_order", required=False),
        )


@dataclass(frozen=True)
class ReserveRequest:
    holder_id: str
    quantity: int
    ttl_seconds: Optional[int] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "ReserveRequest":
        return cls(
            holder_id=parse_str(payload, "holder_id"),
            quantity=parse_int(payload, "quantity"),
            ttl_seconds=parse_int(payload, "ttl_seconds", required=False),
        )


@dataclass(frozen=True)
class CommitRequest:
    order_id: Optional[str] = None

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "CommitRequest":
        return cls(order_id=parse_str(payload, "order_id", required=False))


# ----------------------------------------------------------------------
# Responses
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class ItemAvailability:
    flash_sale_item_id: int
    flash_sale_id: int
    product_id: int
    sale_price: float
    total_quantity: int
    reserved_quantity: int
    sold_quantity: int
    available_quantity: int
    per_user_limit: int
    sort_order: int

    @classmethod
    def from_item(cls, item: FlashSaleItem) -> "ItemAvailability":
        return cls(
            flash_sale_item_id=item.flashSaleItemID,
            flash_sale_id=item.flashSaleID,
            product_id=item.productID,
            sale_price=float(item.sale_price),
            total_quantity=item.total_quantity,
            reserved_quantity=item.reserved_quantity,
            sold_quantity=item.sold_quantity,
            available_quantity=item.available_quantity,
            per_user_limit=item.per_user_limit,
            sort_order=item.sort_order,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AvailabilityCheck:
    available: bool
    reason: Optional[str] = None
    remaining: int = 0
    sale_price: Optional[float] = None
    per_user_limit: Optional[int] = None
    flash_sale_item_id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class FlashSaleStats:
    flash_sale_id: int
    status: str
    item_count: int
    total_quantity: int
    reserved_quantity: int
    sold_quantity: int
    available_quantity: int
    reservations: Dict[str, int]
    conversion_rate: float
    sell_through_rate: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ReservationValidation:
    valid: bool
    reason: Optional[str] = None
    reservation_id: Optional[int] = None
    sale_price: Optional[float] = None
    available_quantity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ActivationResult:
    """Outcome of one activation or closing batch."""
    transitioned: int = 0
    flash_sale_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CleanupResult:
    cleaned: int = 0
    reservation_ids: List[int] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SchedulerTickResult:
    activated: int
    closed: int
    cleaned: int
    timestamp: datetime
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "activated": self.activated,
            "closed": self.closed,
            "cleaned": self.cleaned,
            "timestamp": self.timestamp.isoformat(),
            "errors": list(self.errors),
        }


def flash_sale_to_dict(flash_sale: FlashSale) -> Dict[str, Any]:
    return {
        "id": flash_sale.flashSaleID,
        "name": flash_sale.name,
        "start_time": flash_sale.start_time.isoformat(),
        "end_time": flash_sale.end_time.isoformat(),
        "status": flash_sale.status.value,
    }


def reservation_to_dict(reservation: FlashSaleReservation) -> Dict[str, Any]:
    return {
        "id": reservation.reservationID,
        "flash_sale_item_id": reservation.flashSaleItemID,
        "flash_sale_id": reservation.flashSaleID,
        "holder_id": reservation.holder_id,
        "quantity": reservation.quantity,
        "sale_price": float(reservation.sale_price),
        "status": reservation.status.value,
        "order_id": reservation.order_id,
        "created_at": reservation.created_at.isoformat(),
        "expires_at": reservation.expires_at.isoformat(),
        "resolved_at": reservation.resolved_at.isoformat() if reservation.resolved_at else None,
    }
