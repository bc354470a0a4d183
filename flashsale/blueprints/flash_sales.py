from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, current_app, g, jsonify, request

from flashsale.clock import Clock, SystemClock
from flashsale.database import get_db
from flashsale.errors import FlashSaleError, ValidationError
from flashsale.events import get_event_publisher
from flashsale.observability import increment_counter
from flashsale.schemas import (
    AddItemRequest,
    CommitRequest,
    CreateFlashSaleRequest,
    ItemAvailability,
    ReserveRequest,
    UpdateFlashSaleRequest,
    UpdateItemRequest,
    flash_sale_to_dict,
    parse_bool,
    parse_int,
    reservation_to_dict,
)
from flashsale.services.activation_service import FlashSaleActivationService
from flashsale.services.flash_sale_service import FlashSaleService
from flashsale.services.reservation_service import FlashSaleReservationService

flash_sales_bp = Blueprint("flash_sales", __name__)

logger = logging.getLogger(__name__)


def _clock() -> Clock:
    return current_app.extensions.get("flash_sale_clock") or SystemClock()


def _get_reservation_service() -> FlashSaleReservationService:
    return FlashSaleReservationService(get_db(), clock=_clock())


def _get_flash_sale_service() -> FlashSaleService:
    db = get_db()
    clock = _clock()
    reservations = FlashSaleReservationService(db, clock=clock)
    activation = FlashSaleActivationService(
        db,
        clock=clock,
        reservation_service=reservations,
        publisher=current_app.extensions.get("flash_sale_publisher") or get_event_publisher(),
    )
    return FlashSaleService(db, clock=clock, activation_service=activation)


def _payload() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", {"body": "expected object"})
    return payload


@flash_sales_bp.errorhandler(FlashSaleError)
def handle_flash_sale_error(error: FlashSaleError):
    increment_counter(
        "flash_sale_api_errors_total",
        labels={"code": error.code, "endpoint": request.endpoint or request.path},
    )
    logger.info("Flash sale request rejected: %s", error.message, extra={"code": error.code})
    return jsonify(error.to_dict()), error.http_status


# ---------------------------------------------
# Admin: campaigns and items
# ---------------------------------------------
@flash_sales_bp.route("/api/admin/flash-sales", methods=["POST"])
def api_create_flash_sale():
    body = CreateFlashSaleRequest.from_dict(_payload())
    flash_sale = _get_flash_sale_service().create_flash_sale(
        name=body.name,
        start_time=body.start_time,
        end_time=body.end_time,
        force_active=body.force_active,
    )
    return jsonify({"flash_sale": flash_sale_to_dict(flash_sale)}), 201


@flash_sales_bp.route("/api/admin/flash-sales", methods=["GET"])
def api_list_flash_sales():
    args = request.args
    page = parse_int(args, "page", required=False)
    limit = parse_int(args, "limit", required=False)
    if page is None:
        page = 1
    flash_sales, pagination = _get_flash_sale_service().list_flash_sales(
        status=args.get("status") or None,
        page=page,
        per_page=limit,
    )
    return jsonify({
        "flash_sales": [flash_sale_to_dict(fs) for fs in flash_sales],
        "pagination": pagination,
    })


@flash_sales_bp.route("/api/admin/flash-sales/<int:flash_sale_id>", methods=["PUT"])
def api_update_flash_sale(flash_sale_id: int):
    body = UpdateFlashSaleRequest.from_dict(_payload())
    flash_sale = _get_flash_sale_service().update_flash_sale(
        flash_sale_id,
        name=body.name,
        start_time=body.start_time,
        end_time=body.end_time,
    )
    return jsonify({"flash_sale": flash_sale_to_dict(flash_sale)})


@flash_sales_bp.route("/api/admin/flash-sales/<int:flash_sale_id>", methods=["DELETE"])
def api_delete_flash_sale(flash_sale_id: int):
    _get_flash_sale_service().delete_flash_sale(flash_sale_id)
    return jsonify({"success": True, "message": "Flash sale deleted"})


@flash_sales_bp.route("/api/admin/flash-sales/<int:flash_sale_id>/cancel", methods=["POST"])
def api_cancel_flash_sale(flash_sale_id: int):
    flash_sale = _get_flash_sale_service().cancel_flash_sale(flash_sale_id)
    return jsonify({"flash_sale": flash_sale_to_dict(flash_sale)})


@flash_sales_bp.route("/api/admin/flash-sales/<int:flash_sale_id>/items", methods=["POST"])
def api_add_item(flash_sale_id: int):
    body = AddItemRequest.from_dict(_payload())
    item = _get_flash_sale_service().add_item(
        flash_sale_id,
        product_id=body.product_id,
        sale_price=body.sale_price,
        total_quantity=body.total_quantity,
        per_user_limit=body.per_user_limit,
        sort_order=body.sort_order,
    )
    return jsonify({"item": ItemAvailability.from_item(item).to_dict()}), 201


@flash_sales_bp.route("/api/admin/flash-sales/<int:flash_sale_id>/stats", methods=["GET"])
def api_flash_sale_stats(flash_sale_id: int):
    stats = _get_flash_sale_service().get_stats(flash_sale_id)
    return jsonify({"stats": stats.to_dict()})


@flash_sales_bp.route("/api/admin/flash-sale-items/<int:item_id>", methods=["PUT"])
def api_update_item(item_id: int):
    body = UpdateItemRequest.from_dict(_payload())
    item = _get_flash_sale_service().update_item(
        item_id,
        sale_price=body.sale_price,
        total_quantity=body.total_quantity,
        per_user_limit=body.per_user_limit,
        sort_order=body.sort_order,
    )
    return jsonify({"item": ItemAvailability.from_item(item).to_dict()})


@flash_sales_bp.route("/api/admin/flash-sale-items/<int:item_id>", methods=["DELETE"])
def api_delete_item(item_id: int):
    _get_flash_sale_service().delete_item(item_id)
    return jsonify({"success": True, "message": "Flash sale item deleted"})


# ---------------------------------------------
# Storefront reads
# ---------------------------------------------
@flash_sales_bp.route("/api/flash-sales/active", methods=["GET"])
def api_active_flash_sales():
    flash_sales = _get_flash_sale_service().list_active_flash_sales()
    return jsonify({"flash_sales": [flash_sale_to_dict(fs) for fs in flash_sales]})


@flash_sales_bp.route("/api/flash-sales/upcoming", methods=["GET"])
def api_upcoming_flash_sales():
    flash_sales = _get_flash_sale_service().list_upcoming_flash_sales()
    return jsonify({"flash_sales": [flash_sale_to_dict(fs) for fs in flash_sales]})


@flash_sales_bp.route("/api/flash-sales/<int:flash_sale_id>", methods=["GET"])
def api_flash_sale_detail(flash_sale_id: int):
    flash_sale = _get_flash_sale_service().get_flash_sale(flash_sale_id)
    return jsonify({"flash_sale": flash_sale_to_dict(flash_sale)})


@flash_sales_bp.route("/api/flash-sales/<int:flash_sale_id>/items", methods=["GET"])
def api_flash_sale_items(flash_sale_id: int):
    items = _get_flash_sale_service().list_items(flash_sale_id, public=True)
    return jsonify({"items": [item.to_dict() for item in items]})


@flash_sales_bp.route(
    "/api/flash-sales/<int:flash_sale_id>/products/<int:product_id>/availability",
    methods=["GET"],
)
def api_check_availability(flash_sale_id: int, product_id: int):
    quantity = parse_int(request.args, "quantity", required=False)
    if quantity is None:
        quantity = 1
    result = _get_flash_sale_service().check_availability(
        flash_sale_id,
        product_id,
        quantity=quantity,
        holder_id=request.args.get("holder_id") or None,
    )
    return jsonify(result.to_dict())


# ---------------------------------------------
# Checkout: reservations
# ---------------------------------------------
@flash_sales_bp.route("/api/flash-sale-items/<int:item_id>/reservations", methods=["POST"])
def api_reserve(item_id: int):
    body = ReserveRequest.from_dict(_payload())
    g.holder_id = body.holder_id
    reservation = _get_reservation_service().reserve(
        item_id,
        holder_id=body.holder_id,
        quantity=body.quantity,
        ttl=body.ttl_seconds,
    )
    return jsonify({"reservation": reservation_to_dict(reservation)}), 201


@flash_sales_bp.route("/api/reservations/<int:reservation_id>/commit", methods=["POST"])
def api_commit_reservation(reservation_id: int):
    body = CommitRequest.from_dict(_payload())
    reservation = _get_reservation_service().commit(reservation_id, order_id=body.order_id)
    g.holder_id = reservation.holder_id
    return jsonify({"reservation": reservation_to_dict(reservation)})


@flash_sales_bp.route("/api/reservations/<int:reservation_id>/release", methods=["POST"])
def api_release_reservation(reservation_id: int):
    reservation = _get_reservation_service().release(reservation_id)
    g.holder_id = reservation.holder_id
    return jsonify({"reservation": reservation_to_dict(reservation)})


@flash_sales_bp.route("/api/reservations/<int:reservation_id>/validate", methods=["GET"])
def api_validate_reservation(reservation_id: int):
    validation = _get_reservation_service().validate_reservation(reservation_id)
    return jsonify(validation.to_dict())


@flash_sales_bp.route("/api/holders/<holder_id>/reservations", methods=["GET"])
def api_holder_reservations(holder_id: str):
    g.holder_id = holder_id
    flash_sale_id = parse_int(request.args, "flash_sale_id", required=False)
    include_committed = bool(parse_bool(request.args, "include_committed", required=False))
    reservations = _get_reservation_service().get_holder_reservations(
        holder_id,
        flash_sale_id=flash_sale_id,
        include_committed=include_committed,
    )
    return jsonify({"reservations": [reservation_to_dict(r) for r in reservations]})


# ---------------------------------------------
# Ops
# ---------------------------------------------
@flash_sales_bp.route("/api/ops/flash-sales/tick", methods=["POST"])
def api_scheduler_tick():
    scheduler = current_app.extensions.get("flash_sale_scheduler")
    if scheduler is None:
        return jsonify({"error": "Scheduler is not configured", "code": "SCHEDULER_UNAVAILABLE"}), 503
    result = scheduler.run_once()
    return jsonify(result.to_dict())
