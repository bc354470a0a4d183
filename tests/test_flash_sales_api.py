"""
Flash sale HTTP API: admin campaign management, storefront reads and the
checkout reservation flow, exercised through the Flask test client.
"""
from datetime import timedelta

from flashsale.models import FlashSaleStatus
from flashsale.observability.metrics import get_metrics_snapshot


def _iso(value):
    return value.isoformat()


def test_health_reports_database_and_scheduler(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.get_json()
    assert body["status"] == "UP"
    assert body["components"]["database"]["status"] == "UP"
    assert body["components"]["scheduler"]["status"] == "DISABLED"
    assert response.headers.get("X-Request-ID")


def test_admin_creates_campaign_and_adds_item(client, clock, sample_product):
    response = client.post("/api/admin/flash-sales", json={
        "name": "Launch Day",
        "start_time": _iso(clock.now() + timedelta(hours=1)),
        "end_time": _iso(clock.now() + timedelta(hours=3)),
    })
    assert response.status_code == 201
    flash_sale = response.get_json()["flash_sale"]
    assert flash_sale["status"] == "scheduled"

    response = client.post(f"/api/admin/flash-sales/{flash_sale['id']}/items", json={
        "product_id": sample_product.productID,
        "sale_price": "799.00",
        "total_quantity": 20,
        "per_user_limit": 2,
    })
    assert response.status_code == 201
    item = response.get_json()["item"]
    assert item["available_quantity"] == 20
    assert item["sale_price"] == 799.0

    listing = client.get("/api/admin/flash-sales?status=scheduled").get_json()
    assert [fs["id"] for fs in listing["flash_sales"]] == [flash_sale["id"]]
    assert listing["pagination"]["total"] == 1


def test_validation_errors_carry_field_details(client, clock):
    response = client.post("/api/admin/flash-sales", json={
        "name": "No end",
        "start_time": _iso(clock.now()),
        "end_time": "tomorrow-ish",
    })

    assert response.status_code == 400
    body = response.get_json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"] == {"end_time": "invalid datetime"}


def test_checkout_flow_reserve_validate_commit(client, sample_item):
    response = client.post(
        f"/api/flash-sale-items/{sample_item.flashSaleItemID}/reservations",
        json={"holder_id": "cust-7", "quantity": 2},
    )
    assert response.status_code == 201
    reservation = response.get_json()["reservation"]
    assert reservation["status"] == "held"
    assert reservation["sale_price"] == 699.0

    validation = client.get(f"/api/reservations/{reservation['id']}/validate").get_json()
    assert validation["valid"] is True

    response = client.post(f"/api/reservations/{reservation['id']}/commit", json={"order_id": "ORD-1001"})
    assert response.status_code == 200
    committed = response.get_json()["reservation"]
    assert committed["status"] == "committed"
    assert committed["order_id"] == "ORD-1001"

    response = client.post(f"/api/reservations/{reservation['id']}/commit", json={})
    assert response.status_code == 409
    assert response.get_json()["code"] == "INVALID_STATE"

    holds = client.get("/api/holders/cust-7/reservations?include_committed=true").get_json()
    assert [r["id"] for r in holds["reservations"]] == [reservation["id"]]


def test_checkout_failures_are_distinguishable(client, make_flash_sale, make_item):
    item = make_item(make_flash_sale(), total_quantity=3, per_user_limit=2)
    url = f"/api/flash-sale-items/{item.flashSaleItemID}/reservations"

    assert client.post(url, json={"holder_id": "a", "quantity": 2}).status_code == 201

    limit = client.post(url, json={"holder_id": "a", "quantity": 1})
    assert limit.status_code == 409
    assert limit.get_json()["code"] == "LIMIT_EXCEEDED"

    stock = client.post(url, json={"holder_id": "b", "quantity": 2})
    assert stock.status_code == 409
    assert stock.get_json()["code"] == "INSUFFICIENT_STOCK"

    zero = client.post(url, json={"holder_id": "b", "quantity": 0})
    assert zero.status_code == 400

    missing = client.post("/api/flash-sale-items/999999/reservations", json={"holder_id": "b", "quantity": 1})
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "NOT_FOUND"


def test_release_is_idempotent_over_http(client, sample_item):
    url = f"/api/flash-sale-items/{sample_item.flashSaleItemID}/reservations"
    reservation_id = client.post(url, json={"holder_id": "cust-1", "quantity": 1}).get_json()["reservation"]["id"]

    first = client.post(f"/api/reservations/{reservation_id}/release")
    second = client.post(f"/api/reservations/{reservation_id}/release")

    assert first.status_code == second.status_code == 200
    assert second.get_json()["reservation"]["status"] == "released"


def test_storefront_sees_items_after_tick(client, make_flash_sale, make_item):
    flash_sale = make_flash_sale(status=FlashSaleStatus.SCHEDULED, start_offset=timedelta(seconds=-1))
    make_item(flash_sale, total_quantity=8)
    flash_sale_id = flash_sale.flashSaleID

    before = client.get(f"/api/flash-sales/{flash_sale_id}/items")
    assert before.status_code == 409

    tick = client.post("/api/ops/flash-sales/tick").get_json()
    assert tick["activated"] == 1

    items = client.get(f"/api/flash-sales/{flash_sale_id}/items").get_json()["items"]
    assert [item["available_quantity"] for item in items] == [8]
    active = client.get("/api/flash-sales/active").get_json()["flash_sales"]
    assert [fs["id"] for fs in active] == [flash_sale_id]


def test_availability_endpoint(client, sample_item):
    response = client.get(
        f"/api/flash-sales/{sample_item.flashSaleID}/products/{sample_item.productID}/availability?quantity=2"
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["available"] is True
    assert body["remaining"] == 10
    assert body["per_user_limit"] == 2


def test_cancel_and_stats(client, sample_item):
    url = f"/api/flash-sale-items/{sample_item.flashSaleItemID}/reservations"
    client.post(url, json={"holder_id": "cust-1", "quantity": 1})

    cancelled = client.post(f"/api/admin/flash-sales/{sample_item.flashSaleID}/cancel")
    assert cancelled.get_json()["flash_sale"]["status"] == "cancelled"

    again = client.post(f"/api/admin/flash-sales/{sample_item.flashSaleID}/cancel")
    assert again.status_code == 409

    stats = client.get(f"/api/admin/flash-sales/{sample_item.flashSaleID}/stats").get_json()["stats"]
    assert stats["reservations"]["released"] == 1
    assert stats["reserved_quantity"] == 0


def test_update_and_delete_item(client, sample_item):
    item_url = f"/api/admin/flash-sale-items/{sample_item.flashSaleItemID}"

    updated = client.put(item_url, json={"total_quantity": 4, "sort_order": 3})
    assert updated.status_code == 200
    assert updated.get_json()["item"]["total_quantity"] == 4

    assert client.delete(item_url).status_code == 200
    assert client.delete(item_url).status_code == 404


def test_metrics_endpoint_counts_requests(client):
    client.get("/api/flash-sales/upcoming")

    snapshot = client.get("/admin/metrics").get_json()

    assert "http_requests_total" in snapshot["counters"]


def test_zero_item_values_are_rejected_not_defaulted(client, active_flash_sale, sample_product):
    url = f"/api/admin/flash-sales/{active_flash_sale.flashSaleID}/items"
    payload = {"product_id": sample_product.productID, "sale_price": "799.00", "total_quantity": 5}

    zero_limit = client.post(url, json={**payload, "per_user_limit": 0})
    assert zero_limit.status_code == 400
    assert zero_limit.get_json()["details"] == {"per_user_limit": "must be >= 1"}

    created = client.post(url, json={**payload, "sort_order": 0})
    assert created.status_code == 201
    assert created.get_json()["item"]["sort_order"] == 0
    assert created.get_json()["item"]["per_user_limit"] == 1


def test_zero_query_values_are_rejected(client, sample_item):
    assert client.get("/api/admin/flash-sales?page=0").status_code == 400
    assert client.get("/api/admin/flash-sales?limit=0").status_code == 400

    availability = client.get(
        f"/api/flash-sales/{sample_item.flashSaleID}/products/{sample_item.productID}/availability?quantity=0"
    )
    assert availability.status_code == 400
    assert availability.get_json()["code"] == "VALIDATION_ERROR"


def test_force_active_is_parsed_strictly(client, clock):
    window = {
        "start_time": _iso(clock.now() - timedelta(minutes=5)),
        "end_time": _iso(clock.now() + timedelta(hours=1)),
    }

    not_forced = client.post("/api/admin/flash-sales", json={"name": "Quiet", "force_active": "false", **window})
    assert not_forced.status_code == 201
    assert not_forced.get_json()["flash_sale"]["status"] == "scheduled"

    forced = client.post("/api/admin/flash-sales", json={"name": "Loud", "force_active": "true", **window})
    assert forced.get_json()["flash_sale"]["status"] == "active"

    garbage = client.post("/api/admin/flash-sales", json={"name": "Maybe", "force_active": "perhaps", **window})
    assert garbage.status_code == 400
    assert garbage.get_json()["details"] == {"force_active": "invalid boolean"}


def test_oversized_reservation_inputs_are_validation_errors(client, sample_item):
    url = f"/api/flash-sale-items/{sample_item.flashSaleItemID}/reservations"

    huge_ttl = client.post(url, json={"holder_id": "cust-1", "quantity": 1, "ttl_seconds": 10**20})
    assert huge_ttl.status_code == 400
    assert huge_ttl.get_json()["code"] == "VALIDATION_ERROR"

    huge_quantity = client.post(url, json={"holder_id": "cust-1", "quantity": 10**30})
    assert huge_quantity.status_code == 400
    assert huge_quantity.get_json()["code"] == "VALIDATION_ERROR"


def test_health_names_the_service(client):
    assert client.get("/health").get_json()["service"] == "Flash Sale Engine"


def test_request_metrics_follow_observability_flag(client, monkeypatch):
    monkeypatch.setitem(client.application.config, "OBSERVABILITY_ENABLED", False)

    response = client.get("/api/flash-sales/upcoming")

    assert response.headers.get("X-Request-ID")
    assert "http_requests_total" not in get_metrics_snapshot()["counters"]
