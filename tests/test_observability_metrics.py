import json
import logging

from flashsale.observability.logging_config import JsonFormatter
from flashsale.observability.metrics import (
    increment_counter,
    set_gauge,
    observe_latency,
    timed,
    record_event,
    get_counter_value,
    get_metrics_snapshot,
    reset_metrics,
)


def test_metrics_snapshot_accumulates_counts():
    reset_metrics()
    increment_counter("flash_sale_reservations_total", labels={"outcome": "held"})
    increment_counter("flash_sale_reservations_total", amount=2, labels={"outcome": "expired"})
    set_gauge("flash_sale_scheduler_last_tick_errors", 5)
    observe_latency("http_request_latency_ms", 100, labels={"endpoint": "/health"})
    observe_latency("http_request_latency_ms", 50, labels={"endpoint": "/health"})

    snapshot = get_metrics_snapshot()
    counters = snapshot["counters"]["flash_sale_reservations_total"]
    assert len(counters) == 2

    gauges = snapshot["gauges"]["flash_sale_scheduler_last_tick_errors"]
    assert gauges[0]["value"] == 5

    hist = snapshot["histograms"]["http_request_latency_ms"][0]["stats"]
    assert hist["count"] == 2
    assert hist["max"] == 100
    assert hist["avg"] == 75


def test_counter_lookup_is_label_sensitive():
    increment_counter("flash_sale_transitions_total", labels={"from": "scheduled", "to": "active"})

    assert get_counter_value("flash_sale_transitions_total", labels={"to": "active", "from": "scheduled"}) == 1
    assert get_counter_value("flash_sale_transitions_total", labels={"from": "active", "to": "ended"}) == 0


def test_timed_records_latency_even_on_error():
    try:
        with timed("flash_sale_scheduler_tick_ms"):
            raise ValueError("boom")
    except ValueError:
        pass

    stats = get_metrics_snapshot()["histograms"]["flash_sale_scheduler_tick_ms"][0]["stats"]
    assert stats["count"] == 1


def test_recent_events_are_bounded():
    for index in range(250):
        record_event("flash_sale.activated", {"flash_sale_id": index})

    events = get_metrics_snapshot()["events"]
    assert len(events) == 200
    assert events[-1]["payload"] == {"flash_sale_id": 249}


def test_json_formatter_includes_extra_fields():
    record = logging.makeLogRecord({
        "name": "flashsale.services.reservation_service",
        "levelname": "INFO",
        "msg": "Reserved %d of flash sale item %s",
        "args": (2, 7),
        "reservation_id": 11,
    })

    payload = json.loads(JsonFormatter().format(record))

    assert payload["message"] == "Reserved 2 of flash sale item 7"
    assert payload["extra"] == {"reservation_id": 11}
    assert payload["holder_id"] is None
