import threading
import time
from datetime import timedelta

from flashsale.database import SessionLocal
from flashsale.models import FlashSale, FlashSaleItem, FlashSaleStatus, ReservationStatus
from flashsale.observability import check_scheduler_health
from flashsale.observability.metrics import get_counter_value, get_metrics_snapshot
from flashsale.services.scheduler import FlashSaleScheduler


def _scheduler(clock, publisher, **kwargs):
    return FlashSaleScheduler(session_factory=SessionLocal, clock=clock, publisher=publisher, **kwargs)


def test_tick_activates_scheduled_campaign(db_session, clock, publisher, make_flash_sale, make_item):
    # Scenario C
    flash_sale = make_flash_sale(
        status=FlashSaleStatus.SCHEDULED,
        start_offset=timedelta(seconds=-1),
        end_offset=timedelta(seconds=3600),
    )
    item = make_item(flash_sale, total_quantity=25)

    result = _scheduler(clock, publisher).run_once()

    assert (result.activated, result.closed, result.cleaned) == (1, 0, 0)
    assert result.timestamp == clock.now()
    db_session.expire_all()
    assert db_session.get(FlashSale, flash_sale.flashSaleID).status == FlashSaleStatus.ACTIVE
    assert db_session.get(FlashSaleItem, item.flashSaleItemID).available_quantity == 25


def test_tick_closes_campaign_and_returns_held_stock(
    db_session, clock, publisher, reservation_service, make_flash_sale, make_item
):
    # Scenario D
    flash_sale = make_flash_sale(end_offset=timedelta(seconds=30))
    item = make_item(flash_sale, total_quantity=10)
    reservation = reservation_service.reserve(item.flashSaleItemID, "holder-1", 2)
    clock.advance(seconds=31)

    result = _scheduler(clock, publisher).run_once()

    assert result.closed == 1
    assert result.errors == []
    db_session.expire_all()
    assert db_session.get(FlashSale, flash_sale.flashSaleID).status == FlashSaleStatus.ENDED
    assert reservation_service.get_reservation(reservation.reservationID).status == ReservationStatus.RELEASED
    assert db_session.get(FlashSaleItem, item.flashSaleItemID).reserved_quantity == 0


def test_tick_runs_activation_closing_and_cleanup_in_one_pass(
    clock, publisher, reservation_service, make_flash_sale, make_item
):
    running = make_flash_sale(end_offset=timedelta(hours=2))
    item = make_item(running)
    reservation_service.reserve(item.flashSaleItemID, "holder-1", 1, ttl=60)
    make_flash_sale(status=FlashSaleStatus.SCHEDULED, start_offset=timedelta(minutes=1),
                    end_offset=timedelta(hours=3))
    make_flash_sale(end_offset=timedelta(minutes=1))
    clock.advance(minutes=2)

    result = _scheduler(clock, publisher).run_once()

    assert (result.activated, result.closed, result.cleaned) == (1, 1, 1)
    assert get_counter_value("flash_sale_scheduler_ticks_total", labels={"outcome": "ok"}) == 1
    assert get_metrics_snapshot()["histograms"]["flash_sale_scheduler_tick_ms"][0]["stats"]["count"] == 1


def test_second_tick_without_elapsed_time_changes_nothing(clock, publisher, make_flash_sale):
    make_flash_sale(status=FlashSaleStatus.SCHEDULED, start_offset=timedelta(seconds=-1))
    scheduler = _scheduler(clock, publisher)

    scheduler.run_once()
    second = scheduler.run_once()

    assert (second.activated, second.closed, second.cleaned) == (0, 0, 0)


def test_background_loop_ticks_immediately_and_stops(db_session, clock, publisher, make_flash_sale):
    flash_sale = make_flash_sale(status=FlashSaleStatus.SCHEDULED, start_offset=timedelta(seconds=-1))
    scheduler = _scheduler(clock, publisher, interval_seconds=60)

    scheduler.start()
    try:
        deadline = time.monotonic() + 10
        while scheduler.last_tick_at is None and time.monotonic() < deadline:
            time.sleep(0.05)
        assert scheduler.is_running
        assert check_scheduler_health(scheduler, now=clock.now())["status"] == "UP"
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.is_running
    assert scheduler.last_result.activated == 1
    db_session.expire_all()
    assert db_session.get(FlashSale, flash_sale.flashSaleID).status == FlashSaleStatus.ACTIVE


def test_failing_tick_does_not_stop_the_loop(clock, publisher, monkeypatch):
    scheduler = _scheduler(clock, publisher, interval_seconds=0.01)
    calls = []
    ticked_again = threading.Event()

    def exploding_run_once():
        calls.append(1)
        if len(calls) >= 3:
            ticked_again.set()
        raise RuntimeError("database went away")

    monkeypatch.setattr(scheduler, "run_once", exploding_run_once)
    scheduler.start()
    try:
        assert ticked_again.wait(timeout=5)
    finally:
        scheduler.stop(timeout=5)

    assert get_counter_value("flash_sale_scheduler_ticks_total", labels={"outcome": "error"}) >= 3


def test_scheduler_health_reports_stale_and_disabled(clock, publisher):
    scheduler = _scheduler(clock, publisher, interval_seconds=60)

    assert check_scheduler_health(None)["status"] == "DISABLED"
    assert check_scheduler_health(scheduler)["status"] == "DOWN"
