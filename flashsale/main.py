# flashsale/main.py
import logging
import time

from flask import Flask, request, jsonify, g

from flashsale.config import Config
from flashsale.clock import SystemClock
from flashsale.database import close_db, engine
from flashsale.models import Base
from flashsale.blueprints.flash_sales import flash_sales_bp
from flashsale.events import FlashSaleTransitionEvent, get_event_publisher
from flashsale.observability import (
    configure_logging,
    increment_counter,
    observe_latency,
    get_metrics_snapshot,
    check_database_health,
    check_scheduler_health,
)
from flashsale.observability.logging_config import ensure_request_id
from flashsale.services.scheduler import FlashSaleScheduler

app = Flask(__name__)
Config.configure_app(app)
configure_logging(app)
app.register_blueprint(flash_sales_bp)

logger = logging.getLogger(__name__)

# Initialize database tables
def init_database():
    """Initialize database tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables initialized successfully")
    except Exception as e:
        logger.exception("Error initializing database: %s", e)

# Initialize database on startup
init_database()


def log_transition(event: FlashSaleTransitionEvent) -> None:
    logger.info(
        "Flash sale %s is now %s",
        event.flash_sale_id,
        event.to_status,
        extra={"event": event.name, "released_reservations": event.released_reservations},
    )


publisher = get_event_publisher()
publisher.subscribe(log_transition)

clock = SystemClock()
scheduler = FlashSaleScheduler(clock=clock, publisher=publisher)

app.extensions["flash_sale_clock"] = clock
app.extensions["flash_sale_publisher"] = publisher
app.extensions["flash_sale_scheduler"] = scheduler


def start_scheduler() -> FlashSaleScheduler:
    """Start the background scheduler unless disabled by configuration."""
    if not app.config.get("FLASH_SALE_SCHEDULER_ENABLED"):
        logger.info("Flash sale scheduler disabled by configuration")
        return scheduler
    scheduler.start()
    return scheduler


@app.before_request
def before_request_logging():
    g.request_id = ensure_request_id()
    if not app.config.get("OBSERVABILITY_ENABLED"):
        return
    g.request_started_at = time.perf_counter()
    increment_counter(
        "http_requests_total",
        labels={
            "method": request.method,
            "endpoint": request.endpoint or request.path,
        },
    )

@app.after_request
def after_request_logging(response):
    response.headers[Config.REQUEST_ID_HEADER] = getattr(g, 'request_id', '') or ''
    started = getattr(g, 'request_started_at', None)
    if started is not None:
        duration_ms = (time.perf_counter() - started) * 1000
        observe_latency(
            "http_request_latency_ms",
            duration_ms,
            labels={
                "method": request.method,
                "endpoint": request.endpoint or request.path,
                "status": str(response.status_code),
            },
        )
    if response.status_code >= 500:
        if app.config.get("OBSERVABILITY_ENABLED"):
            increment_counter(
                "http_errors_total",
                labels={
                    "method": request.method,
                    "endpoint": request.endpoint or request.path,
                    "status": str(response.status_code),
                },
            )
        logger.error("Request finished with error status %s", response.status_code)
    else:
        logger.info("Request finished", extra={"status_code": response.status_code})
    return response

@app.teardown_appcontext
def teardown_db(exception):
    close_db(exception)


@app.route('/health', methods=['GET'])
def health():
    db_status = check_database_health()
    active_scheduler = app.extensions.get("flash_sale_scheduler") if app.config.get("FLASH_SALE_SCHEDULER_ENABLED") else None
    scheduler_status = check_scheduler_health(active_scheduler)
    overall = "UP" if db_status.get("status") == "UP" else "DEGRADED"
    status_code = 200 if overall == "UP" else 503
    return jsonify({
        "service": Config.APP_NAME,
        "status": overall,
        "components": {
            "database": db_status,
            "scheduler": scheduler_status,
        }
    }), status_code

@app.route('/admin/metrics', methods=['GET'])
def admin_metrics():
    return jsonify(get_metrics_snapshot())
