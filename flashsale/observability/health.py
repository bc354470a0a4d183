from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from flashsale.database import engine


def check_database_health() -> Dict[str, str]:
    """Attempt a lightweight DB query to ensure connectivity."""
    try:
        with engine.connect() as connection:
            connection.execute(text("SELECT 1"))
        return {"status": "UP"}
    except OperationalError as exc:
        return {"status": "DOWN", "detail": str(exc)}


def check_scheduler_health(scheduler: Optional[Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Report whether the flash sale scheduler has ticked within two intervals."""
    if scheduler is None:
        return {"status": "DISABLED"}

    last_tick = scheduler.last_tick_at
    if not scheduler.is_running:
        return {"status": "DOWN", "last_tick_at": last_tick.isoformat() if last_tick else None}

    now = now or datetime.now(timezone.utc)
    if last_tick is None or now - last_tick > timedelta(seconds=2 * scheduler.interval_seconds):
        return {"status": "STALE", "last_tick_at": last_tick.isoformat() if last_tick else None}
    return {"status": "UP", "last_tick_at": last_tick.isoformat()}
