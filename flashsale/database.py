# flashsale/database.py
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker, declarative_base
from flask import g, has_app_context

from flashsale.config import Config

engine_kwargs = {
    "echo": Config.SQL_ECHO,
    "future": True,
    "pool_pre_ping": True,
}

if Config.DATABASE_URL.startswith("sqlite"):
    # Checkout requests and the scheduler thread share the pool
    engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
else:
    engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
    engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW

engine = create_engine(Config.DATABASE_URL, **engine_kwargs)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()

_SESSION_KEY = "flash_sale_db"


def get_db() -> Session:
    """Session for the current app context, opened on first use."""
    if _SESSION_KEY not in g:
        setattr(g, _SESSION_KEY, SessionLocal())
    return g.get(_SESSION_KEY)


def close_db(exception=None) -> None:
    """Teardown hook; closing rolls back whatever a failed request left open."""
    if not has_app_context():
        return
    session = g.pop(_SESSION_KEY, None)
    if session is not None:
        session.close()
