import os
from typing import Any, Dict, Generator, Tuple

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, URL, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

DEFAULT_DATABASE_URL = "sqlite:///./plan_credits.db"


def _sqlite_busy_timeout() -> float:
    # Seconds a ledger writer waits on another writer's lock before failing.
    raw_value = os.getenv("SQLITE_BUSY_TIMEOUT")
    try:
        return max(float(raw_value), 0.0) if raw_value else 15.0
    except ValueError:
        return 15.0


def _resolve_database_url(raw_url: str | None) -> Tuple[URL, Dict[str, Any]]:
    """Turn DATABASE_URL into an engine URL plus driver connect arguments.

    SQLite (the default) is shared between request threads and waits on
    concurrent ledger writes. Postgres URLs move to the psycopg driver and get
    sslmode=require unless they set it.
    """
    url = make_url(raw_url or DEFAULT_DATABASE_URL)

    if url.drivername.startswith("sqlite"):
        return url, {"check_same_thread": False, "timeout": _sqlite_busy_timeout()}

    if url.drivername in {"postgres", "postgresql"}:
        url = url.set(drivername="postgresql+psycopg")

    if url.drivername.startswith("postgresql") and "sslmode" not in url.query:
        url = url.update_query_dict({"sslmode": "require"})

    return url, {}


def _create_engine() -> Engine:
    url, connect_args = _resolve_database_url(os.getenv("DATABASE_URL"))
    return create_engine(
        url,
        future=True,
        pool_pre_ping=True,
        echo=os.getenv("DATABASE_ECHO", "").lower() in {"1", "true", "yes"},
        connect_args=connect_args,
    )


engine = _create_engine()
# Ledger results are read after commit, so loaded rows stay usable.
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False, future=True)
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Request-scoped session for FastAPI dependencies."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
