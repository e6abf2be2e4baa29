import logging
import os
import time
from collections.abc import Callable
from datetime import datetime, timezone
from typing import TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from .errors import TransactionConflict

logger = logging.getLogger("chipbank.db")

T = TypeVar("T")

TX_MAX_ATTEMPTS = max(1, int(os.environ.get("TX_MAX_ATTEMPTS", "3")))
TX_RETRY_BACKOFF = float(os.environ.get("TX_RETRY_BACKOFF", "0.05"))

# serialization_failure, deadlock_detected
RETRYABLE_SQLSTATES = {"40001", "40P01"}


def normalize_database_url(value: str) -> str:
    """
    Render commonly provides Postgres URLs as `postgres://...` or `postgresql://...`.

    SQLAlchemy defaults `postgresql://` to the psycopg2 driver when no driver is specified.
    This app uses psycopg v3 (`psycopg`), so normalize to `postgresql+psycopg://...`.
    """

    url = value.strip()
    if url.startswith("postgresql+psycopg://"):
        return url
    if url.startswith("postgres://"):
        return "postgresql+psycopg://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]
    return url


def _enable_sqlite_immediate_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN until the first write, which lets two readers race
    # on the same balance. BEGIN IMMEDIATE takes the write lock up front.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str) -> Engine:
    url = normalize_database_url(url)
    if url.startswith("sqlite"):
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_immediate_transactions(engine)
        return engine
    return create_engine(url, pool_pre_ping=True, isolation_level="SERIALIZABLE")


DATABASE_URL = normalize_database_url(os.environ["DATABASE_URL"])

engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    """Naive UTC timestamp; every stored datetime and calendar-day check uses UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def is_serialization_failure(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate in RETRYABLE_SQLSTATES:
        return True
    if isinstance(exc, OperationalError) and "database is locked" in str(orig):
        return True
    return False


def run_in_transaction(
    session_factory: Callable[[], Session],
    work: Callable[[Session], T],
    attempts: int = TX_MAX_ATTEMPTS,
    backoff: float = TX_RETRY_BACKOFF,
) -> T:
    """Run ``work`` inside one transaction, retrying serialization conflicts.

    ``work`` receives the session with a transaction already open and must
    take every row lock it needs through that session. Any exception raised
    by ``work`` rolls the transaction back. Only storage-level conflicts are
    retried; ledger errors propagate on the first attempt.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            with session_factory() as db:
                with db.begin():
                    return work(db)
        except DBAPIError as exc:
            if not is_serialization_failure(exc):
                raise
            if attempt >= attempts:
                logger.warning("Transaction conflict persisted after %d attempts", attempts)
                raise TransactionConflict() from exc
            logger.info("Serialization conflict on attempt %d/%d, retrying", attempt, attempts)
        time.sleep(max(0.0, backoff * attempt))
