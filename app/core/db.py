import os
import time
from typing import Callable, TypeVar

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = structlog.get_logger()

T = TypeVar("T")

SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL", "").strip()

# Special case for local testing/CI
IS_TEST = os.getenv("PYTEST_CURRENT_TEST") is not None or os.getenv("ENVIRONMENT") == "testing"

if (not SQLALCHEMY_DATABASE_URL or not SQLALCHEMY_DATABASE_URL.startswith("postgresql")) and not IS_TEST:
    raise RuntimeError(
        "CRITICAL: DATABASE_URL must be a valid PostgreSQL connection string. "
        "SQLite is only supported for the test suite."
    )

if IS_TEST and not SQLALCHEMY_DATABASE_URL:
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test_ledger.db"

if SQLALCHEMY_DATABASE_URL.startswith("postgresql"):
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        pool_size=20,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,
        pool_pre_ping=True,
    )
else:
    # SQLite for testing
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def _sqlite_disable_pysqlite_begin(dbapi_connection, connection_record):
        # Let SQLAlchemy emit BEGIN itself (see _sqlite_begin_immediate).
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _sqlite_begin_immediate(conn):
        # Take the write lock up front so concurrent writers queue instead of
        # both reading the same balance.
        conn.exec_driver_sql("BEGIN IMMEDIATE")

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def run_migrations():
    """Bootstrap the database schema. In production, use Alembic instead."""
    Base.metadata.create_all(bind=engine)


def run_in_transaction(work: Callable[[Session], T], retries: int | None = None) -> T:
    """Run ``work(session)`` as one atomic unit.

    Commits on success and rolls back on any exception, so a failure leaves
    every touched row unchanged. Serialization failures and lock timeouts
    surface as ``OperationalError``; the whole unit is retried for those.
    """
    if retries is None:
        from config.settings import get_settings
        retries = get_settings().transaction_max_retries

    attempt = 0
    while True:
        db = SessionLocal()
        try:
            result = work(db)
            db.commit()
            return result
        except OperationalError as exc:
            db.rollback()
            attempt += 1
            if attempt > retries:
                raise
            logger.warning("db.transaction.retry", attempt=attempt, error=str(exc.orig))
            time.sleep(0.05 * attempt)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


# FastAPI Dependency
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
