"""
Risk Appetite Engine - Database Engine & Sessions.

============================================================
PURPOSE
============================================================
SQLAlchemy engine creation, session factories and the
transaction boundaries used by every write path.

- Explicit transaction management
- Rollback on ANY exception
- SQLAlchemy failures surface as PersistenceError
- Business exceptions propagate unchanged

============================================================
"""

import logging
import time
from contextlib import contextmanager
from typing import Callable, Generator, Optional, TypeVar

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from .config import DatabaseConfig, RetryConfig
from .types import PersistenceError


logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================
# DECLARATIVE BASE
# =============================================================

Base = declarative_base()


# =============================================================
# DATABASE ENGINE
# =============================================================

def create_database_engine(config: Optional[DatabaseConfig] = None) -> Engine:
    """
    Create SQLAlchemy engine with connection pooling.

    SQLite URLs (tests, local runs) get a pool suited to SQLite:
    a single shared connection for in-memory databases.

    Args:
        config: Database configuration (defaults to DatabaseConfig())

    Returns:
        SQLAlchemy Engine
    """
    config = config or DatabaseConfig()
    url = config.url

    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    if url.startswith("sqlite"):
        options = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url:
            options["poolclass"] = StaticPool
        engine = create_engine(url, echo=config.echo, future=True, **options)
    else:
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_timeout=config.pool_timeout,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
            echo=config.echo,
            future=True,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to an engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        PersistenceError: If table creation fails
    """
    from . import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Appetite engine tables created")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise PersistenceError(f"Table creation failed: {e}", cause=e) from e


def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        PersistenceError: If connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully")
        return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise PersistenceError(
            f"Cannot connect to database: {e}", is_retryable=True, cause=e
        ) from e


# =============================================================
# ERROR TRANSLATION
# =============================================================

def is_transient(error: SQLAlchemyError) -> bool:
    """Network drops, lock timeouts and similar retryable failures."""
    if isinstance(error, OperationalError):
        return True
    if isinstance(error, DBAPIError) and error.connection_invalidated:
        return True
    return False


def to_persistence_error(error: SQLAlchemyError, action: str) -> PersistenceError:
    return PersistenceError(
        f"{action} failed: {error}",
        is_retryable=is_transient(error),
        cause=error,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================

@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Read-only session with automatic cleanup.

    Rolls back on exception. SQLAlchemy failures are re-raised as
    PersistenceError; everything else propagates unchanged.
    """
    session = factory()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(f"Database error, rolling back: {e}")
        session.rollback()
        raise to_persistence_error(e, "Read") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Explicit transaction boundary.

    Commits only if no exception occurs. Rolls back on ANY
    exception.

    Usage:
        with transaction_scope(factory) as session:
            repository = AppetiteRepository(session)
            ...
    """
    session = factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise to_persistence_error(e, "Transaction") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def call_with_read_retry(
    operation: Callable[[], T],
    retry: RetryConfig,
    description: str = "read",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run an idempotent read with bounded exponential backoff.

    Only transient PersistenceErrors are retried. Never use this
    for ledger writes.

    Args:
        operation: Zero-argument callable opening its own session
        retry: Retry policy
        description: Used in log messages
        sleep: Injectable for tests
    """
    attempt = 1
    while True:
        try:
            return operation()
        except PersistenceError as e:
            if not e.is_retryable or attempt >= retry.max_attempts:
                raise
            delay = retry.delay_for(attempt)
            logger.warning(
                f"Transient failure during {description} "
                f"(attempt {attempt}/{retry.max_attempts}), retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
            attempt += 1
