"""
Database utilities and connection management.

WHAT: SQLAlchemy engine, session factory, and change capture for the feed
WHY: Persist marketplace records and push every committed row change to subscribers
HOW: Sync engine with WAL mode, session events that collect flushed changes
     and publish them to the change feed once the transaction commits
"""

import enum

from sqlalchemy import create_engine, text, event, inspect as sa_inspect
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base
from contextlib import contextmanager
from pathlib import Path

from .config import settings
from .feed import ChangeEvent, change_feed
from ..utils.exceptions import TransientStoreError
from ..utils.logger import get_logger

logger = get_logger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Ensure data directory exists
if _is_sqlite and ":memory:" not in settings.DATABASE_URL:
    data_dir = Path(settings.DATABASE_URL.replace("sqlite:///", "")).parent
    if not data_dir.exists():
        data_dir.mkdir(parents=True, exist_ok=True)

engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=settings.DEBUG,
    future=True
)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    """Enable WAL mode and FK enforcement on SQLite connections."""
    if not _is_sqlite:
        return
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(
    bind=engine,
    expire_on_commit=False,
    autoflush=False,
    autocommit=False
)

Base = declarative_base()


# ========== Change capture ==========

_CHANGES_KEY = "pending_changes"


def _row_snapshot(obj) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return {attr.key: getattr(obj, attr.key) for attr in sa_inspect(obj).mapper.column_attrs}


def _old_snapshot(obj) -> dict:
    """Column values as they were before this flush."""
    state = sa_inspect(obj)
    old = _row_snapshot(obj)
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if not history.has_changes():
            continue
        # a NULL original shows up as an empty deleted list
        value = history.deleted[0] if history.deleted else None
        old[attr.key] = value.value if isinstance(value, enum.Enum) else value
    return old


@event.listens_for(SessionLocal, "after_flush")
def collect_changes(session, flush_context):
    """Record INSERT/UPDATE/DELETE snapshots for publication after commit."""
    changes = session.info.setdefault(_CHANGES_KEY, [])

    for obj in session.new:
        changes.append(ChangeEvent(
            table=obj.__tablename__, operation="INSERT", new=_row_snapshot(obj)
        ))

    for obj in session.dirty:
        if not session.is_modified(obj, include_collections=False):
            continue
        changes.append(ChangeEvent(
            table=obj.__tablename__, operation="UPDATE",
            new=_row_snapshot(obj), old=_old_snapshot(obj)
        ))

    for obj in session.deleted:
        changes.append(ChangeEvent(
            table=obj.__tablename__, operation="DELETE", old=_row_snapshot(obj)
        ))


def record_update(session, table: str, new: dict, old: dict):
    """Queue an UPDATE event for writes issued as SQL statements rather than through the unit of work."""
    session.info.setdefault(_CHANGES_KEY, []).append(
        ChangeEvent(table=table, operation="UPDATE", new=new, old=old)
    )


@event.listens_for(SessionLocal, "after_commit")
def publish_changes(session):
    """Push committed changes to the change feed."""
    changes = session.info.pop(_CHANGES_KEY, [])
    for change in changes:
        change_feed.publish(change)
    if changes:
        logger.debug(f"Published {len(changes)} change events")


@event.listens_for(SessionLocal, "after_rollback")
def discard_changes(session):
    """Rolled-back changes never reach subscribers."""
    session.info.pop(_CHANGES_KEY, None)


# ========== Sessions ==========

@contextmanager
def get_db():
    """
    One unit of work: commit on exit, roll back on any exception.

    Commit is what releases captured row changes to the change feed, so a
    session used outside this helper publishes nothing until it commits.
    """
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def store_session(operation: str):
    """
    Database session whose driver failures surface as TransientStoreError.

    WHAT: get_db() plus error translation at the store boundary
    WHY: Services report one retryable error kind for network/store failures
    HOW: Integrity violations propagate untouched (callers interpret them),
         every other SQLAlchemyError becomes TransientStoreError
    """
    try:
        with get_db() as db:
            yield db
    except IntegrityError:
        raise
    except SQLAlchemyError as e:
        logger.error(f"Store operation '{operation}' failed: {e}")
        raise TransientStoreError(operation, str(e.__class__.__name__)) from e


def ping_database() -> dict:
    """
    Check database connectivity.

    Returns:
        Dict with availability, the backend dialect and the number of marketplace tables
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).scalar_one()
            existing = set(sa_inspect(conn).get_table_names())
            tables = [t for t in Base.metadata.tables if t in existing]
    except SQLAlchemyError as e:
        logger.error(f"Database ping failed: {e}")
        return {"available": False, "dialect": engine.dialect.name, "tables": 0, "error": str(e)}

    return {"available": True, "dialect": engine.dialect.name, "tables": len(tables), "error": None}


def init_db():
    """Initialize database tables."""
    # Register models on Base.metadata
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized")


def close_db():
    """Close database connections."""
    engine.dispose()
    logger.info("Database connections closed")
