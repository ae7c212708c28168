"""
Database engine, session factory and shared column types
"""
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlalchemy import DateTime, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.orm.exc import StaleDataError
from sqlalchemy.types import TypeDecorator

from srs.core.config import settings
from srs.core.exceptions import ConcurrencyError

Base = declarative_base()


def utcnow() -> datetime:
    """Timezone-aware current time in UTC"""
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always hands back aware UTC datetimes.

    SQLite drops tzinfo on the way out, PostgreSQL keeps it; normalising
    here keeps due-date comparisons valid on both.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def build_engine(url: Optional[str] = None, **kwargs) -> Engine:
    """Create an engine for ``url`` (defaults to settings.DATABASE_URL)"""
    return create_engine(
        url or settings.DATABASE_URL,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
        **kwargs,
    )


_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autoflush=False, autocommit=False, expire_on_commit=False)


def get_engine() -> Engine:
    """Lazily create the process-wide engine"""
    global _engine
    if _engine is None:
        _engine = build_engine()
        SessionLocal.configure(bind=_engine)
    return _engine


def get_session_factory() -> sessionmaker:
    """Session factory bound to the process-wide engine"""
    get_engine()
    return SessionLocal


@contextmanager
def session_scope(factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """
    Transactional scope: commit on success, roll back on any error.

    Args:
        factory: Session factory (defaults to the process-wide one)
    """
    factory = factory or get_session_factory()
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Optional[Engine] = None) -> None:
    """Create all tables (development and tests; production uses migrations)"""
    import srs.models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


# PostgreSQL: lock_not_available, serialization_failure, deadlock_detected
_LOCK_PGCODES = {"55P03", "40001", "40P01"}
_LOCK_MESSAGES = ("database is locked", "could not obtain lock", "deadlock detected")


def is_lock_conflict(error: OperationalError) -> bool:
    """True when ``error`` is a lock timeout / serialization failure"""
    if getattr(error.orig, "pgcode", None) in _LOCK_PGCODES:
        return True
    message = str(error.orig).lower()
    return any(m in message for m in _LOCK_MESSAGES)


@contextmanager
def translate_conflicts(what: str) -> Iterator[None]:
    """Turn version mismatches and lock conflicts on ``what`` into ConcurrencyError"""
    try:
        yield
    except StaleDataError as e:
        raise ConcurrencyError(f"Concurrent modification of {what}") from e
    except OperationalError as e:
        if is_lock_conflict(e):
            raise ConcurrencyError(f"Could not lock {what}") from e
        raise
