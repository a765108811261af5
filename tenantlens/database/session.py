"""
Database Session Management

Handles engine creation, session lifecycle and table initialization.
Works against PostgreSQL (DATABASE_URL) or a local SQLite file.

Unlike a module-level engine, a Database is constructed explicitly and
passed to whoever needs it, so tests can run several side by side.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional, Sequence

from sqlalchemy import create_engine, event, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from tenantlens.utils.config import Settings, get_settings
from .models import Base

logger = logging.getLogger(__name__)


# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def get_database_url(settings: Optional[Settings] = None) -> str:
    """
    Get database URL from settings.

    Priority:
    1. DATABASE_URL
    2. SQLite file at SQLITE_PATH
    """
    settings = settings or get_settings()
    url = settings.DATABASE_URL

    if url:
        # Heroku-style URLs use postgres:// but SQLAlchemy needs postgresql://
        if url.startswith("postgres://"):
            url = url.replace("postgres://", "postgresql://", 1)
        logger.info("Using database from DATABASE_URL")
        return url

    logger.info(f"No DATABASE_URL found, using SQLite: {settings.SQLITE_PATH}")
    return f"sqlite:///{settings.SQLITE_PATH}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create database engine with appropriate settings.

    PostgreSQL: Connection pooling, pre-ping
    SQLite: Cross-thread access (storage calls run in worker threads)
    """
    if url.startswith("postgresql"):
        engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=echo,
        )
        logger.info("Created PostgreSQL engine with connection pooling")
        return engine

    in_memory = url in ("sqlite://", "sqlite:///:memory:")
    kwargs = {"poolclass": StaticPool} if in_memory else {}
    engine = create_engine(
        url,
        connect_args={"check_same_thread": False, "timeout": 30},
        echo=echo,
        **kwargs,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    logger.info("Created SQLite engine")
    return engine


# =============================================================================
# DATABASE
# =============================================================================

class Database:
    """
    Owns one engine and its session factory.

    Usage:
        db = Database("sqlite:///tenantlens.db")
        db.open()

        with db.session() as session:
            session.query(CacheEntry).count()

        db.close()
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        settings = get_settings() if url is None or echo is None else None
        self.url = url or get_database_url(settings)
        self.echo = settings.SQL_DEBUG if echo is None else echo
        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open")
        return self._engine

    def open(self) -> None:
        """Create the engine and all tables. Idempotent."""
        if self._engine is not None:
            return

        self._engine = create_db_engine(self.url, echo=self.echo)
        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,  # Don't expire objects after commit
        )

        Base.metadata.create_all(bind=self._engine)
        logger.info("Database tables created/verified")

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database closed")

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Transactional session scope.

        Commits at the end of the block, rolls back on exception.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is not open")

        db = self._session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def check_connection(self) -> bool:
        """
        Check if database connection is working.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            return False


# =============================================================================
# UPSERT
# =============================================================================

_INSERT_BY_DIALECT = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def upsert(
    session: Session,
    model,
    values: Dict[str, Any],
    update_columns: Sequence[str],
    update_extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    INSERT ... ON CONFLICT (primary key) DO UPDATE for one row.

    A single statement, so concurrent writers of the same key never race
    between a read and an insert.

    Args:
        session: Open session (the statement joins its transaction)
        model: Mapped class whose primary key is the conflict target
        values: Column values for the new row
        update_columns: Columns copied from the new row on conflict
        update_extra: Extra SET expressions on conflict (may reference the
            existing row, e.g. Model.version + 1)
    """
    dialect = session.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise NotImplementedError(f"Upsert is not supported on {dialect}")

    stmt = insert(model).values(**values)
    set_ = {name: stmt.excluded[name] for name in update_columns}
    set_.update(update_extra or {})
    conflict_target = [column.name for column in model.__table__.primary_key.columns]

    session.execute(stmt.on_conflict_do_update(index_elements=conflict_target, set_=set_))
