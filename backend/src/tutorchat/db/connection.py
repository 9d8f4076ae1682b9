"""
Database connection management for TutorChat.

Provides database session management, connection handling, and transaction support.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool

from tutorchat.config import settings
from tutorchat.models.db import Base

logger = logging.getLogger(__name__)

if settings.database_url.startswith("sqlite"):
    from sqlalchemy import JSON, event
    from sqlalchemy.dialects import postgresql

    engine = create_engine(
        settings.database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        pool_pre_ping=True,
    )

    # Replace JSONB with JSON for SQLite compatibility
    @event.listens_for(Base.metadata, "before_create")
    def _set_json_type(target, connection, **kw):  # pragma: no cover - compat hook
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, postgresql.JSONB):
                    column.type = JSON()

else:
    # Each API worker process gets its own pool.
    # Total connections = workers x (pool_size + max_overflow)
    engine = create_engine(
        settings.database_url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_pool_max_overflow,
        pool_pre_ping=True,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=settings.db_pool_recycle,
    )

# Job worker engine with NullPool so long-running jobs never hold pooled
# connections that API requests are waiting for.
if settings.database_url.startswith("sqlite"):
    background_engine = engine
else:
    background_engine = create_engine(
        settings.database_url,
        echo=False,
        poolclass=NullPool,
    )

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

BackgroundSessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=background_engine,
)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for FastAPI to get database sessions with automatic cleanup.

    Yields:
        Session: A SQLAlchemy session

    Example (FastAPI):
        >>> @router.get("/threads")
        >>> def list_threads(session: Session = Depends(get_db)):
        >>>     return session.query(ChatThread).all()
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
def db_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions with automatic cleanup.

    Uses the pooled connection engine - suitable for API requests and CLI commands.

    Yields:
        Session: A SQLAlchemy session
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
def background_session() -> Generator[Session, None, None]:
    """
    Context manager for job worker database sessions.

    Uses the NullPool engine - creates a fresh connection each time, so jobs
    that stream model output for minutes do not starve the API pool.

    Yields:
        Session: A SQLAlchemy session

    Example:
        >>> with background_session() as session:
        >>>     queue = JobQueue(session)
        >>>     job = queue.claim_next(["chat_maintain"])
    """
    session = BackgroundSessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def transaction(session: Session) -> Generator[Session, None, None]:
    """
    Run a block atomically inside an existing session.

    Uses a SAVEPOINT so the block can be rolled back without discarding the
    caller's outer transaction.

    Yields:
        Session: The same session

    Example:
        >>> with transaction(session):
        >>>     session.add(parent)
        >>>     repo.set_parent(child_ids, parent.id)
    """
    with session.begin_nested():
        yield session


def init_db() -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is working.

    Returns:
        bool: True if connection successful, False otherwise
    """
    try:
        with db_session() as session:
            session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
