import datetime
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text, event
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from chatdesk.core.exceptions import ConstraintViolationError, StorageUnavailableError

logger = structlog.get_logger()


class Base(DeclarativeBase):
    pass


# ── Profiles ─────────────────────────────────────────────────────────────────


class ProfileRow(Base):
    __tablename__ = "profiles"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255))
    api_endpoint: Mapped[str] = mapped_column(String(2000))
    model_name: Mapped[str] = mapped_column(String(255))
    temperature: Mapped[float] = mapped_column(Float)
    max_tokens: Mapped[int] = mapped_column(Integer)
    top_p: Mapped[float] = mapped_column(Float)
    frequency_penalty: Mapped[float] = mapped_column(Float)
    presence_penalty: Mapped[float] = mapped_column(Float)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)


# ── Conversations ────────────────────────────────────────────────────────────


class ConversationRow(Base):
    __tablename__ = "conversations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(500))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime)
    updated_at: Mapped[datetime.datetime] = mapped_column(DateTime, index=True)
    profile_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("profiles.id", onupdate="CASCADE", ondelete="SET NULL"),
        nullable=True,
    )


class MessageRow(Base):
    __tablename__ = "messages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    conversation_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("conversations.id", onupdate="CASCADE", ondelete="CASCADE"),
        index=True,
    )
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime)


# ── Engine & Session ──────────────────────────────────────────────────────────


def _casefold(value: str | None) -> str | None:
    return value.casefold() if value is not None else None


def _configure_sqlite_connection(dbapi_connection, connection_record) -> None:
    """Foreign key enforcement plus a Unicode-aware ``casefold()`` SQL function.

    SQLite's built-in ``lower()`` only folds ASCII.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    dbapi_connection.create_function("casefold", 1, _casefold, deterministic=True)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; SQLite connections get foreign keys and ``casefold()``."""
    engine = create_async_engine(url, echo=echo)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _configure_sqlite_connection)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def utcnow() -> datetime.datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


@contextmanager
def translate_db_errors(operation: str) -> Iterator[None]:
    """Re-raise SQLAlchemy failures as storage errors of the core taxonomy."""
    try:
        yield
    except IntegrityError as e:
        logger.warning("db_constraint_violation", operation=operation, error=str(e.orig))
        raise ConstraintViolationError(
            f"{operation} violated a database constraint: {e.orig}",
            details={"operation": operation},
        ) from e
    except DBAPIError as e:
        logger.error("db_unavailable", operation=operation, error=str(e.orig))
        raise StorageUnavailableError(
            f"{operation} failed: {e.orig}",
            details={"operation": operation},
        ) from e


async def init_db(engine: AsyncEngine) -> None:
    """Ensure database schema is up to date via Alembic migrations."""
    from chatdesk.core.migrations import ensure_db_migrated

    url = engine.url
    if url.get_backend_name() == "sqlite" and url.database not in (None, "", ":memory:"):
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)

    try:
        await ensure_db_migrated(engine)
    except DBAPIError as e:
        raise StorageUnavailableError(f"Failed to open the conversation store: {e.orig}") from e


async def close_db(engine: AsyncEngine) -> None:
    """Dispose of the engine."""
    await engine.dispose()
