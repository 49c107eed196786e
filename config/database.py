"""
config/database.py
Async SQLAlchemy engine, session factory, and base model.
Uses asyncpg driver for PostgreSQL in production; any async driver works
(the test-suite runs on aiosqlite).
"""

from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from config.settings import settings


# ── Engine ────────────────────────────────────────────────────
_engine_kwargs = {"echo": settings.DEBUG}   # Log SQL in debug mode
if settings.is_postgres:
    _engine_kwargs.update(
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        pool_timeout=settings.DATABASE_POOL_TIMEOUT,
        pool_pre_ping=True,          # Detect stale connections
        pool_recycle=3600,           # Recycle connections every hour
    )

engine = create_async_engine(settings.DATABASE_URL, **_engine_kwargs)

# ── Session Factory ───────────────────────────────────────────
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,      # Don't expire after commit (async-safe)
    autoflush=False,
)


# ── Base Model ────────────────────────────────────────────────
class Base(DeclarativeBase):
    """All ORM models inherit from this."""
    pass


# ── Dependency ────────────────────────────────────────────────
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency: yields an async database session.
    Auto-commits on success, rolls back on error.

    Usage:
        @router.get("/bookings")
        async def list_bookings(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# Store-level guard against double booking. GiST needs btree_gist for the
# uuid equality part of the constraint.
BOOKING_OVERLAP_CONSTRAINT = "ex_bookings_teacher_no_overlap"

_POSTGRES_DDL = (
    'CREATE EXTENSION IF NOT EXISTS btree_gist;',
    f"""
    DO $$
    BEGIN
        IF NOT EXISTS (
            SELECT 1 FROM pg_constraint WHERE conname = '{BOOKING_OVERLAP_CONSTRAINT}'
        ) THEN
            ALTER TABLE bookings ADD CONSTRAINT {BOOKING_OVERLAP_CONSTRAINT}
                EXCLUDE USING gist (
                    teacher_id WITH =,
                    tstzrange(scheduled_at, ends_at, '[)') WITH &&
                ) WHERE (status = 'SCHEDULED');
        END IF;
    END
    $$;
    """,
)


async def init_db() -> None:
    """Create all tables. Run during app startup."""
    # Make sure every model is registered on Base.metadata
    import shared.models.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if conn.dialect.name == "postgresql":
            for statement in _POSTGRES_DDL:
                await conn.execute(text(statement))


async def close_db() -> None:
    """Dispose engine. Run during app shutdown."""
    await engine.dispose()
