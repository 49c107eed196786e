"""
tests/conftest.py
Shared fixtures: a throw-away SQLite database per test, an HTTP client on the
ASGI app with the DB, Redis and side-effect collaborators overridden, and
factories for packages, availability and bookings.
"""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./.pytest-scheduling.db"
os.environ["JWT_SECRET_KEY"] = "test-secret-key"
os.environ["SCHOOL_TIMEZONE"] = "UTC"
os.environ["APP_ENV"] = "test"

import uuid
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config.database import Base, get_db
from config.redis_client import get_redis
from main import app
from services.scheduling.dependencies import get_event_publisher, get_meeting_link_provisioner
from shared.models.models import (
    AvailabilityRule,
    Booking,
    BookingStatus,
    LessonPackage,
    UserRole,
)
from shared.utils.security import create_access_token


# ── Helpers ───────────────────────────────────────────────────

def auth_headers(user_id: uuid.UUID, role: UserRole = UserRole.STUDENT) -> dict:
    token, _ = create_access_token(str(user_id), role.value)
    return {"Authorization": f"Bearer {token}"}


def next_weekday(weekday: int, after: Optional[date] = None) -> date:
    """Next date strictly after `after` (default today) with isoweekday() % 7 == weekday."""
    day = (after or datetime.now(timezone.utc).date()) + timedelta(days=1)
    while day.isoweekday() % 7 != weekday:
        day += timedelta(days=1)
    return day


def at(day: date, hour: int, minute: int = 0) -> datetime:
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


class Clock:
    """Controllable replacement for utcnow()."""

    def __init__(self, current: Optional[datetime] = None):
        self.current = current or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


class RecordingPublisher:
    def __init__(self):
        self.events: List[Tuple[str, uuid.UUID]] = []

    def publish(self, event_type: str, booking: Booking) -> None:
        self.events.append((event_type, booking.id))


class StubProvisioner:
    def __init__(self, link: Optional[str] = None):
        self.link = link
        self.calls = 0

    @property
    def enabled(self) -> bool:
        return True

    async def provision(self, booking: Booking) -> Optional[str]:
        self.calls += 1
        return self.link


# ── Database ──────────────────────────────────────────────────

@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'scheduling.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


# ── HTTP client ───────────────────────────────────────────────

@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def provisioner() -> StubProvisioner:
    return StubProvisioner(link="https://meet.example.com/abc-defg-hij")


@pytest_asyncio.fixture
async def client(session_factory, publisher, provisioner):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    redis = AsyncMock()
    redis.exists.return_value = 0

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = lambda: redis
    app.dependency_overrides[get_meeting_link_provisioner] = lambda: provisioner
    app.dependency_overrides[get_event_publisher] = lambda: publisher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ── Actors ────────────────────────────────────────────────────

@pytest.fixture
def student_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def teacher_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def admin_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def topic_id() -> uuid.UUID:
    return uuid.uuid4()


# ── Factories ─────────────────────────────────────────────────

async def make_package(
    db: AsyncSession,
    student_id: uuid.UUID,
    total: int = 10,
    used: int = 0,
    valid_for: timedelta = timedelta(days=90),
) -> LessonPackage:
    now = datetime.now(timezone.utc)
    package = LessonPackage(
        student_id=student_id,
        total_lessons=total,
        used_lessons=used,
        valid_from=now - timedelta(days=1),
        valid_until=now + valid_for,
    )
    db.add(package)
    await db.commit()
    return package


async def make_rule(
    db: AsyncSession,
    teacher_id: uuid.UUID,
    day_of_week: int,
    start: time,
    end: time,
    is_active: bool = True,
) -> AvailabilityRule:
    rule = AvailabilityRule(
        teacher_id=teacher_id,
        day_of_week=day_of_week,
        start_time=start,
        end_time=end,
        is_active=is_active,
    )
    db.add(rule)
    await db.commit()
    return rule


async def make_booking(
    db: AsyncSession,
    package: LessonPackage,
    teacher_id: uuid.UUID,
    start: datetime,
    duration: int = 60,
    status: BookingStatus = BookingStatus.SCHEDULED,
) -> Booking:
    """Insert a booking directly (e.g. one that already started) and consume its lesson."""
    booking = Booking(
        student_id=package.student_id,
        teacher_id=teacher_id,
        topic_id=uuid.uuid4(),
        package_id=package.id,
        scheduled_at=start,
        ends_at=start + timedelta(minutes=duration),
        duration_minutes=duration,
        status=status,
    )
    package.used_lessons += 1
    db.add(booking)
    await db.commit()
    return booking


@pytest_asyncio.fixture
async def package(db, student_id) -> LessonPackage:
    return await make_package(db, student_id)


@pytest.fixture
def monday() -> date:
    return next_weekday(1)


@pytest_asyncio.fixture
async def monday_morning(db, teacher_id, monday) -> date:
    """Teacher available Mondays 09:00-11:00."""
    await make_rule(db, teacher_id, 1, time(9, 0), time(11, 0))
    return monday
