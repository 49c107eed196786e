"""
tests/test_tasks.py
Background work: event delivery, class reminders, meeting-link provisioning.
Celery tasks are called directly (synchronously) against the test database.
"""

import uuid
from datetime import datetime, timedelta, timezone

import httpx
import pytest
from pybreaker import CircuitBreaker
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

import services.integrations.meeting_links as meeting_links
from config.settings import settings
from services.integrations.meeting_links import MeetingLinkProvisioner
from services.notifications.publisher import BookingEventPublisher
from shared.models.models import AttendanceAction, AttendanceLogEntry, Booking, BookingStatus
from tasks import booking_tasks
from tasks.booking_tasks import (
    DatabaseTask,
    attach_missing_meeting_links,
    deliver_booking_event,
    send_class_reminders,
    sync_database_url,
)
from tests.conftest import make_booking


@pytest.fixture
def sync_session_factory(engine, tmp_path, monkeypatch):
    """Point the Celery tasks at this test's SQLite file."""
    sync_engine = create_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
    factory = sessionmaker(bind=sync_engine, expire_on_commit=False)
    monkeypatch.setattr(DatabaseTask, "_session_factory", factory)
    yield factory
    sync_engine.dispose()


@pytest.fixture
def delivered(monkeypatch):
    sent = []
    monkeypatch.setattr(
        booking_tasks.deliver_booking_event, "delay", lambda event, payload: sent.append((event, payload))
    )
    return sent


def in_hours(hours: float) -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0) + timedelta(hours=hours)


def http_response(status_code: int, **kwargs) -> httpx.Response:
    return httpx.Response(status_code, request=httpx.Request("POST", "https://hooks.example.com"), **kwargs)


def test_sync_database_url():
    assert sync_database_url("postgresql+asyncpg://u:p@db/app") == "postgresql+psycopg2://u:p@db/app"
    assert sync_database_url("sqlite+aiosqlite:///./app.db") == "sqlite:///./app.db"


# ── Event delivery ─────────────────────────────────────────────────────────────

def test_event_dropped_without_webhook(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", None)
    posted = []
    monkeypatch.setattr(booking_tasks.httpx, "post", lambda *a, **kw: posted.append(a))

    deliver_booking_event("BOOKING_CREATED", {"booking_id": "b-1"})
    assert posted == []


def test_event_posted_to_webhook(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com")
    posted = []

    def fake_post(url, json, timeout):
        posted.append((url, json))
        return http_response(204)

    monkeypatch.setattr(booking_tasks.httpx, "post", fake_post)

    deliver_booking_event("BOOKING_CANCELLED", {"booking_id": "b-2"})
    assert posted == [("https://hooks.example.com", {"event": "BOOKING_CANCELLED", "payload": {"booking_id": "b-2"}})]


def test_failed_delivery_is_retried(monkeypatch):
    monkeypatch.setattr(settings, "NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com")
    monkeypatch.setattr(booking_tasks.httpx, "post", lambda *a, **kw: http_response(503))

    # Called outside a worker, retry() re-raises the original error
    with pytest.raises(httpx.HTTPStatusError):
        deliver_booking_event("BOOKING_CREATED", {"booking_id": "b-3"})


def test_publisher_enqueues_without_broker_retries(monkeypatch):
    enqueued = []
    monkeypatch.setattr(
        booking_tasks.deliver_booking_event, "apply_async", lambda *args, **kwargs: enqueued.append(kwargs)
    )
    booking = make_unsaved_booking()

    BookingEventPublisher().publish("BOOKING_CREATED", booking)

    assert len(enqueued) == 1
    assert enqueued[0]["retry"] is False
    event, payload = enqueued[0]["args"]
    assert event == "BOOKING_CREATED"
    assert payload["booking_id"] == str(booking.id)


def test_publisher_swallows_broker_outage(monkeypatch):
    def broker_down(*args, **kwargs):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(booking_tasks.deliver_booking_event, "apply_async", broker_down)

    BookingEventPublisher().publish("BOOKING_CANCELLED", make_unsaved_booking())


# ── Reminders ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_reminders_sent_once_per_booking(db, package, teacher_id, sync_session_factory, delivered):
    soon = await make_booking(db, package, teacher_id, in_hours(3))
    await make_booking(db, package, teacher_id, in_hours(settings.REMINDER_LEAD_HOURS + 5))  # too far out

    assert send_class_reminders() == 1
    assert [(event, payload["booking_id"]) for event, payload in delivered] == [
        ("BOOKING_REMINDER", str(soon.id))
    ]

    assert send_class_reminders() == 0
    assert len(delivered) == 1

    with sync_session_factory() as session:
        logged = session.execute(
            select(AttendanceLogEntry.action).where(AttendanceLogEntry.booking_id == soon.id)
        ).scalars().all()
    assert logged == [AttendanceAction.REMINDER_SENT.value]


# ── Meeting links ──────────────────────────────────────────────────────────────

def make_unsaved_booking() -> Booking:
    start = in_hours(24)
    return Booking(
        id=uuid.uuid4(),
        student_id=uuid.uuid4(),
        teacher_id=uuid.uuid4(),
        topic_id=uuid.uuid4(),
        scheduled_at=start,
        ends_at=start + timedelta(hours=1),
        duration_minutes=60,
        status=BookingStatus.SCHEDULED,
    )


def test_provisioner_disabled_without_url():
    provisioner = MeetingLinkProvisioner(url="")
    assert provisioner.enabled is False
    assert provisioner.provision_sync(make_unsaved_booking()) is None


@pytest.mark.asyncio
async def test_provisioner_returns_link(monkeypatch):
    captured = {}

    def fake_post(url, json, headers, timeout):
        captured.update(json)
        return http_response(201, json={"meeting_link": "https://meet.example.com/xyz"})

    monkeypatch.setattr(meeting_links.httpx, "post", fake_post)
    provisioner = MeetingLinkProvisioner(url="https://meet.example.com/api", breaker=CircuitBreaker())
    booking = make_unsaved_booking()

    assert await provisioner.provision(booking) == "https://meet.example.com/xyz"
    assert captured["booking_id"] == str(booking.id)


def test_provisioner_circuit_opens_after_failures(monkeypatch):
    calls = []

    def failing_post(*args, **kwargs):
        calls.append(1)
        return http_response(500)

    monkeypatch.setattr(meeting_links.httpx, "post", failing_post)
    provisioner = MeetingLinkProvisioner(
        url="https://meet.example.com/api", breaker=CircuitBreaker(fail_max=1, reset_timeout=60)
    )

    assert provisioner.provision_sync(make_unsaved_booking()) is None
    assert provisioner.provision_sync(make_unsaved_booking()) is None
    assert len(calls) == 1  # second call short-circuited


@pytest.mark.asyncio
async def test_missing_links_are_attached(db, package, teacher_id, sync_session_factory, monkeypatch):
    booking = await make_booking(db, package, teacher_id, in_hours(5))

    class FakeProvisioner:
        enabled = True

        def provision_sync(self, b):
            return f"https://meet.example.com/{b.id}"

    monkeypatch.setattr(meeting_links, "MeetingLinkProvisioner", FakeProvisioner)

    assert attach_missing_meeting_links() == 1
    await db.refresh(booking)
    assert booking.meeting_link == f"https://meet.example.com/{booking.id}"
    assert attach_missing_meeting_links() == 0
