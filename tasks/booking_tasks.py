"""
tasks/booking_tasks.py
Celery tasks around booking events.

Usage from the API:
    from tasks.booking_tasks import deliver_booking_event
    deliver_booking_event.delay("BOOKING_CREATED", booking_event_payload(booking))

Periodic tasks are idempotent and safe to run twice.
"""

import logging
from datetime import timedelta
from typing import Optional

import httpx
from celery import Task
from sqlalchemy import create_engine, exists, select
from sqlalchemy.orm import Session, sessionmaker

from config.settings import settings
from shared.models.models import (
    AttendanceAction,
    AttendanceLogEntry,
    Booking,
    BookingStatus,
    LogSource,
    utcnow,
)
from tasks.celery_app import celery_app

logger = logging.getLogger(__name__)

BOOKING_REMINDER = "BOOKING_REMINDER"


def booking_event_payload(booking: Booking) -> dict:
    """JSON-serializable snapshot of a booking for event consumers."""
    return {
        "booking_id": str(booking.id),
        "student_id": str(booking.student_id),
        "teacher_id": str(booking.teacher_id),
        "topic_id": str(booking.topic_id),
        "scheduled_at": booking.scheduled_at.isoformat(),
        "ends_at": booking.ends_at.isoformat(),
        "duration_minutes": booking.duration_minutes,
        "status": booking.status.value,
        "meeting_link": booking.meeting_link,
    }


# ── Base Task with DB session ──────────────────────────────────────────────────

def sync_database_url(url: Optional[str] = None) -> str:
    """Async driver URL → sync driver URL (Celery runs sync)."""
    url = url or settings.DATABASE_URL
    return url.replace("+asyncpg", "+psycopg2").replace("+aiosqlite", "")


class DatabaseTask(Task):
    """Base class that provides a synchronous DB session for tasks."""
    abstract = True
    _session_factory = None

    def get_session(self) -> Session:
        cls = DatabaseTask
        if cls._session_factory is None:
            engine = create_engine(sync_database_url(), pool_pre_ping=True)
            cls._session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        return cls._session_factory()


# ── Event Delivery ─────────────────────────────────────────────────────────────

@celery_app.task(bind=True, max_retries=5, default_retry_delay=30)
def deliver_booking_event(self, event_type: str, payload: dict):
    """POST one booking event to the notification webhook, retrying with backoff."""
    if not settings.NOTIFICATION_WEBHOOK_URL:
        logger.debug(f"No notification webhook configured, dropping {event_type}")
        return

    try:
        response = httpx.post(
            settings.NOTIFICATION_WEBHOOK_URL,
            json={"event": event_type, "payload": payload},
            timeout=10.0,
        )
        response.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning(f"Delivery of {event_type} for booking {payload.get('booking_id')} failed: {e}")
        raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))

    logger.info(f"Delivered {event_type} for booking {payload.get('booking_id')}")


# ── Periodic / Scheduled Tasks ────────────────────────────────────────────────

@celery_app.task(bind=True, base=DatabaseTask)
def send_class_reminders(self):
    """
    Beat task: runs every hour.
    Emits BOOKING_REMINDER for SCHEDULED classes starting within
    REMINDER_LEAD_HOURS. A REMINDER_SENT log entry marks a booking as done.
    """
    db = self.get_session()
    try:
        now = utcnow()
        already_reminded = exists().where(
            AttendanceLogEntry.booking_id == Booking.id,
            AttendanceLogEntry.action == AttendanceAction.REMINDER_SENT.value,
        )
        bookings = db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.SCHEDULED,
                Booking.scheduled_at > now,
                Booking.scheduled_at <= now + timedelta(hours=settings.REMINDER_LEAD_HOURS),
                ~already_reminded,
            )
        ).scalars().all()

        for booking in bookings:
            db.add(AttendanceLogEntry(
                booking_id=booking.id,
                student_id=booking.student_id,
                action=AttendanceAction.REMINDER_SENT.value,
                source=LogSource.SYSTEM.value,
                timestamp=now,
            ))
        db.commit()

        for booking in bookings:
            deliver_booking_event.delay(BOOKING_REMINDER, booking_event_payload(booking))

        logger.info(f"Sent {len(bookings)} class reminders")
        return len(bookings)
    except Exception:
        db.rollback()
        logger.exception("send_class_reminders failed")
        raise
    finally:
        db.close()


@celery_app.task(bind=True, base=DatabaseTask)
def attach_missing_meeting_links(self, batch_size: int = 100):
    """Beat task: retry provisioning for upcoming SCHEDULED bookings without a link."""
    from services.integrations.meeting_links import MeetingLinkProvisioner

    provisioner = MeetingLinkProvisioner()
    if not provisioner.enabled:
        return 0

    db = self.get_session()
    try:
        bookings = db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.SCHEDULED,
                Booking.scheduled_at > utcnow(),
                Booking.meeting_link.is_(None),
            )
            .order_by(Booking.scheduled_at.asc())
            .limit(batch_size)
        ).scalars().all()

        attached = 0
        for booking in bookings:
            link = provisioner.provision_sync(booking)
            if link is None:
                continue
            booking.meeting_link = link
            db.commit()
            attached += 1

        logger.info(f"Attached meeting links to {attached}/{len(bookings)} bookings")
        return attached
    except Exception:
        db.rollback()
        logger.exception("attach_missing_meeting_links failed")
        raise
    finally:
        db.close()
