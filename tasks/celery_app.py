"""
tasks/celery_app.py
Celery application instance, shared across all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info -Q events,maintenance

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery
from celery.schedules import crontab

from config.settings import settings

celery_app = Celery(
    "class_scheduling",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["tasks.booking_tasks"],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SCHOOL_TIMEZONE,
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose events
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,
    task_max_retries=5,

    task_annotations={
        "tasks.booking_tasks.deliver_booking_event": {"rate_limit": "50/s"},
    },

    # Routing: events fan out fast, maintenance jobs may be slow
    task_routes={
        "tasks.booking_tasks.deliver_booking_event": {"queue": "events"},
        "tasks.booking_tasks.send_class_reminders": {"queue": "maintenance"},
        "tasks.booking_tasks.attach_missing_meeting_links": {"queue": "maintenance"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Remind students and teachers of classes starting within REMINDER_LEAD_HOURS
    "send-class-reminders": {
        "task": "tasks.booking_tasks.send_class_reminders",
        "schedule": crontab(minute=0),  # top of every hour
    },

    # Retry meeting-link provisioning for bookings created while the provider was down
    "attach-missing-meeting-links": {
        "task": "tasks.booking_tasks.attach_missing_meeting_links",
        "schedule": 600,  # every 10 minutes
    },
}
