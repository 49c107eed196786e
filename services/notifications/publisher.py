"""
services/notifications/publisher.py
Fire-and-forget publication of booking events to the Celery event queue.
"""

import logging

from shared.models.models import Booking
from tasks.booking_tasks import booking_event_payload, deliver_booking_event

logger = logging.getLogger(__name__)

BOOKING_CREATED = "BOOKING_CREATED"
BOOKING_CANCELLED = "BOOKING_CANCELLED"
BOOKING_RESCHEDULED = "BOOKING_RESCHEDULED"
BOOKING_STATUS_CHANGED = "BOOKING_STATUS_CHANGED"


class BookingEventPublisher:
    def publish(self, event_type: str, booking: Booking) -> None:
        """
        Never raises: a lost notification must not fail a committed booking change.
        Runs inside request handlers, so an unreachable broker fails at once
        instead of retrying the publish.
        """
        try:
            deliver_booking_event.apply_async(
                args=[event_type, booking_event_payload(booking)], retry=False
            )
        except Exception as e:
            logger.warning(f"Could not publish {event_type} for booking {booking.id}: {e}")
