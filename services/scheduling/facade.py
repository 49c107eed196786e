"""
services/scheduling/facade.py
Entry point for every scheduling use case exposed over HTTP.

Composes the availability store, the slot generator, the booking lifecycle
and the credit ledger. Routers call only this class.
Side effects (meeting link, events) run only after the booking change has
committed and never undo it.
"""

import asyncio
import logging
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.availability.store import RuleInput
from services.booking.lifecycle import BookingLifecycle
from services.integrations.meeting_links import MeetingLinkProvisioner
from services.notifications.publisher import (
    BOOKING_CANCELLED,
    BOOKING_CREATED,
    BOOKING_RESCHEDULED,
    BOOKING_STATUS_CHANGED,
    BookingEventPublisher,
)
from services.slots.generator import BookableSlot, SlotGenerator
from shared.exceptions import (
    BookingOutcomeUnknownError,
    InvalidTransitionError,
    SlotUnavailableError,
)
from shared.models.models import (
    AttendanceLogEntry,
    AvailabilityRule,
    Booking,
    BookingStatus,
    LessonPackage,
    LogSource,
    utcnow,
)

logger = logging.getLogger(__name__)


class SchedulingFacade:
    def __init__(
        self,
        db: AsyncSession,
        provisioner: Optional[MeetingLinkProvisioner] = None,
        publisher: Optional[BookingEventPublisher] = None,
        slots: Optional[SlotGenerator] = None,
        lifecycle: Optional[BookingLifecycle] = None,
        write_timeout: Optional[float] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.provisioner = provisioner or MeetingLinkProvisioner()
        self.publisher = publisher or BookingEventPublisher()
        self.slots = slots or SlotGenerator(db, now=now)
        self.lifecycle = lifecycle or BookingLifecycle(db, now=now)
        self.availability = self.slots.availability
        self.ledger = self.lifecycle.ledger
        self.write_timeout = write_timeout or settings.BOOKING_WRITE_TIMEOUT_SECONDS

    # ── Helpers ───────────────────────────────────────────────

    async def _attach_link(self, booking: Booking) -> Booking:
        link = await self.provisioner.provision(booking)
        if not link:
            return booking
        try:
            return await self.lifecycle.attach_meeting_link(booking.id, link)
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Could not store meeting link for booking {booking.id}: {e}")
            return booking

    async def _ensure_within_availability(self, teacher_id: UUID, start: datetime, duration: int) -> None:
        if not await self.slots.within_availability(teacher_id, start, duration):
            logger.info(f"Requested {start.isoformat()} ({duration} min) is outside teacher {teacher_id} availability")
            raise SlotUnavailableError(teacher_id, start, start + timedelta(minutes=duration))

    # ── Use cases ─────────────────────────────────────────────

    async def list_bookable_slots(
        self, teacher_id: UUID, day: date, duration: Optional[int] = None
    ) -> List[BookableSlot]:
        if duration is None:
            duration = settings.DEFAULT_CLASS_DURATION_MINUTES
        return list(await self.slots.generate_slots(teacher_id, day, duration))

    async def reserve(
        self,
        student_id: UUID,
        teacher_id: UUID,
        topic_id: UUID,
        start: datetime,
        duration: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        source: LogSource = LogSource.STUDENT,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        """
        Book [start, start+duration) for the student.
        A repeated idempotency_key returns the original booking without side effects;
        reusing it for a different teacher, start or duration is a ValidationError.
        """
        if duration is None:
            duration = settings.DEFAULT_CLASS_DURATION_MINUTES

        if idempotency_key:
            existing = await self.lifecycle.find_by_idempotency_key(student_id, idempotency_key)
            if existing:
                return self.lifecycle.check_replay(existing, teacher_id, start, duration)

        self.lifecycle.validate_window(start, duration)
        await self._ensure_within_availability(teacher_id, start, duration)

        try:
            booking = await asyncio.wait_for(
                self.lifecycle.create_booking(
                    student_id=student_id,
                    teacher_id=teacher_id,
                    topic_id=topic_id,
                    start=start,
                    duration=duration,
                    idempotency_key=idempotency_key,
                    source=source,
                    actor_id=actor_id,
                ),
                timeout=self.write_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                f"Reservation for student {student_id} at {start.isoformat()} timed out "
                f"after {self.write_timeout}s (idempotency key {idempotency_key})"
            )
            raise BookingOutcomeUnknownError(idempotency_key)

        booking = await self._attach_link(booking)
        self.publisher.publish(BOOKING_CREATED, booking)
        return booking

    async def release(
        self, booking_id: UUID, actor: LogSource, actor_id: Optional[UUID] = None
    ) -> Booking:
        booking = await self.lifecycle.cancel_booking(booking_id, actor, actor_id)
        self.publisher.publish(BOOKING_CANCELLED, booking)
        return booking

    async def change_status(
        self,
        booking_id: UUID,
        status: BookingStatus,
        actor: LogSource,
        actor_id: Optional[UUID] = None,
        force: bool = False,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        COMPLETED / NO_SHOW → attendance, CANCELLED → release.
        force (admins only) → credit-neutral override of any transition.
        """
        if force:
            booking = await self.lifecycle.update_status(booking_id, status, actor_id, reason)
            self.publisher.publish(BOOKING_STATUS_CHANGED, booking)
            return booking

        if status is BookingStatus.CANCELLED:
            return await self.release(booking_id, actor, actor_id)

        if status in (BookingStatus.COMPLETED, BookingStatus.NO_SHOW):
            booking = await self.lifecycle.mark_attendance(
                booking_id, attended=status is BookingStatus.COMPLETED, source=actor, actor_id=actor_id
            )
            self.publisher.publish(BOOKING_STATUS_CHANGED, booking)
            return booking

        booking = await self.lifecycle.get_booking(booking_id)
        logger.warning(f"Refused move of booking {booking.id} back to {status.value}")
        raise InvalidTransitionError(
            booking.id, booking.status.value, status.value, "only an administrative override can do this"
        )

    async def reschedule(
        self,
        booking_id: UUID,
        new_start: datetime,
        actor: LogSource,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        booking = await self.lifecycle.get_booking(booking_id)
        if booking.status is BookingStatus.SCHEDULED:
            self.lifecycle.validate_window(new_start, booking.duration_minutes)
            await self._ensure_within_availability(booking.teacher_id, new_start, booking.duration_minutes)

        booking = await self.lifecycle.reschedule_booking(booking_id, new_start, actor, actor_id)
        self.publisher.publish(BOOKING_RESCHEDULED, booking)
        return booking

    # ── Booking reads ─────────────────────────────────────────

    async def get_booking(self, booking_id: UUID) -> Booking:
        return await self.lifecycle.get_booking(booking_id)

    async def find_booking(self, student_id: UUID, idempotency_key: str) -> Optional[Booking]:
        """Resolve a reservation that ended in BookingOutcomeUnknownError."""
        return await self.lifecycle.find_by_idempotency_key(student_id, idempotency_key)

    async def list_bookings(self, **filters) -> List[Booking]:
        return await self.lifecycle.list_bookings(**filters)

    async def booking_logs(self, booking_id: UUID) -> List[AttendanceLogEntry]:
        return await self.lifecycle.get_logs(booking_id)

    # ── Availability ──────────────────────────────────────────

    async def teacher_availability(self, teacher_id: UUID) -> List[AvailabilityRule]:
        return await self.availability.list_rules(teacher_id)

    async def replace_availability(self, teacher_id: UUID, rules: Sequence[RuleInput]) -> List[AvailabilityRule]:
        return await self.availability.replace_availability(teacher_id, rules)

    async def clear_availability(self, teacher_id: UUID) -> None:
        await self.availability.clear_availability(teacher_id)

    # ── Credit ────────────────────────────────────────────────

    async def student_packages(self, student_id: UUID) -> List[LessonPackage]:
        return await self.ledger.list_packages(student_id)

    async def student_balance(self, student_id: UUID) -> dict:
        return await self.ledger.balance(student_id)

    async def grant_package(
        self,
        student_id: UUID,
        total_lessons: int,
        valid_until: datetime,
        valid_from: Optional[datetime] = None,
    ) -> LessonPackage:
        return await self.ledger.grant_package(
            student_id=student_id,
            total_lessons=total_lessons,
            valid_until=valid_until,
            valid_from=valid_from,
        )
