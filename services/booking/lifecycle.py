"""
services/booking/lifecycle.py
Booking lifecycle: reservation, attendance, cancellation, reschedule and
administrative overrides.

States: SCHEDULED → COMPLETED | CANCELLED | NO_SHOW (all final)

Every write that can collide with another booking runs under the teacher's
calendar lock and re-checks for overlap inside the same transaction as the
insert. Status changes are conditional UPDATEs on the current status, so two
concurrent transitions of the same booking cannot both succeed.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import BOOKING_OVERLAP_CONSTRAINT
from config.settings import settings
from services.credits.ledger import CreditLedger
from shared.exceptions import (
    BookingNotFoundError,
    InvalidTransitionError,
    NoCreditError,
    SlotUnavailableError,
    ValidationError,
)
from shared.models.models import (
    AttendanceAction,
    AttendanceLogEntry,
    Booking,
    BookingStatus,
    LogSource,
    utcnow,
)
from shared.utils.locks import calendar_lock

logger = logging.getLogger(__name__)


class BookingLifecycle:
    def __init__(
        self,
        db: AsyncSession,
        ledger: Optional[CreditLedger] = None,
        now: Callable[[], datetime] = utcnow,
        cancellation_cutoff_minutes: Optional[int] = None,
    ):
        self.db = db
        self.now = now
        self.ledger = ledger or CreditLedger(db, now=now)
        cutoff = (
            cancellation_cutoff_minutes
            if cancellation_cutoff_minutes is not None
            else settings.CANCELLATION_CUTOFF_MINUTES
        )
        self.cancellation_cutoff = timedelta(minutes=cutoff)

    # ── Helpers ───────────────────────────────────────────────

    def _log(
        self,
        booking: Booking,
        action: AttendanceAction,
        source: LogSource,
        actor_id: Optional[UUID] = None,
        details: Optional[dict] = None,
    ) -> None:
        """Append an immutable attendance log entry."""
        self.db.add(
            AttendanceLogEntry(
                booking_id=booking.id,
                student_id=booking.student_id,
                action=action.value,
                source=source.value,
                actor_id=actor_id,
                details=details,
                timestamp=self.now(),
            )
        )

    def _reject(self, booking: Booking, requested: BookingStatus, reason: str) -> InvalidTransitionError:
        logger.warning(
            f"Invalid transition for booking {booking.id}: {booking.status.value} -> "
            f"{requested.value} ({reason})"
        )
        return InvalidTransitionError(booking.id, booking.status.value, requested.value, reason)

    async def _ensure_free(
        self,
        teacher_id: UUID,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[UUID] = None,
    ) -> None:
        query = select(Booking.id).where(
            Booking.teacher_id == teacher_id,
            Booking.status == BookingStatus.SCHEDULED,
            Booking.scheduled_at < end,
            Booking.ends_at > start,
        )
        if exclude_booking_id is not None:
            query = query.where(Booking.id != exclude_booking_id)
        conflict = (await self.db.execute(query.limit(1))).scalar_one_or_none()
        if conflict is not None:
            logger.info(f"Slot {start.isoformat()} for teacher {teacher_id} collides with booking {conflict}")
            raise SlotUnavailableError(teacher_id, start, end)

    async def _transition(self, booking: Booking, target: BookingStatus, **values) -> None:
        """Move a SCHEDULED booking to target; loses cleanly if someone else moved it first."""
        result = await self.db.execute(
            update(Booking)
            .where(Booking.id == booking.id, Booking.status == BookingStatus.SCHEDULED)
            .values(status=target, updated_at=self.now(), **values)
            .execution_options(synchronize_session=False)
        )
        await self.db.refresh(booking)
        if result.rowcount != 1:
            raise self._reject(booking, target, "booking is no longer scheduled")

    async def _redebit(self, booking: Booking) -> None:
        """Take back the lesson refunded on cancellation; the funding package must still pay."""
        package = await self.ledger.get_package(booking.package_id) if booking.package_id else None
        if package is None:
            raise NoCreditError(booking.student_id)
        await self.ledger.debit(package)
        logger.info(f"Booking {booking.id} re-opened: lesson debited again from package {package.id}")

    def check_replay(
        self, existing: Booking, teacher_id: UUID, start: datetime, duration: int
    ) -> Booking:
        """An idempotency key may only be replayed with the request it was first used for."""
        if (
            existing.teacher_id != teacher_id
            or existing.scheduled_at != start
            or existing.duration_minutes != duration
        ):
            logger.warning(
                f"Idempotency key {existing.idempotency_key} reused with a different request "
                f"(booking {existing.id})"
            )
            raise ValidationError(
                [f"idempotency key {existing.idempotency_key} was already used for a different booking"]
            )
        logger.info(f"Replaying booking {existing.id} for idempotency key {existing.idempotency_key}")
        return existing

    def validate_window(self, start: datetime, duration: int) -> None:
        """Raise ValidationError unless start is an aware future instant and duration is sane."""
        problems = []
        if start.tzinfo is None:
            problems.append("start must include a timezone offset")
        elif start <= self.now():
            problems.append("start must be in the future")
        if duration <= 0:
            problems.append("duration must be a positive number of minutes")
        elif duration > settings.MAX_CLASS_DURATION_MINUTES:
            problems.append(f"duration must not exceed {settings.MAX_CLASS_DURATION_MINUTES} minutes")
        if problems:
            raise ValidationError(problems)

    # ── Reads ─────────────────────────────────────────────────

    async def get_booking(self, booking_id: UUID) -> Booking:
        result = await self.db.execute(select(Booking).where(Booking.id == booking_id))
        booking = result.scalar_one_or_none()
        if not booking:
            raise BookingNotFoundError(booking_id)
        return booking

    async def find_by_idempotency_key(self, student_id: UUID, key: str) -> Optional[Booking]:
        result = await self.db.execute(
            select(Booking).where(Booking.student_id == student_id, Booking.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def list_bookings(
        self,
        student_id: Optional[UUID] = None,
        teacher_id: Optional[UUID] = None,
        scope: str = "upcoming",
        status: Optional[BookingStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> List[Booking]:
        """
        scope: "upcoming" (SCHEDULED, not yet started), "past" (started before now)
        or "all".
        """
        query = select(Booking)
        if student_id is not None:
            query = query.where(Booking.student_id == student_id)
        if teacher_id is not None:
            query = query.where(Booking.teacher_id == teacher_id)

        now = self.now()
        if scope == "upcoming":
            query = query.where(
                Booking.scheduled_at >= now, Booking.status == BookingStatus.SCHEDULED
            ).order_by(Booking.scheduled_at.asc())
        elif scope == "past":
            query = query.where(Booking.scheduled_at < now).order_by(Booking.scheduled_at.desc())
        else:
            query = query.order_by(Booking.scheduled_at.asc())

        if status is not None:
            query = query.where(Booking.status == status)

        result = await self.db.execute(query.offset(offset).limit(limit))
        return list(result.scalars().all())

    async def get_logs(self, booking_id: UUID) -> List[AttendanceLogEntry]:
        result = await self.db.execute(
            select(AttendanceLogEntry)
            .where(AttendanceLogEntry.booking_id == booking_id)
            .order_by(AttendanceLogEntry.timestamp.asc())
        )
        return list(result.scalars().all())

    # ── Reservation ───────────────────────────────────────────

    async def create_booking(
        self,
        student_id: UUID,
        teacher_id: UUID,
        topic_id: UUID,
        start: datetime,
        duration: int,
        idempotency_key: Optional[str] = None,
        source: LogSource = LogSource.STUDENT,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        """
        Reserve [start, start+duration) with the teacher and debit one lesson.
        1. Replay: an existing booking with the same idempotency key is returned as is,
           provided teacher, start and duration match (ValidationError otherwise)
        2. The student needs an active package (NoCreditError)
        3. Under the calendar lock: overlap re-check (SlotUnavailableError),
           debit, insert, BOOKED log entry, commit
        """
        self.validate_window(start, duration)
        end = start + timedelta(minutes=duration)

        if idempotency_key:
            existing = await self.find_by_idempotency_key(student_id, idempotency_key)
            if existing:
                return self.check_replay(existing, teacher_id, start, duration)

        package = await self.ledger.find_active_package(student_id)
        if package is None:
            logger.info(f"Student {student_id} has no active package")
            raise NoCreditError(student_id)

        try:
            async with calendar_lock(self.db, teacher_id):
                try:
                    await self._ensure_free(teacher_id, start, end)
                    await self.ledger.debit(package)
                    booking = Booking(
                        student_id=student_id,
                        teacher_id=teacher_id,
                        topic_id=topic_id,
                        package_id=package.id,
                        scheduled_at=start,
                        ends_at=end,
                        duration_minutes=duration,
                        status=BookingStatus.SCHEDULED,
                        idempotency_key=idempotency_key,
                    )
                    self.db.add(booking)
                    await self.db.flush()
                    self._log(booking, AttendanceAction.BOOKED, source, actor_id or student_id)
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
        except IntegrityError as exc:
            if BOOKING_OVERLAP_CONSTRAINT in str(exc.orig):
                logger.info(f"Store rejected overlapping booking for teacher {teacher_id} at {start.isoformat()}")
                raise SlotUnavailableError(teacher_id, start, end) from exc
            if idempotency_key:
                existing = await self.find_by_idempotency_key(student_id, idempotency_key)
                if existing:
                    logger.info(f"Concurrent replay of idempotency key {idempotency_key}: booking {existing.id}")
                    return self.check_replay(existing, teacher_id, start, duration)
            raise

        logger.info(
            f"Booking {booking.id} created: teacher {teacher_id}, student {student_id}, "
            f"{start.isoformat()} ({duration} min), package {package.id}"
        )
        return booking

    # ── Transitions ───────────────────────────────────────────

    async def mark_attendance(
        self,
        booking_id: UUID,
        attended: bool,
        source: LogSource = LogSource.TEACHER,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        """SCHEDULED → COMPLETED (attended) or NO_SHOW, once the class has started."""
        booking = await self.get_booking(booking_id)
        target = BookingStatus.COMPLETED if attended else BookingStatus.NO_SHOW

        if booking.status.is_terminal:
            raise self._reject(booking, target, "booking is already final")
        now = self.now()
        if booking.scheduled_at > now:
            raise self._reject(booking, target, "class has not started yet")

        try:
            await self._transition(booking, target, attended_at=now)
            self._log(
                booking,
                AttendanceAction.MARKED_PRESENT if attended else AttendanceAction.MARKED_ABSENT,
                source,
                actor_id,
            )
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Booking {booking.id} marked {target.value}")
        return booking

    async def cancel_booking(
        self,
        booking_id: UUID,
        actor: LogSource,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        """
        SCHEDULED → CANCELLED. Refunds one lesson to the funding package when
        cancelled before scheduled_at - cutoff. Never refunds twice.
        """
        booking = await self.get_booking(booking_id)
        if booking.status.is_terminal:
            raise self._reject(booking, BookingStatus.CANCELLED, "booking is already final")

        now = self.now()
        # refunded is still set if the lesson came back on an earlier cancellation
        refund_due = not booking.refunded and now < booking.scheduled_at - self.cancellation_cutoff

        try:
            await self._transition(
                booking,
                BookingStatus.CANCELLED,
                cancelled_at=now,
                cancelled_by=actor.value,
                refunded=booking.refunded or refund_due,
            )
            self._log(
                booking,
                AttendanceAction.CANCELLED,
                actor,
                actor_id,
                details={"refund_due": refund_due},
            )
            if refund_due:
                if await self.ledger.refund(booking.package_id):
                    self._log(booking, AttendanceAction.REFUNDED, LogSource.SYSTEM)
                else:
                    booking.refunded = False
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            f"Booking {booking.id} cancelled by {actor.value} "
            f"({'refunded' if refund_due and booking.refunded else 'no refund'})"
        )
        return booking

    async def reschedule_booking(
        self,
        booking_id: UUID,
        new_start: datetime,
        source: LogSource,
        actor_id: Optional[UUID] = None,
    ) -> Booking:
        """Move a SCHEDULED booking to a new start. Credit-neutral."""
        booking = await self.get_booking(booking_id)
        if booking.status.is_terminal:
            raise self._reject(booking, BookingStatus.SCHEDULED, "only scheduled bookings can be rescheduled")
        self.validate_window(new_start, booking.duration_minutes)

        old_start = booking.scheduled_at
        new_end = new_start + timedelta(minutes=booking.duration_minutes)
        try:
            async with calendar_lock(self.db, booking.teacher_id):
                try:
                    await self._ensure_free(booking.teacher_id, new_start, new_end, exclude_booking_id=booking.id)
                    result = await self.db.execute(
                        update(Booking)
                        .where(Booking.id == booking.id, Booking.status == BookingStatus.SCHEDULED)
                        .values(scheduled_at=new_start, ends_at=new_end, updated_at=self.now())
                        .execution_options(synchronize_session=False)
                    )
                    await self.db.refresh(booking)
                    if result.rowcount != 1:
                        raise self._reject(booking, BookingStatus.SCHEDULED, "booking is no longer scheduled")
                    self._log(
                        booking,
                        AttendanceAction.RESCHEDULED,
                        source,
                        actor_id,
                        details={"from": old_start.isoformat(), "to": new_start.isoformat()},
                    )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
        except IntegrityError as exc:
            if BOOKING_OVERLAP_CONSTRAINT in str(exc.orig):
                raise SlotUnavailableError(booking.teacher_id, new_start, new_end) from exc
            raise

        logger.info(f"Booking {booking.id} rescheduled {old_start.isoformat()} -> {new_start.isoformat()}")
        return booking

    async def update_status(
        self,
        booking_id: UUID,
        status: BookingStatus,
        actor_id: Optional[UUID] = None,
        reason: Optional[str] = None,
    ) -> Booking:
        """
        Administrative override: any transition, always audited.
        Credit-neutral, except that re-opening a booking whose lesson was
        refunded debits it again (NoCreditError if the package cannot pay).
        Re-entering SCHEDULED still may not double-book the teacher.
        """
        booking = await self.get_booking(booking_id)
        prior = booking.status
        now = self.now()
        reopening = status is BookingStatus.SCHEDULED and prior is not BookingStatus.SCHEDULED
        details = {"from": prior.value, "to": status.value, "reason": reason}

        values = {"status": status, "updated_at": now}
        if reopening:
            values.update(cancelled_at=None, cancelled_by=None, attended_at=None)
        if status is BookingStatus.CANCELLED and booking.cancelled_at is None:
            values.update(cancelled_at=now, cancelled_by=LogSource.ADMIN.value)
        if status in (BookingStatus.COMPLETED, BookingStatus.NO_SHOW) and booking.attended_at is None:
            values["attended_at"] = now

        try:
            async with calendar_lock(self.db, booking.teacher_id):
                try:
                    if reopening:
                        await self.db.refresh(booking)
                        await self._ensure_free(
                            booking.teacher_id, booking.scheduled_at, booking.ends_at,
                            exclude_booking_id=booking.id,
                        )
                        if booking.refunded:
                            await self._redebit(booking)
                            values["refunded"] = False
                            details["redebited"] = True
                    await self.db.execute(
                        update(Booking)
                        .where(Booking.id == booking.id)
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    await self.db.refresh(booking)
                    self._log(
                        booking,
                        AttendanceAction.STATUS_OVERRIDE,
                        LogSource.ADMIN,
                        actor_id,
                        details=details,
                    )
                    await self.db.commit()
                except Exception:
                    await self.db.rollback()
                    raise
        except IntegrityError as exc:
            if BOOKING_OVERLAP_CONSTRAINT in str(exc.orig):
                raise SlotUnavailableError(booking.teacher_id, booking.scheduled_at, booking.ends_at) from exc
            raise

        logger.warning(
            f"Admin override on booking {booking.id}: {prior.value} -> {status.value} "
            f"by {actor_id} (reason: {reason or '-'})"
        )
        return booking

    async def attach_meeting_link(self, booking_id: UUID, link: str) -> Booking:
        """Set the meeting link if the booking does not have one yet."""
        booking = await self.get_booking(booking_id)
        if booking.meeting_link:
            return booking
        booking.meeting_link = link
        await self.db.commit()
        logger.info(f"Meeting link attached to booking {booking.id}")
        return booking
