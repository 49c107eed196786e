"""
services/slots/generator.py
Turns a teacher's weekly availability into concrete bookable start times.

Reads the active rules and the SCHEDULED bookings of one day, subtracts the
booked ranges from each availability window and walks the free remainder in
fixed steps. Never writes, so it is safe to call speculatively.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Iterator, List, Optional
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.availability.store import AvailabilityStore
from shared.exceptions import ValidationError
from shared.models.models import Booking, BookingStatus, utcnow
from shared.utils.intervals import TimeRange, contains, subtract

logger = logging.getLogger(__name__)


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return day.isoweekday() % 7


@dataclass(frozen=True)
class BookableSlot:
    teacher_id: UUID
    start: datetime
    end: datetime


class SlotSequence:
    """
    Lazy, finite, restartable sequence of BookableSlot in start order.
    Every iteration walks the precomputed free ranges again.
    """

    def __init__(
        self,
        teacher_id: UUID,
        free_ranges: List[TimeRange],
        duration: timedelta,
        step: timedelta,
        not_before: Optional[datetime] = None,
    ):
        self.teacher_id = teacher_id
        self.free_ranges = free_ranges
        self.duration = duration
        self.step = step
        self.not_before = not_before

    def __iter__(self) -> Iterator[BookableSlot]:
        for free in self.free_ranges:
            candidate = free.start
            while candidate + self.duration <= free.end:
                if self.not_before is None or candidate >= self.not_before:
                    yield BookableSlot(self.teacher_id, candidate, candidate + self.duration)
                candidate += self.step

    def __repr__(self) -> str:
        return f"<SlotSequence {self.teacher_id} ranges={len(self.free_ranges)} step={self.step}>"


class SlotGenerator:
    def __init__(
        self,
        db: AsyncSession,
        availability: Optional[AvailabilityStore] = None,
        step_minutes: Optional[int] = None,
        min_notice_minutes: Optional[int] = None,
        school_timezone: Optional[str] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.availability = availability or AvailabilityStore(db)
        self.step_minutes = step_minutes if step_minutes is not None else settings.SLOT_STEP_MINUTES
        self.min_notice_minutes = (
            min_notice_minutes if min_notice_minutes is not None else settings.MIN_BOOKING_NOTICE_MINUTES
        )
        self.zone = ZoneInfo(school_timezone or settings.SCHOOL_TIMEZONE)
        self.now = now

    def _at(self, day: date, clock: time) -> datetime:
        return datetime.combine(day, clock, tzinfo=self.zone).astimezone(timezone.utc)

    async def availability_windows(self, teacher_id: UUID, day: date) -> List[TimeRange]:
        """The teacher's active rules for that weekday, materialized on day (UTC)."""
        rules = await self.availability.get_active_rules(teacher_id, day_of_week(day))
        return [TimeRange(self._at(day, r.start_time), self._at(day, r.end_time)) for r in rules]

    async def busy_ranges(self, teacher_id: UUID, start: datetime, end: datetime) -> List[TimeRange]:
        """SCHEDULED bookings of the teacher that overlap [start, end)."""
        result = await self.db.execute(
            select(Booking.scheduled_at, Booking.ends_at).where(
                Booking.teacher_id == teacher_id,
                Booking.status == BookingStatus.SCHEDULED,
                Booking.scheduled_at < end,
                Booking.ends_at > start,
            )
        )
        return [TimeRange(row.scheduled_at, row.ends_at) for row in result.all()]

    async def generate_slots(
        self,
        teacher_id: UUID,
        day: date,
        duration: int,
        step_minutes: Optional[int] = None,
    ) -> SlotSequence:
        step_minutes = step_minutes if step_minutes is not None else self.step_minutes
        problems = []
        if duration <= 0:
            problems.append("duration must be a positive number of minutes")
        if step_minutes <= 0:
            problems.append("step_minutes must be a positive number of minutes")
        if problems:
            raise ValidationError(problems)

        windows = await self.availability_windows(teacher_id, day)
        free_ranges: List[TimeRange] = []
        if windows:
            day_start = self._at(day, time.min)
            day_end = self._at(day + timedelta(days=1), time.min)
            busy = await self.busy_ranges(teacher_id, day_start, day_end)
            for window in windows:
                free_ranges.extend(subtract(window, busy))

        not_before = self.now() + timedelta(minutes=self.min_notice_minutes)
        logger.debug(
            f"Slots for teacher {teacher_id} on {day}: {len(windows)} window(s), "
            f"{len(free_ranges)} free range(s)"
        )
        return SlotSequence(
            teacher_id,
            free_ranges,
            duration=timedelta(minutes=duration),
            step=timedelta(minutes=step_minutes),
            not_before=not_before,
        )

    async def within_availability(self, teacher_id: UUID, start: datetime, duration: int) -> bool:
        """True iff [start, start+duration) lies inside one active availability window."""
        requested = TimeRange(start, start + timedelta(minutes=duration))
        local_day = start.astimezone(self.zone).date()
        windows = await self.availability_windows(teacher_id, local_day)
        return any(contains(window, requested) for window in windows)
