"""
tests/test_slots.py
Slot generation: availability minus SCHEDULED bookings, discretized by step.
"""

import uuid
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.slots.generator import SlotGenerator, SlotSequence, day_of_week
from shared.exceptions import ValidationError
from shared.models.models import BookingStatus, LessonPackage
from shared.utils.intervals import TimeRange
from tests.conftest import Clock, at, make_booking, make_rule


def starts(slots):
    return [s.start.time() for s in slots]


def test_day_of_week_counts_from_sunday():
    assert day_of_week(date(2024, 6, 2)) == 0   # Sunday
    assert day_of_week(date(2024, 6, 3)) == 1   # Monday
    assert day_of_week(date(2024, 6, 8)) == 6   # Saturday


@pytest.mark.parametrize(
    "length,duration,step,expected",
    [
        (120, 60, 30, 3),
        (120, 120, 30, 1),
        (120, 45, 30, 3),
        (90, 60, 15, 3),
        (60, 90, 30, 0),
    ],
)
def test_slot_count_formula(length, duration, step, expected):
    origin = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)
    sequence = SlotSequence(
        uuid.uuid4(),
        [TimeRange(origin, origin + timedelta(minutes=length))],
        duration=timedelta(minutes=duration),
        step=timedelta(minutes=step),
    )
    assert len(list(sequence)) == expected


def test_slot_sequence_is_restartable():
    origin = datetime(2030, 1, 7, 9, 0, tzinfo=timezone.utc)
    sequence = SlotSequence(
        uuid.uuid4(),
        [TimeRange(origin, origin + timedelta(hours=2))],
        duration=timedelta(minutes=60),
        step=timedelta(minutes=30),
    )
    assert list(sequence) == list(sequence)


@pytest.mark.asyncio
async def test_monday_morning_slots(db: AsyncSession, teacher_id, monday_morning):
    slots = list(await SlotGenerator(db).generate_slots(teacher_id, monday_morning, 60, step_minutes=30))

    assert starts(slots) == [time(9, 0), time(9, 30), time(10, 0)]
    assert all(s.end - s.start == timedelta(minutes=60) for s in slots)
    assert all(s.teacher_id == teacher_id for s in slots)


@pytest.mark.asyncio
async def test_booked_range_is_removed(
    db: AsyncSession, teacher_id, monday_morning, package: LessonPackage
):
    await make_booking(db, package, teacher_id, at(monday_morning, 9, 0), 60)

    slots = list(await SlotGenerator(db).generate_slots(teacher_id, monday_morning, 60, step_minutes=30))
    assert starts(slots) == [time(10, 0)]


@pytest.mark.asyncio
async def test_cancelled_booking_frees_its_range(
    db: AsyncSession, teacher_id, monday_morning, package: LessonPackage
):
    await make_booking(
        db, package, teacher_id, at(monday_morning, 9, 0), 60, status=BookingStatus.CANCELLED
    )

    slots = list(await SlotGenerator(db).generate_slots(teacher_id, monday_morning, 60, step_minutes=30))
    assert len(slots) == 3


@pytest.mark.asyncio
async def test_other_teachers_bookings_do_not_block(
    db: AsyncSession, teacher_id, monday_morning, package: LessonPackage
):
    await make_booking(db, package, uuid.uuid4(), at(monday_morning, 9, 0), 60)

    slots = list(await SlotGenerator(db).generate_slots(teacher_id, monday_morning, 60, step_minutes=30))
    assert len(slots) == 3


@pytest.mark.asyncio
async def test_no_rules_means_no_slots(db: AsyncSession, teacher_id, monday):
    assert list(await SlotGenerator(db).generate_slots(teacher_id, monday, 60)) == []


@pytest.mark.asyncio
async def test_minimum_notice_skips_early_candidates(db: AsyncSession, teacher_id, monday_morning):
    generator = SlotGenerator(db, now=Clock(at(monday_morning, 9, 10)))
    slots = list(await generator.generate_slots(teacher_id, monday_morning, 60, step_minutes=30))
    assert starts(slots) == [time(9, 30), time(10, 0)]


@pytest.mark.asyncio
async def test_rules_are_wall_clock_in_school_timezone(db: AsyncSession, teacher_id, monday_morning):
    generator = SlotGenerator(db, school_timezone="Europe/Berlin")
    slots = list(await generator.generate_slots(teacher_id, monday_morning, 60, step_minutes=60))

    berlin = ZoneInfo("Europe/Berlin")
    assert [s.start for s in slots] == [
        datetime.combine(monday_morning, time(9, 0), tzinfo=berlin),
        datetime.combine(monday_morning, time(10, 0), tzinfo=berlin),
    ]


@pytest.mark.asyncio
async def test_within_availability(db: AsyncSession, teacher_id, monday_morning):
    generator = SlotGenerator(db)
    assert await generator.within_availability(teacher_id, at(monday_morning, 10, 0), 60)
    assert not await generator.within_availability(teacher_id, at(monday_morning, 10, 30), 60)
    assert not await generator.within_availability(teacher_id, at(monday_morning + timedelta(days=1), 9, 0), 60)


@pytest.mark.asyncio
async def test_non_positive_duration_rejected(db: AsyncSession, teacher_id, monday):
    with pytest.raises(ValidationError):
        await SlotGenerator(db).generate_slots(teacher_id, monday, 0)
    with pytest.raises(ValidationError):
        await SlotGenerator(db).generate_slots(teacher_id, monday, 60, step_minutes=-5)


# ── API ────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_bookable_slots_endpoint(client: AsyncClient, teacher_id, monday_morning):
    response = await client.get(
        "/bookable-slots",
        params={"teacherId": str(teacher_id), "date": monday_morning.isoformat(), "duration": 60},
    )
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 3
    assert datetime.fromisoformat(data[0]["start"]) == at(monday_morning, 9, 0)
    assert datetime.fromisoformat(data[0]["end"]) == at(monday_morning, 10, 0)


@pytest.mark.asyncio
async def test_bookable_slots_rejects_bad_duration(client: AsyncClient, teacher_id, monday_morning):
    response = await client.get(
        "/bookable-slots",
        params={"teacherId": str(teacher_id), "date": monday_morning.isoformat(), "duration": 0},
    )
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
