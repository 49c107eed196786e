"""
shared/models/models.py
All SQLAlchemy ORM models for the class scheduling engine.
UUID primary keys throughout; users, topics and teachers live in other
services and are referenced by id only.
"""

import uuid
from datetime import datetime, time, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    Time,
    TypeDecorator,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base


# ── Column Types ──────────────────────────────────────────────

class UTCDateTime(TypeDecorator):
    """
    Timezone-aware datetime stored as UTC.
    Backends without a native timestamptz (SQLite) hand back naive values;
    those are re-tagged as UTC so comparisons never mix naive and aware.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to a UTCDateTime column")
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"


class BookingStatus(str, PyEnum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self is not BookingStatus.SCHEDULED


class AttendanceAction(str, PyEnum):
    BOOKED = "BOOKED"
    MARKED_PRESENT = "MARKED_PRESENT"
    MARKED_ABSENT = "MARKED_ABSENT"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    RESCHEDULED = "RESCHEDULED"
    STATUS_OVERRIDE = "STATUS_OVERRIDE"
    REMINDER_SENT = "REMINDER_SENT"


class LogSource(str, PyEnum):
    STUDENT = "STUDENT"
    TEACHER = "TEACHER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow, nullable=False
    )


# ── Models ────────────────────────────────────────────────────

class AvailabilityRule(TimestampMixin, Base):
    """
    One recurring weekly window in which a teacher accepts classes.
    day_of_week follows the 0 = Sunday convention used by the web client.
    """
    __tablename__ = "availability_rules"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    day_of_week: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_availability_time_order"),
        CheckConstraint("day_of_week >= 0 AND day_of_week <= 6", name="ck_availability_day_range"),
        Index("ix_availability_teacher_day", "teacher_id", "day_of_week"),
    )

    def __repr__(self) -> str:
        return f"<AvailabilityRule {self.teacher_id} d{self.day_of_week} {self.start_time}-{self.end_time}>"


class LessonPackage(TimestampMixin, Base):
    """
    A student's prepaid bundle of lessons.
    remaining_lessons is always derived from total - used, never stored.
    """
    __tablename__ = "lesson_packages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    total_lessons: Mapped[int] = mapped_column(Integer, nullable=False)
    used_lessons: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    valid_from: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    bookings: Mapped[List["Booking"]] = relationship(back_populates="package")

    __table_args__ = (
        CheckConstraint("total_lessons > 0", name="ck_package_total_positive"),
        CheckConstraint(
            "used_lessons >= 0 AND used_lessons <= total_lessons",
            name="ck_package_usage_range",
        ),
        Index("ix_lesson_packages_student_valid", "student_id", "valid_until"),
    )

    @hybrid_property
    def remaining_lessons(self) -> int:
        return self.total_lessons - self.used_lessons

    def is_active(self, now: datetime) -> bool:
        return self.valid_until > now and self.remaining_lessons > 0

    def __repr__(self) -> str:
        return f"<LessonPackage {self.student_id} {self.used_lessons}/{self.total_lessons}>"


class Booking(TimestampMixin, Base):
    """
    Reservation of one class slot.
    Status transitions: SCHEDULED → COMPLETED | CANCELLED | NO_SHOW (all final).
    Never deleted; cancellation is a status change.
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    teacher_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    topic_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    package_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("lesson_packages.id"), nullable=False
    )

    # Schedule
    scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    ends_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Status
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.SCHEDULED
    )
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_by: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    attended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    meeting_link: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    package: Mapped["LessonPackage"] = relationship(back_populates="bookings")
    attendance_logs: Mapped[List["AttendanceLogEntry"]] = relationship(back_populates="booking")

    __table_args__ = (
        UniqueConstraint("student_id", "idempotency_key", name="uq_booking_student_idempotency_key"),
        CheckConstraint("duration_minutes > 0", name="ck_booking_duration_positive"),
        CheckConstraint("ends_at > scheduled_at", name="ck_booking_time_order"),
        Index("ix_bookings_teacher_scheduled", "teacher_id", "scheduled_at"),
        Index("ix_bookings_student_id", "student_id"),
        Index("ix_bookings_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.teacher_id} {self.scheduled_at} ({self.status})>"


class AttendanceLogEntry(Base):
    """Immutable log of every attendance-relevant change of a booking."""
    __tablename__ = "attendance_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id"), nullable=False
    )
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    action: Mapped[str] = mapped_column(String(30), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False)
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)

    booking: Mapped["Booking"] = relationship(back_populates="attendance_logs")

    __table_args__ = (Index("ix_attendance_logs_booking_id", "booking_id"),)
