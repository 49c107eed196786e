"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the scheduling API.
"""

import uuid
from datetime import datetime, time
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from shared.models.models import BookingStatus


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Availability ──────────────────────────────────────────────

class AvailabilityRuleInput(BaseSchema):
    day_of_week: int = Field(..., description="0 = Sunday ... 6 = Saturday")
    start_time: time = Field(..., description="HH:MM")
    end_time: time = Field(..., description="HH:MM")
    is_active: bool = True


class AvailabilityReplaceRequest(BaseSchema):
    rules: List[AvailabilityRuleInput]
    teacher_id: Optional[uuid.UUID] = None  # Admins only; teachers always edit their own


class AvailabilityRuleResponse(BaseSchema):
    id: uuid.UUID
    teacher_id: uuid.UUID
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool


# ── Slots ─────────────────────────────────────────────────────

class BookableSlotResponse(BaseSchema):
    start: datetime
    end: datetime


# ── Booking ───────────────────────────────────────────────────

class BookingCreateRequest(BaseSchema):
    teacher_id: uuid.UUID
    topic_id: uuid.UUID
    start: datetime
    duration: Optional[int] = Field(None, gt=0, description="Minutes; defaults to the school's class length")
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=100)
    student_id: Optional[uuid.UUID] = None  # Admins booking on behalf of a student

    @field_validator("start")
    @classmethod
    def validate_start(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start must include a timezone offset")
        return v


class BookingStatusUpdateRequest(BaseSchema):
    status: BookingStatus
    force: bool = False
    reason: Optional[str] = Field(None, max_length=500)


class BookingRescheduleRequest(BaseSchema):
    start: datetime

    @field_validator("start")
    @classmethod
    def validate_start(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            raise ValueError("start must include a timezone offset")
        return v


class BookingResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    teacher_id: uuid.UUID
    topic_id: uuid.UUID
    package_id: uuid.UUID
    scheduled_at: datetime
    ends_at: datetime
    duration_minutes: int
    status: str
    cancelled_at: Optional[datetime]
    cancelled_by: Optional[str]
    attended_at: Optional[datetime]
    refunded: bool
    meeting_link: Optional[str]
    idempotency_key: Optional[str]
    created_at: datetime
    updated_at: datetime


class AttendanceLogResponse(BaseSchema):
    id: uuid.UUID
    booking_id: uuid.UUID
    student_id: uuid.UUID
    action: str
    source: str
    actor_id: Optional[uuid.UUID]
    details: Optional[Dict[str, Any]]
    timestamp: datetime


# ── Packages ──────────────────────────────────────────────────

class LessonPackageResponse(BaseSchema):
    id: uuid.UUID
    student_id: uuid.UUID
    total_lessons: int
    used_lessons: int
    remaining_lessons: int
    valid_from: datetime
    valid_until: datetime


class CreditBalanceResponse(BaseSchema):
    student_id: uuid.UUID
    remaining_lessons: int
    active_packages: int
    next_expiry: Optional[datetime]


class AdminGrantPackageRequest(BaseSchema):
    student_id: uuid.UUID
    total_lessons: int = Field(..., gt=0, le=500)
    valid_until: datetime
    valid_from: Optional[datetime] = None

    @field_validator("valid_until")
    @classmethod
    def validate_valid_until(cls, v: datetime) -> datetime:
        from datetime import timezone
        if v.tzinfo is None:
            raise ValueError("valid_until must include a timezone offset")
        if v <= datetime.now(timezone.utc):
            raise ValueError("valid_until must be in the future")
        return v

    @field_validator("valid_from")
    @classmethod
    def validate_valid_from(cls, v: Optional[datetime]) -> Optional[datetime]:
        if v is not None and v.tzinfo is None:
            raise ValueError("valid_from must include a timezone offset")
        return v


# ── Generic ───────────────────────────────────────────────────

class MessageResponse(BaseSchema):
    message: str
    success: bool = True


class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    violations: Optional[List[str]] = None
    idempotency_key: Optional[str] = None
    request_id: Optional[str] = None
