"""
services/booking/router.py
Booking endpoints. All writes go through the scheduling facade.
States: SCHEDULED → COMPLETED | CANCELLED | NO_SHOW

Domain errors (NoCreditError, SlotUnavailableError, ...) propagate to the
handler registered in main.py; only authorization is decided here.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from services.scheduling.dependencies import get_scheduler
from services.scheduling.facade import SchedulingFacade
from shared.middleware.auth import Principal, get_current_principal, require_student
from shared.models.models import Booking, BookingStatus, UserRole
from shared.schemas.schemas import (
    AttendanceLogResponse,
    BookingCreateRequest,
    BookingRescheduleRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    ErrorResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])

WRITE_ERRORS = {
    402: {"model": ErrorResponse, "description": "No active lesson package"},
    404: {"model": ErrorResponse, "description": "Booking not found"},
    409: {"model": ErrorResponse, "description": "Slot taken or transition not allowed"},
    504: {"model": ErrorResponse, "description": "Outcome unknown, look up by idempotency key"},
}


# ── Helpers ───────────────────────────────────────────────────

def _authorize(booking: Booking, principal: Principal) -> None:
    """Students see their own bookings, teachers the ones they teach, admins all."""
    if principal.is_admin:
        return
    if principal.role == UserRole.STUDENT and booking.student_id == principal.user_id:
        return
    if principal.role == UserRole.TEACHER and booking.teacher_id == principal.user_id:
        return
    raise HTTPException(status_code=403, detail="Not authorized")


async def _get_authorized_booking(
    booking_id: UUID, principal: Principal, scheduler: SchedulingFacade
) -> Booking:
    booking = await scheduler.get_booking(booking_id)
    _authorize(booking, principal)
    return booking


# ── Reservation ───────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED, responses=WRITE_ERRORS)
async def create_booking(
    data: BookingCreateRequest,
    principal: Principal = Depends(require_student),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """
    Reserve a class slot and debit one lesson from the student's package.
    Send an idempotency_key so a retry after a timeout cannot book twice.
    """
    if principal.is_admin:
        if not data.student_id:
            raise HTTPException(status_code=422, detail="student_id is required when booking on behalf of a student")
        student_id = data.student_id
    else:
        if data.student_id and data.student_id != principal.user_id:
            raise HTTPException(status_code=403, detail="Students can only book for themselves")
        student_id = principal.user_id

    booking = await scheduler.reserve(
        student_id=student_id,
        teacher_id=data.teacher_id,
        topic_id=data.topic_id,
        start=data.start,
        duration=data.duration,
        idempotency_key=data.idempotency_key,
        source=principal.source,
        actor_id=principal.user_id,
    )
    return BookingResponse.model_validate(booking)


# ── Retrieval ─────────────────────────────────────────────────

@router.get("", response_model=List[BookingResponse])
async def list_bookings(
    scope: str = Query("upcoming", pattern="^(upcoming|past|all)$"),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    student_id: Optional[UUID] = Query(None, description="Admins only"),
    teacher_id: Optional[UUID] = Query(None, description="Admins only"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Students see their classes, teachers the classes they teach."""
    if principal.role == UserRole.STUDENT:
        student_id, teacher_id = principal.user_id, None
    elif principal.role == UserRole.TEACHER:
        student_id, teacher_id = None, principal.user_id

    bookings = await scheduler.list_bookings(
        student_id=student_id,
        teacher_id=teacher_id,
        scope=scope,
        status=status_filter,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return [BookingResponse.model_validate(b) for b in bookings]


@router.get("/lookup", response_model=BookingResponse)
async def lookup_by_idempotency_key(
    idempotency_key: str = Query(..., min_length=1, max_length=100),
    student_id: Optional[UUID] = Query(None, description="Admins only"),
    principal: Principal = Depends(require_student),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Resolve the outcome of a reservation that timed out."""
    owner = student_id if principal.is_admin and student_id else principal.user_id
    booking = await scheduler.find_booking(owner, idempotency_key)
    if not booking:
        raise HTTPException(status_code=404, detail="No booking for this idempotency key")
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    booking = await _get_authorized_booking(booking_id, principal, scheduler)
    return BookingResponse.model_validate(booking)


@router.get("/{booking_id}/logs", response_model=List[AttendanceLogResponse])
async def get_booking_logs(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Attendance log of one booking, oldest first."""
    await _get_authorized_booking(booking_id, principal, scheduler)
    logs = await scheduler.booking_logs(booking_id)
    return [AttendanceLogResponse.model_validate(entry) for entry in logs]


# ── Transitions ───────────────────────────────────────────────

@router.patch("/{booking_id}", response_model=BookingResponse, responses=WRITE_ERRORS)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """
    COMPLETED / NO_SHOW: teacher of the class (or admin) marks attendance.
    CANCELLED: same as DELETE.
    force=true: admin override of any transition, credit-neutral.
    """
    await _get_authorized_booking(booking_id, principal, scheduler)
    requested = BookingStatus(data.status)

    if data.force and not principal.is_admin:
        raise HTTPException(status_code=403, detail="Only admins can override booking status")
    if (
        requested in (BookingStatus.COMPLETED, BookingStatus.NO_SHOW)
        and principal.role == UserRole.STUDENT
    ):
        raise HTTPException(status_code=403, detail="Only the teacher can mark attendance")

    booking = await scheduler.change_status(
        booking_id,
        requested,
        actor=principal.source,
        actor_id=principal.user_id,
        force=data.force,
        reason=data.reason,
    )
    return BookingResponse.model_validate(booking)


@router.post("/{booking_id}/reschedule", response_model=BookingResponse, responses=WRITE_ERRORS)
async def reschedule_booking(
    booking_id: UUID,
    data: BookingRescheduleRequest,
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Move a scheduled class to another free slot of the same teacher."""
    await _get_authorized_booking(booking_id, principal, scheduler)
    booking = await scheduler.reschedule(
        booking_id, data.start, actor=principal.source, actor_id=principal.user_id
    )
    return BookingResponse.model_validate(booking)


@router.delete("/{booking_id}", response_model=BookingResponse, responses=WRITE_ERRORS)
async def cancel_booking(
    booking_id: UUID,
    principal: Principal = Depends(get_current_principal),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Cancel a scheduled class. Refunds the lesson when cancelled before the cutoff."""
    await _get_authorized_booking(booking_id, principal, scheduler)
    booking = await scheduler.release(booking_id, actor=principal.source, actor_id=principal.user_id)
    return BookingResponse.model_validate(booking)
