"""
services/slots/router.py
Public read-only endpoint listing a teacher's bookable start times for a day.
"""

from datetime import date
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query

from services.scheduling.dependencies import get_scheduler
from services.scheduling.facade import SchedulingFacade
from shared.schemas.schemas import BookableSlotResponse

router = APIRouter(tags=["Slots"])


@router.get("/bookable-slots", response_model=List[BookableSlotResponse])
async def list_bookable_slots(
    teacher_id: UUID = Query(..., alias="teacherId"),
    day: date = Query(..., alias="date", description="YYYY-MM-DD"),
    duration: Optional[int] = Query(None, description="Class length in minutes"),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    slots = await scheduler.list_bookable_slots(teacher_id, day, duration)
    return [BookableSlotResponse(start=s.start, end=s.end) for s in slots]
