"""
services/availability/router.py
Teachers manage their recurring weekly availability; anyone can read it.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query

from services.scheduling.dependencies import get_scheduler
from services.scheduling.facade import SchedulingFacade
from shared.middleware.auth import Principal, require_teacher
from shared.schemas.schemas import (
    AvailabilityReplaceRequest,
    AvailabilityRuleResponse,
    MessageResponse,
)

router = APIRouter(prefix="/availability", tags=["Availability"])


def _target_teacher(principal: Principal, teacher_id: Optional[UUID]) -> UUID:
    """Teachers always edit their own rules; admins must say whose."""
    if principal.is_admin:
        if not teacher_id:
            raise HTTPException(status_code=422, detail="teacher_id is required for admins")
        return teacher_id
    if teacher_id and teacher_id != principal.user_id:
        raise HTTPException(status_code=403, detail="Teachers can only edit their own availability")
    return principal.user_id


@router.get("/{teacher_id}", response_model=List[AvailabilityRuleResponse])
async def get_availability(teacher_id: UUID, scheduler: SchedulingFacade = Depends(get_scheduler)):
    rules = await scheduler.teacher_availability(teacher_id)
    return [AvailabilityRuleResponse.model_validate(r) for r in rules]


@router.put("", response_model=List[AvailabilityRuleResponse])
async def replace_availability(
    data: AvailabilityReplaceRequest,
    principal: Principal = Depends(require_teacher),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """
    Replace the whole weekly rule set. Either every rule is saved or none;
    a 422 response lists every violation found.
    """
    teacher_id = _target_teacher(principal, data.teacher_id)
    rules = await scheduler.replace_availability(teacher_id, data.rules)
    return [AvailabilityRuleResponse.model_validate(r) for r in rules]


@router.delete("", response_model=MessageResponse)
async def clear_availability(
    teacher_id: Optional[UUID] = Query(None, description="Admins only"),
    principal: Principal = Depends(require_teacher),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Remove all rules. Existing bookings are not touched."""
    target = _target_teacher(principal, teacher_id)
    await scheduler.clear_availability(target)
    return MessageResponse(message="Availability cleared")
