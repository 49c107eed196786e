"""
services/admin/router.py
Admin-only endpoints: recording package purchases and inspecting a
student's credit. Booking overrides go through PATCH /bookings/{id} with force.
"""

import logging
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, status

from services.scheduling.dependencies import get_scheduler
from services.scheduling.facade import SchedulingFacade
from shared.middleware.auth import Principal, require_admin
from shared.schemas.schemas import (
    AdminGrantPackageRequest,
    CreditBalanceResponse,
    LessonPackageResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.post("/packages", response_model=LessonPackageResponse, status_code=status.HTTP_201_CREATED)
async def grant_package(
    data: AdminGrantPackageRequest,
    principal: Principal = Depends(require_admin),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    """Record a package bought through the billing system."""
    package = await scheduler.grant_package(
        student_id=data.student_id,
        total_lessons=data.total_lessons,
        valid_until=data.valid_until,
        valid_from=data.valid_from,
    )
    logger.info(f"Admin {principal.user_id} granted package {package.id} to student {data.student_id}")
    return LessonPackageResponse.model_validate(package)


@router.get("/students/{student_id}/packages", response_model=List[LessonPackageResponse])
async def list_student_packages(
    student_id: UUID,
    principal: Principal = Depends(require_admin),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    packages = await scheduler.student_packages(student_id)
    return [LessonPackageResponse.model_validate(p) for p in packages]


@router.get("/students/{student_id}/balance", response_model=CreditBalanceResponse)
async def get_student_balance(
    student_id: UUID,
    principal: Principal = Depends(require_admin),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    return CreditBalanceResponse(**await scheduler.student_balance(student_id))
