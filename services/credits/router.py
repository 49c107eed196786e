"""
services/credits/router.py
Students read their lesson packages and remaining balance.
Packages are granted through /admin/packages.
"""

from typing import List

from fastapi import APIRouter, Depends

from services.scheduling.dependencies import get_scheduler
from services.scheduling.facade import SchedulingFacade
from shared.middleware.auth import Principal, require_student
from shared.schemas.schemas import CreditBalanceResponse, LessonPackageResponse

router = APIRouter(prefix="/packages", tags=["Packages"])


@router.get("/me", response_model=List[LessonPackageResponse])
async def list_my_packages(
    principal: Principal = Depends(require_student),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    packages = await scheduler.student_packages(principal.user_id)
    return [LessonPackageResponse.model_validate(p) for p in packages]


@router.get("/me/balance", response_model=CreditBalanceResponse)
async def get_my_balance(
    principal: Principal = Depends(require_student),
    scheduler: SchedulingFacade = Depends(get_scheduler),
):
    return CreditBalanceResponse(**await scheduler.student_balance(principal.user_id))
