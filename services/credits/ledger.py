"""
services/credits/ledger.py
Lesson-credit accounting for student packages.

Keeps 0 <= used_lessons <= total_lessons with conditional UPDATEs, so two
concurrent debits can never overspend a package. debit() and refund() are
only called from the booking lifecycle, inside the same transaction as the
booking change that triggers them; they never commit on their own.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NoCreditError
from shared.models.models import LessonPackage, utcnow

logger = logging.getLogger(__name__)


class CreditLedger:
    def __init__(self, db: AsyncSession, now: Callable[[], datetime] = utcnow):
        self.db = db
        self.now = now

    # ── Reads ─────────────────────────────────────────────────

    async def find_active_package(self, student_id: UUID) -> Optional[LessonPackage]:
        """The earliest-expiring package that is still valid and has lessons left."""
        result = await self.db.execute(
            select(LessonPackage)
            .where(
                LessonPackage.student_id == student_id,
                LessonPackage.valid_until > self.now(),
                LessonPackage.remaining_lessons > 0,
            )
            .order_by(LessonPackage.valid_until.asc(), LessonPackage.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_package(self, package_id: UUID) -> Optional[LessonPackage]:
        return await self.db.get(LessonPackage, package_id)

    async def list_packages(self, student_id: UUID) -> List[LessonPackage]:
        result = await self.db.execute(
            select(LessonPackage)
            .where(LessonPackage.student_id == student_id)
            .order_by(LessonPackage.valid_until.desc())
        )
        return list(result.scalars().all())

    async def balance(self, student_id: UUID) -> dict:
        """Remaining lessons across all active packages of the student."""
        now = self.now()
        packages = await self.list_packages(student_id)
        active = [p for p in packages if p.is_active(now)]
        return {
            "student_id": student_id,
            "remaining_lessons": sum(p.remaining_lessons for p in active),
            "active_packages": len(active),
            "next_expiry": min((p.valid_until for p in active), default=None),
        }

    # ── Mutations (booking lifecycle only) ────────────────────

    async def debit(self, package: LessonPackage) -> None:
        """Consume one lesson. Raises NoCreditError if the package ran dry meanwhile."""
        result = await self.db.execute(
            update(LessonPackage)
            .where(
                LessonPackage.id == package.id,
                LessonPackage.used_lessons < LessonPackage.total_lessons,
                LessonPackage.valid_until > self.now(),
            )
            .values(used_lessons=LessonPackage.used_lessons + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.info(f"Debit refused for package {package.id}: no remaining lessons")
            raise NoCreditError(package.student_id)

    async def refund(self, package_id: UUID) -> bool:
        """Give one lesson back. Returns False if the package had nothing used."""
        result = await self.db.execute(
            update(LessonPackage)
            .where(LessonPackage.id == package_id, LessonPackage.used_lessons > 0)
            .values(used_lessons=LessonPackage.used_lessons - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Refund skipped for package {package_id}: used_lessons already 0")
            return False
        return True

    # ── Purchases (recorded by admins) ────────────────────────

    async def grant_package(
        self,
        student_id: UUID,
        total_lessons: int,
        valid_until: datetime,
        valid_from: Optional[datetime] = None,
    ) -> LessonPackage:
        package = LessonPackage(
            student_id=student_id,
            total_lessons=total_lessons,
            used_lessons=0,
            valid_from=valid_from or self.now(),
            valid_until=valid_until,
        )
        self.db.add(package)
        await self.db.commit()
        logger.info(f"Granted package {package.id} ({total_lessons} lessons) to student {student_id}")
        return package
