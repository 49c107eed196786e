"""
tests/test_credits.py
Lesson packages: selection, debit/refund bounds, balances and package routes.
"""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.lifecycle import BookingLifecycle
from services.credits.ledger import CreditLedger
from shared.exceptions import NoCreditError
from shared.models.models import LessonPackage, UserRole
from tests.conftest import at, auth_headers, make_package


# ── Ledger ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_earliest_expiring_active_package_is_used(db: AsyncSession, student_id: uuid.UUID):
    await make_package(db, student_id, valid_for=timedelta(days=60))
    soon = await make_package(db, student_id, valid_for=timedelta(days=10))
    await make_package(db, student_id, total=5, used=5, valid_for=timedelta(days=5))  # exhausted

    package = await CreditLedger(db).find_active_package(student_id)
    assert package.id == soon.id


@pytest.mark.asyncio
async def test_expired_package_is_not_active(db: AsyncSession, student_id: uuid.UUID):
    await make_package(db, student_id, valid_for=timedelta(days=-1))
    assert await CreditLedger(db).find_active_package(student_id) is None


@pytest.mark.asyncio
async def test_debit_refuses_exhausted_package(db: AsyncSession, student_id: uuid.UUID):
    package = await make_package(db, student_id, total=1, used=1)
    with pytest.raises(NoCreditError):
        await CreditLedger(db).debit(package)
    await db.rollback()


@pytest.mark.asyncio
async def test_refund_never_goes_below_zero(db: AsyncSession, student_id: uuid.UUID):
    package = await make_package(db, student_id, total=3, used=0)
    assert await CreditLedger(db).refund(package.id) is False
    await db.commit()
    await db.refresh(package)
    assert package.used_lessons == 0


@pytest.mark.asyncio
async def test_balance_sums_active_packages(db: AsyncSession, student_id: uuid.UUID):
    await make_package(db, student_id, total=10, used=4, valid_for=timedelta(days=30))
    await make_package(db, student_id, total=5, used=1, valid_for=timedelta(days=10))
    await make_package(db, student_id, total=8, used=0, valid_for=timedelta(days=-3))  # expired

    balance = await CreditLedger(db).balance(student_id)
    assert balance["remaining_lessons"] == 10
    assert balance["active_packages"] == 2


@pytest.mark.asyncio
async def test_package_with_one_lesson_left(
    db: AsyncSession, student_id: uuid.UUID, teacher_id: uuid.UUID, topic_id: uuid.UUID, monday
):
    """{total 10, used 9}: one more booking fits, the next one does not."""
    package = await make_package(db, student_id, total=10, used=9)
    lifecycle = BookingLifecycle(db)

    await lifecycle.create_booking(student_id, teacher_id, topic_id, at(monday, 9, 0), 60)
    await db.refresh(package)
    assert package.used_lessons == 10
    assert package.remaining_lessons == 0

    with pytest.raises(NoCreditError):
        await lifecycle.create_booking(student_id, teacher_id, topic_id, at(monday, 11, 0), 60)
    await db.refresh(package)
    assert package.used_lessons == 10


# ── API ────────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_student_lists_own_packages(
    client: AsyncClient, db: AsyncSession, student_id: uuid.UUID, package: LessonPackage
):
    await make_package(db, uuid.uuid4())  # someone else's

    response = await client.get("/packages/me", headers=auth_headers(student_id))
    assert response.status_code == 200
    data = response.json()
    assert [p["id"] for p in data] == [str(package.id)]
    assert data[0]["remaining_lessons"] == 10


@pytest.mark.asyncio
async def test_student_balance(client: AsyncClient, student_id: uuid.UUID, package: LessonPackage):
    response = await client.get("/packages/me/balance", headers=auth_headers(student_id))
    assert response.status_code == 200
    data = response.json()
    assert data["remaining_lessons"] == 10
    assert data["active_packages"] == 1


@pytest.mark.asyncio
async def test_packages_require_authentication(client: AsyncClient):
    response = await client.get("/packages/me")
    assert response.status_code == 401
