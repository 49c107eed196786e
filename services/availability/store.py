"""
services/availability/store.py
Per-teacher recurring weekly availability.
A teacher's rule set is always written as a whole: validate everything first,
then replace the old set inside one transaction.
"""

import logging
from datetime import time
from itertools import combinations
from typing import List, Protocol, Sequence
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import ValidationError
from shared.models.models import AvailabilityRule
from shared.utils.intervals import TimeRange, overlaps

logger = logging.getLogger(__name__)

DAY_NAMES = ("Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday")


class RuleInput(Protocol):
    day_of_week: int
    start_time: time
    end_time: time
    is_active: bool


def _minutes(t: time) -> int:
    return t.hour * 60 + t.minute


def _day_label(day: int) -> str:
    return DAY_NAMES[day] if 0 <= day <= 6 else f"day {day}"


def validate_rules(rules: Sequence[RuleInput]) -> List[str]:
    """Return every violation found in a candidate rule set (empty when valid)."""
    violations: List[str] = []
    well_formed = []

    for index, rule in enumerate(rules, start=1):
        problems = []
        if not 0 <= rule.day_of_week <= 6:
            problems.append(f"rule #{index}: day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        if _minutes(rule.start_time) >= _minutes(rule.end_time):
            problems.append(
                f"rule #{index} ({_day_label(rule.day_of_week)}): start time "
                f"{rule.start_time:%H:%M} must be before end time {rule.end_time:%H:%M}"
            )
        violations.extend(problems)
        if not problems and rule.is_active:
            well_formed.append((index, rule))

    for (i, a), (j, b) in combinations(well_formed, 2):
        if a.day_of_week != b.day_of_week:
            continue
        range_a = TimeRange(_minutes(a.start_time), _minutes(a.end_time))
        range_b = TimeRange(_minutes(b.start_time), _minutes(b.end_time))
        if overlaps(range_a, range_b):
            violations.append(
                f"rules #{i} and #{j} overlap on {_day_label(a.day_of_week)} "
                f"({a.start_time:%H:%M}-{a.end_time:%H:%M} / {b.start_time:%H:%M}-{b.end_time:%H:%M})"
            )
    return violations


class AvailabilityStore:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def replace_availability(
        self, teacher_id: UUID, rules: Sequence[RuleInput]
    ) -> List[AvailabilityRule]:
        """
        Atomically replace the teacher's whole rule set.
        Raises ValidationError listing every violation; nothing is written then.
        """
        violations = validate_rules(rules)
        if violations:
            logger.info(f"Rejected availability for teacher {teacher_id}: {len(violations)} violation(s)")
            raise ValidationError(violations)

        new_rules = [
            AvailabilityRule(
                teacher_id=teacher_id,
                day_of_week=rule.day_of_week,
                start_time=rule.start_time.replace(second=0, microsecond=0),
                end_time=rule.end_time.replace(second=0, microsecond=0),
                is_active=rule.is_active,
            )
            for rule in rules
        ]
        try:
            await self.db.execute(
                delete(AvailabilityRule).where(AvailabilityRule.teacher_id == teacher_id)
            )
            self.db.add_all(new_rules)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Saved {len(new_rules)} availability rule(s) for teacher {teacher_id}")
        return sorted(new_rules, key=lambda r: (r.day_of_week, r.start_time))

    async def get_active_rules(self, teacher_id: UUID, day_of_week: int) -> List[AvailabilityRule]:
        result = await self.db.execute(
            select(AvailabilityRule)
            .where(
                AvailabilityRule.teacher_id == teacher_id,
                AvailabilityRule.day_of_week == day_of_week,
                AvailabilityRule.is_active.is_(True),
            )
            .order_by(AvailabilityRule.start_time)
        )
        return list(result.scalars().all())

    async def list_rules(self, teacher_id: UUID) -> List[AvailabilityRule]:
        result = await self.db.execute(
            select(AvailabilityRule)
            .where(AvailabilityRule.teacher_id == teacher_id)
            .order_by(AvailabilityRule.day_of_week, AvailabilityRule.start_time)
        )
        return list(result.scalars().all())

    async def clear_availability(self, teacher_id: UUID) -> None:
        await self.db.execute(
            delete(AvailabilityRule).where(AvailabilityRule.teacher_id == teacher_id)
        )
        await self.db.commit()
        logger.info(f"Cleared availability for teacher {teacher_id}")
