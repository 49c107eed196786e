"""
shared/utils/locks.py
Per-teacher write serialization for booking check-and-insert.

PostgreSQL: transaction-scoped advisory lock, released by the commit or
rollback of the surrounding transaction, so it works across API instances.
Other dialects (SQLite in tests): a process-local asyncio.Lock per teacher,
held until the wrapped block (which commits) has finished.
"""

import asyncio
import hashlib
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple
from uuid import UUID

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_local_locks: Dict[Tuple[int, str], asyncio.Lock] = {}


def advisory_key(namespace: str, resource_id: UUID | str) -> int:
    """Stable signed 64-bit key for pg_advisory_xact_lock."""
    digest = hashlib.blake2b(f"{namespace}:{resource_id}".encode(), digest_size=8).digest()
    return int.from_bytes(digest, "big", signed=True)


@asynccontextmanager
async def calendar_lock(db: AsyncSession, teacher_id: UUID) -> AsyncIterator[None]:
    """
    Serialize writers against one teacher's calendar.
    The caller must commit (or roll back) inside the block.
    """
    if db.get_bind().dialect.name == "postgresql":
        await db.execute(
            text("SELECT pg_advisory_xact_lock(:key)"),
            {"key": advisory_key("teacher-calendar", teacher_id)},
        )
        yield
        return

    # asyncio locks belong to one event loop
    loop_id = id(asyncio.get_running_loop())
    lock = _local_locks.setdefault((loop_id, str(teacher_id)), asyncio.Lock())
    async with lock:
        yield
