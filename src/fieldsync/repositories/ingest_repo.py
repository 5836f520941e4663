from __future__ import annotations

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from ..domain.duplicates import is_duplicate_error
from ..errors import DuplicateConflict
from ..models import EntityState, ServerRecord


async def get_record_by_key(session: AsyncSession, idempotency_key: str) -> ServerRecord | None:
    result = await session.exec(
        select(ServerRecord).where(ServerRecord.idempotency_key == idempotency_key)
    )
    return result.first()


async def insert_record(session: AsyncSession, record: ServerRecord) -> ServerRecord:
    """Insert and flush so the uniqueness constraint is checked right away.

    Raises DuplicateConflict when the key already exists. The caller owns the
    transaction and must roll back before reading the winning record.
    """
    session.add(record)
    try:
        await session.flush()
    except IntegrityError as exc:
        if is_duplicate_error(exc):
            raise DuplicateConflict(record.idempotency_key) from exc
        raise
    return record


async def get_entity_state(
    session: AsyncSession, target: str, entity_id: str
) -> EntityState | None:
    result = await session.exec(
        select(EntityState).where(EntityState.target == target).where(EntityState.entity_id == entity_id)
    )
    return result.first()
