from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel.ext.asyncio.session import AsyncSession

from fieldsync.config import settings
from fieldsync.domain.duplicates import is_duplicate_error
from fieldsync.domain.idempotency import split_key
from fieldsync.errors import DuplicateConflict, IngestValidationError, TransientIngestError
from fieldsync.models import ServerRecord, utc_now
from fieldsync.repositories import ingest_repo
from fieldsync.services.ingest_effects import EffectHandler, get_effect

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    status: Literal["created", "duplicate"]
    record: ServerRecord


def _check_key(target: str, idempotency_key: str) -> tuple[str, EffectHandler]:
    parsed = split_key(idempotency_key)
    if parsed is None:
        raise IngestValidationError(
            "malformed idempotency key", details={"expected": "<domain>_<64 hex chars>"}
        )
    domain, _digest = parsed

    allowed = settings.target_domains().get(target)
    effect = get_effect(target)
    if allowed is None or effect is None:
        raise IngestValidationError(f"unknown target: {target}")
    if domain not in allowed:
        raise IngestValidationError(
            f"key domain {domain!r} is not accepted by {target}",
            details={"allowed": sorted(allowed)},
        )
    return domain, effect


async def _lookup_after_conflict(session: AsyncSession, idempotency_key: str) -> IngestResult:
    # The failed begin() block already rolled back; read the winner in a fresh one.
    async with session.begin():
        existing = await ingest_repo.get_record_by_key(session, idempotency_key)
    if existing is None:
        # The violation came from a business table (e.g. two keys racing on one entity).
        raise TransientIngestError("conflicting write in progress, retry")
    return IngestResult(status="duplicate", record=existing)


async def ingest(
    *,
    session: AsyncSession,
    target: str,
    idempotency_key: str,
    kind: str,
    payload: dict[str, Any],
    metadata: dict[str, Any] | None = None,
    device_id: str | None = None,
) -> IngestResult:
    """Apply an operation at most once per idempotency key.

    Notes:
    - The ServerRecord insert and the business effect share one transaction.
    - A uniqueness violation on the key means another submission won; the
      winner's record is returned with status "duplicate" and the effect is
      not repeated.
    """

    domain, effect = _check_key(target, idempotency_key)

    try:
        async with session.begin():
            existing = await ingest_repo.get_record_by_key(session, idempotency_key)
            if existing is not None:
                logger.info("ingest duplicate key=%s target=%s", idempotency_key, target)
                return IngestResult(status="duplicate", record=existing)

            record = ServerRecord(
                idempotency_key=idempotency_key,
                domain=domain,
                target=target,
                kind=kind,
                device_id=device_id,
                payload_json=dict(payload),
                metadata_json=dict(metadata or {}),
                created_at=utc_now(),
            )
            await ingest_repo.insert_record(session, record)
            record.result_json = await effect(session, record)
            session.add(record)
    except DuplicateConflict:
        logger.info("ingest lost race key=%s target=%s", idempotency_key, target)
        return await _lookup_after_conflict(session, idempotency_key)
    except IntegrityError as exc:
        if not is_duplicate_error(exc):
            raise
        logger.info("ingest effect conflict key=%s target=%s", idempotency_key, target)
        return await _lookup_after_conflict(session, idempotency_key)
    except OperationalError as exc:
        logger.warning("ingest transient db error key=%s", idempotency_key, exc_info=True)
        raise TransientIngestError("database unavailable") from exc

    logger.info("ingest created key=%s target=%s kind=%s", idempotency_key, target, kind)
    return IngestResult(status="created", record=record)


async def get_record(*, session: AsyncSession, idempotency_key: str) -> ServerRecord | None:
    return await ingest_repo.get_record_by_key(session, idempotency_key)
