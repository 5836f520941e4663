"""Business effects applied exactly once per ServerRecord.

Each effect runs inside the transaction that inserted the ServerRecord, so an
effect either commits together with its record or not at all.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel, ValidationError
from sqlmodel.ext.asyncio.session import AsyncSession

from fieldsync.errors import IngestValidationError
from fieldsync.models import BatchUploadJob, EntityState, ScanJob, ServerRecord, utc_now
from fieldsync.repositories import ingest_repo
from fieldsync.schemas_ingest import (
    BatchUploadPayload,
    EntityPayload,
    ScanJobPayload,
)
from fieldsync.sync_utils import clamp_client_updated_at_ms, now_ms

EffectHandler = Callable[[AsyncSession, ServerRecord], Awaitable[dict[str, Any]]]

ENTITY_TARGETS = frozenset({"site_visit", "rating"})


def _parse(model: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise IngestValidationError(
            "invalid payload", details=exc.errors(include_url=False)
        ) from exc


def _require_create(record: ServerRecord) -> None:
    if record.kind != "create":
        raise IngestValidationError(f"{record.target} only accepts create operations")


async def create_batch_upload_job(session: AsyncSession, record: ServerRecord) -> dict[str, Any]:
    _require_create(record)
    payload: BatchUploadPayload = _parse(BatchUploadPayload, record.payload_json)

    for d in payload.definitions:
        if d.start_page > d.end_page or d.end_page > payload.total_pages:
            raise IngestValidationError(
                "invalid page range",
                details={"start_page": d.start_page, "end_page": d.end_page},
            )
        if d.mode == "existing" and not d.project_id:
            raise IngestValidationError("existing project definition requires project_id")

    job = BatchUploadJob(
        source_key=record.idempotency_key,
        user_id=payload.user_id,
        file_name=payload.file_name,
        file_size=payload.file_size,
        total_pages=payload.total_pages,
        definitions_json=[d.model_dump(exclude_none=True) for d in payload.definitions],
        retry_attempt=payload.retry_attempt,
    )
    session.add(job)
    await session.flush()
    return {"batch_job_id": job.id, "status": job.status}


async def create_scan_job(session: AsyncSession, record: ServerRecord) -> dict[str, Any]:
    _require_create(record)
    payload: ScanJobPayload = _parse(ScanJobPayload, record.payload_json)
    if any(p < 1 for p in payload.selected_pages):
        raise IngestValidationError("page numbers start at 1")

    job = ScanJob(
        source_key=record.idempotency_key,
        user_id=payload.user_id,
        file_name=payload.file_name,
        file_size=payload.file_size,
        selected_pages_json=sorted(set(payload.selected_pages)),
    )
    session.add(job)
    await session.flush()
    return {"scan_job_id": job.id, "status": job.status}


async def apply_entity_mutation(session: AsyncSession, record: ServerRecord) -> dict[str, Any]:
    payload: EntityPayload = _parse(EntityPayload, record.payload_json)
    incoming_ms = clamp_client_updated_at_ms(payload.client_updated_at_ms) or now_ms()

    row = await ingest_repo.get_entity_state(session, record.target, payload.id)
    if record.kind == "update" and (row is None or row.deleted_at is not None):
        raise IngestValidationError(f"{record.target} not found", details={"id": payload.id})
    if record.kind == "delete" and row is None:
        # Created and deleted while offline; nothing to remove.
        return {"entity_id": payload.id, "applied": True}

    if row is not None and incoming_ms < row.client_updated_at_ms:
        # Last write wins: an older edit is recorded but leaves the state untouched.
        return {"entity_id": payload.id, "applied": False, "reason": "stale"}

    now = utc_now()
    if row is None:
        row = EntityState(
            target=record.target,
            entity_id=payload.id,
            last_source_key=record.idempotency_key,
            created_at=now,
        )

    row.client_updated_at_ms = incoming_ms
    row.last_source_key = record.idempotency_key
    row.updated_at = now
    if record.kind == "delete":
        row.deleted_at = now
    elif record.kind == "update":
        row.data_json = {**row.data_json, **payload.data}
    else:
        row.data_json = dict(payload.data)
        row.deleted_at = None
    session.add(row)
    await session.flush()
    return {"entity_id": payload.id, "applied": True}


_EFFECTS: dict[str, EffectHandler] = {
    "batch_upload": create_batch_upload_job,
    "scan_job": create_scan_job,
    **{t: apply_entity_mutation for t in ENTITY_TARGETS},
}


def get_effect(target: str) -> EffectHandler | None:
    return _EFFECTS.get(target)
