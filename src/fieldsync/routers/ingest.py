from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Request, Response, status
from sqlmodel.ext.asyncio.session import AsyncSession

from fieldsync.db import get_session
from fieldsync.models import ServerRecord
from fieldsync.schemas_ingest import IngestRequest, IngestResponse, ServerRecordOut
from fieldsync.services import ingest_service

router = APIRouter(prefix="/ingest", tags=["ingest"])


def _header_first(request: Request, names: list[str]) -> str | None:
    for n in names:
        v = request.headers.get(n)
        if v and v.strip():
            return v.strip()[:128]
    return None


def _record_out(row: ServerRecord) -> ServerRecordOut:
    return ServerRecordOut(
        idempotency_key=row.idempotency_key,
        domain=row.domain,
        target=row.target,
        kind=row.kind,  # pyright: ignore[reportArgumentType]
        device_id=row.device_id,
        result=row.result_json,
        created_at=row.created_at,
    )


@router.post(
    "/{target}",
    response_model=IngestResponse,
    responses={201: {"model": IngestResponse, "description": "Created"}},
)
async def ingest_operation(
    payload: IngestRequest,
    request: Request,
    response: Response,
    target: Annotated[str, Path(min_length=1, max_length=64)],
    idempotency_key_header: Annotated[str | None, Header(alias="Idempotency-Key")] = None,
    session: AsyncSession = Depends(get_session),
) -> IngestResponse:
    if idempotency_key_header is not None:
        header_key = idempotency_key_header.strip()
        if header_key and header_key != payload.idempotency_key:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Idempotency-Key header does not match body",
            )

    device_id = _header_first(request, ["X-Device-Id", "X-Field-Device-Id"])
    # IngestValidationError (422) and TransientIngestError (503) are rendered by
    # the registered error handlers.
    result = await ingest_service.ingest(
        session=session,
        target=target,
        idempotency_key=payload.idempotency_key,
        kind=payload.kind,
        payload=payload.payload,
        metadata=payload.metadata,
        device_id=device_id,
    )

    response.status_code = (
        status.HTTP_201_CREATED if result.status == "created" else status.HTTP_200_OK
    )
    return IngestResponse(status=result.status, record=_record_out(result.record))


@router.get("/records/{idempotency_key}", response_model=ServerRecordOut)
async def get_ingest_record(
    idempotency_key: str,
    session: AsyncSession = Depends(get_session),
) -> ServerRecordOut:
    row = await ingest_service.get_record(session=session, idempotency_key=idempotency_key)
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="record not found")
    return _record_out(row)
