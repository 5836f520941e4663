"""Unified exception handling (ErrorResponse).

Every API error returns the same JSON shape:
  {error, message, request_id, details}
Device clients branch on the HTTP status: 422 is a permanent rejection the user
has to act on, 503 (with Retry-After) is retried with backoff.
"""

from __future__ import annotations

import logging
from typing import cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from fieldsync.errors import IngestValidationError, TransientIngestError
from fieldsync.schemas_common import ErrorResponse

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 1

_ERROR_CODES: dict[int, str] = {
    400: "bad_request",
    404: "not_found",
    405: "method_not_allowed",
    422: "validation_error",
    503: "unavailable",
}


def _error_response(
    request: Request,
    status_code: int,
    message: str,
    *,
    details: object | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    payload = ErrorResponse(
        error=_ERROR_CODES.get(status_code, f"http_{status_code}"),
        message=message,
        request_id=getattr(request.state, "request_id", None),
        details=details,
    )
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder(payload, exclude_none=True),
        headers=headers,
    )


async def _ingest_rejected_handler(request: Request, exc: Exception) -> JSONResponse:
    rejected = cast(IngestValidationError, exc)
    logger.info("ingest rejected path=%s: %s", request.url.path, rejected)
    return _error_response(request, 422, str(rejected), details=rejected.details)


async def _ingest_unavailable_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.warning("ingest unavailable path=%s: %s", request.url.path, exc)
    return _error_response(
        request, 503, str(exc), headers={"Retry-After": str(RETRY_AFTER_SECONDS)}
    )


async def _http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    http_exc = cast(StarletteHTTPException, exc)
    return _error_response(
        request,
        http_exc.status_code,
        str(http_exc.detail),
        headers=getattr(http_exc, "headers", None),
    )


async def _validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    validation_exc = cast(RequestValidationError, exc)
    return _error_response(
        request, 422, "Request validation error", details=validation_exc.errors()
    )


async def _unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    logger.exception(
        "unhandled exception request_id=%s method=%s path=%s",
        request_id,
        request.method,
        request.url.path,
        exc_info=exc,
    )
    payload = ErrorResponse(
        error="internal_error",
        message="Internal server error",
        request_id=request_id,
    )
    return JSONResponse(status_code=500, content=jsonable_encoder(payload, exclude_none=True))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(IngestValidationError, _ingest_rejected_handler)
    app.add_exception_handler(TransientIngestError, _ingest_unavailable_handler)
    app.add_exception_handler(StarletteHTTPException, _http_exception_handler)
    app.add_exception_handler(RequestValidationError, _validation_exception_handler)
    app.add_exception_handler(Exception, _unhandled_exception_handler)
