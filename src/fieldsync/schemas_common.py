from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    """Pinned error contract for every non-2xx response.

    Clients branch on `error` (e.g. `validation_error`, `unavailable`) rather
    than on free-form messages.
    """

    error: str
    message: str
    request_id: str | None = None
    details: object | None = None
