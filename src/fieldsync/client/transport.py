"""HTTP transport from the device queue to the ingestion endpoint.

Response classification:
- 2xx: the server applied the operation (`created`) or had already applied it
  (`duplicate`). Both confirm the operation.
- 409 whose body reads as a uniqueness conflict: treated as `duplicate`.
- timeouts, connection errors, 408, 429 and 5xx: `TransientError`.
- any other 4xx: `IngestValidationError` (permanent, needs user action).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from fieldsync.config import settings
from fieldsync.domain.duplicates import is_duplicate_error
from fieldsync.errors import IngestValidationError, TransientError

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = frozenset({408, 429})


@dataclass(frozen=True)
class SubmitOutcome:
    status: Literal["created", "duplicate"]
    status_code: int
    record: dict[str, Any] | None = None


@dataclass(frozen=True)
class SubmitRequest:
    target: str
    idempotency_key: str
    kind: str
    payload: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)


def _json_body(resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(resp: httpx.Response, body: Mapping[str, Any]) -> str:
    msg = body.get("message")
    if isinstance(msg, str) and msg:
        return msg
    text = resp.text.strip()
    return text[:500] if text else f"HTTP {resp.status_code}"


class IngestClient:
    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_seconds: float | None = None,
        device_id: str | None = None,
        api_prefix: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = (base_url or settings.sync_base_url).rstrip("/")
        self._timeout = (
            timeout_seconds if timeout_seconds is not None else settings.sync_request_timeout_seconds
        )
        self._device_id = (device_id if device_id is not None else settings.device_id).strip()
        self._api_prefix = (api_prefix if api_prefix is not None else settings.api_prefix).rstrip("/")
        self._transport = transport

    def _url(self, target: str) -> str:
        return f"{self._base_url}{self._api_prefix}/ingest/{target}"

    def _headers(self, idempotency_key: str) -> dict[str, str]:
        headers = {"Idempotency-Key": idempotency_key}
        if self._device_id:
            headers["X-Device-Id"] = self._device_id
        return headers

    async def _post_json(
        self, url: str, payload: dict[str, Any], headers: dict[str, str]
    ) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            return await client.post(url, headers=headers, json=payload)

    async def submit(self, request: SubmitRequest) -> SubmitOutcome:
        url = self._url(request.target)
        body = {
            "idempotency_key": request.idempotency_key,
            "kind": request.kind,
            "payload": request.payload,
            "metadata": request.metadata,
        }
        try:
            resp = await self._post_json(url, body, self._headers(request.idempotency_key))
        except httpx.TimeoutException as exc:
            raise TransientError(f"timeout posting to {request.target}") from exc
        except httpx.TransportError as exc:
            raise TransientError(f"network error posting to {request.target}: {exc}") from exc

        return self._classify(request, resp)

    def _classify(self, request: SubmitRequest, resp: httpx.Response) -> SubmitOutcome:
        code = resp.status_code
        data = _json_body(resp)

        if 200 <= code < 300:
            status = data.get("status")
            if status not in ("created", "duplicate"):
                status = "created" if code == 201 else "duplicate"
            record = data.get("record")
            return SubmitOutcome(
                status=status,
                status_code=code,
                record=record if isinstance(record, dict) else None,
            )

        if code == 409 and is_duplicate_error(data):
            logger.info("409 duplicate treated as confirmed key=%s", request.idempotency_key)
            return SubmitOutcome(status="duplicate", status_code=code)

        if code in _TRANSIENT_STATUS_CODES or code >= 500:
            raise TransientError(_error_message(resp, data), status_code=code)

        raise IngestValidationError(
            _error_message(resp, data), status_code=code, details=data.get("details")
        )
