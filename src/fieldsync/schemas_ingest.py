from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

OperationKind = Literal["create", "update", "delete"]
IngestStatus = Literal["created", "duplicate"]


class IngestRequest(BaseModel):
    idempotency_key: str = Field(min_length=3, max_length=128)
    kind: OperationKind = "create"
    payload: dict[str, Any] = Field(default_factory=dict)
    # Operation metadata (operation id, local creation time). Never part of the key.
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("idempotency_key")
    @classmethod
    def _strip_key(cls, v: str) -> str:
        return v.strip()


class ServerRecordOut(BaseModel):
    idempotency_key: str
    domain: str
    target: str
    kind: OperationKind
    device_id: str | None = None
    result: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class IngestResponse(BaseModel):
    status: IngestStatus
    record: ServerRecordOut


class BatchDefinition(BaseModel):
    start_page: int = Field(ge=1)
    end_page: int = Field(ge=1)
    mode: Literal["new", "existing"] = "new"
    project_id: str | None = Field(default=None, max_length=64)
    project_name: str | None = Field(default=None, max_length=500)


class BatchUploadPayload(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    file_name: str = Field(min_length=1, max_length=500)
    file_size: int = Field(ge=0)
    total_pages: int = Field(ge=1)
    definitions: list[BatchDefinition] = Field(min_length=1)
    retry_attempt: int = Field(default=0, ge=0)


class ScanJobPayload(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    file_name: str = Field(min_length=1, max_length=500)
    file_size: int = Field(ge=0)
    selected_pages: list[int] = Field(min_length=1)


class EntityPayload(BaseModel):
    id: str = Field(min_length=1, max_length=128)
    client_updated_at_ms: int = 0
    data: dict[str, Any] = Field(default_factory=dict)
