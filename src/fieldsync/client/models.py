# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from typing import Any, Literal, Optional

from sqlalchemy import Column, Text
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel

OperationKind = Literal["create", "update", "delete"]
OperationStatus = Literal["pending", "syncing", "completed", "failed"]

PENDING: OperationStatus = "pending"
SYNCING: OperationStatus = "syncing"
COMPLETED: OperationStatus = "completed"
FAILED: OperationStatus = "failed"


class LocalOperation(SQLModel, table=True):
    """A queued mutation waiting to be replayed against the ingestion endpoint."""

    __tablename__ = "local_operations"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: str = Field(primary_key=True, min_length=1, max_length=36)
    idempotency_key: str = Field(unique=True, index=True, min_length=1, max_length=128)
    kind: str = Field(max_length=16)
    target: str = Field(index=True, max_length=64)
    payload_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))

    status: str = Field(default=PENDING, index=True, max_length=16)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = Field(default=None, sa_column=Column(Text, nullable=True))

    # Local creation order; epoch-ms timestamps can tie on fast double taps.
    seq: int = Field(default=0, index=True)
    created_at_ms: int = Field(default=0, index=True)
    last_attempt_at_ms: Optional[int] = Field(default=None)
    updated_at_ms: int = Field(default=0)


class LocalSyncMeta(SQLModel, table=True):
    __tablename__ = "local_sync_meta"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    key: str = Field(primary_key=True, max_length=255)
    value: str = Field(sa_column=Column(Text, nullable=False))


CLIENT_TABLES = [LocalOperation.__table__, LocalSyncMeta.__table__]  # pyright: ignore[reportAttributeAccessIssue]
