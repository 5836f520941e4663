# basedpyright: reportAssignmentType=false
# basedpyright: reportIncompatibleVariableOverride=false

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, UniqueConstraint
from sqlalchemy.types import JSON as SAJSON
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ServerRecord(SQLModel, table=True):
    """Durable result of the first successful apply of an idempotency key."""

    __tablename__ = "server_records"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    # The uniqueness constraint on this column is the cross-device lock.
    idempotency_key: str = Field(unique=True, index=True, min_length=1, max_length=128)
    domain: str = Field(index=True, max_length=48)
    target: str = Field(index=True, max_length=64)
    kind: str = Field(max_length=16)
    device_id: Optional[str] = Field(default=None, index=True, max_length=128)

    payload_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    metadata_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    result_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))

    created_at: datetime = Field(default_factory=utc_now, index=True)


class BatchUploadJob(SQLModel, table=True):
    __tablename__ = "batch_upload_jobs"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    source_key: str = Field(unique=True, index=True, max_length=128)
    user_id: str = Field(index=True, max_length=64)

    file_name: str = Field(max_length=500)
    file_size: int
    total_pages: int
    definitions_json: list[dict[str, Any]] = Field(
        default_factory=list, sa_column=Column(SAJSON)
    )
    retry_attempt: int = Field(default=0)

    status: str = Field(default="pending", index=True, max_length=20)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class ScanJob(SQLModel, table=True):
    __tablename__ = "scan_jobs"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]

    id: Optional[int] = Field(default=None, primary_key=True)
    source_key: str = Field(unique=True, index=True, max_length=128)
    user_id: str = Field(index=True, max_length=64)

    file_name: str = Field(max_length=500)
    file_size: int
    selected_pages_json: list[int] = Field(default_factory=list, sa_column=Column(SAJSON))

    status: str = Field(default="queued", index=True, max_length=20)
    created_at: datetime = Field(default_factory=utc_now, index=True)


class EntityState(SQLModel, table=True):
    """Last-write-wins state for field entities (site visits, ratings)."""

    __tablename__ = "entity_states"  # pyright: ignore[reportAssignmentType,reportIncompatibleVariableOverride]
    __table_args__ = (
        UniqueConstraint("target", "entity_id", name="uq_entity_states_target_entity_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    target: str = Field(index=True, max_length=64)
    entity_id: str = Field(index=True, min_length=1, max_length=128)

    data_json: dict[str, Any] = Field(default_factory=dict, sa_column=Column(SAJSON))
    last_source_key: str = Field(max_length=128)

    client_updated_at_ms: int = Field(default=0, index=True)
    updated_at: datetime = Field(default_factory=utc_now, index=True)
    deleted_at: Optional[datetime] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now, index=True)


SERVER_TABLES = [  # pyright: ignore[reportUnknownVariableType]
    ServerRecord.__table__,  # pyright: ignore[reportAttributeAccessIssue]
    BatchUploadJob.__table__,  # pyright: ignore[reportAttributeAccessIssue]
    ScanJob.__table__,  # pyright: ignore[reportAttributeAccessIssue]
    EntityState.__table__,  # pyright: ignore[reportAttributeAccessIssue]
]
