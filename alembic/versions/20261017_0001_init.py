"""init schema (ingestion records + business effects)

Revision ID: 20261017_0001
Revises: None
Create Date: 2026-10-17 00:00:00
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


revision = "20261017_0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(table_name: str) -> bool:
    bind = op.get_bind()
    insp = inspect(bind)
    return table_name in insp.get_table_names()


def upgrade() -> None:
    if not _table_exists("server_records"):
        op.create_table(
            "server_records",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("idempotency_key", sa.String(length=128), nullable=False),
            sa.Column("domain", sa.String(length=48), nullable=False),
            sa.Column("target", sa.String(length=64), nullable=False),
            sa.Column("kind", sa.String(length=16), nullable=False),
            sa.Column("device_id", sa.String(length=128), nullable=True),
            sa.Column("payload_json", sa.JSON(), nullable=True),
            sa.Column("metadata_json", sa.JSON(), nullable=True),
            sa.Column("result_json", sa.JSON(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        # The unique index is what makes concurrent submissions of one key collapse to one record.
        op.create_index(
            "ix_server_records_idempotency_key", "server_records", ["idempotency_key"], unique=True
        )
        op.create_index("ix_server_records_domain", "server_records", ["domain"], unique=False)
        op.create_index("ix_server_records_target", "server_records", ["target"], unique=False)
        op.create_index("ix_server_records_device_id", "server_records", ["device_id"], unique=False)
        op.create_index("ix_server_records_created_at", "server_records", ["created_at"], unique=False)

    if not _table_exists("batch_upload_jobs"):
        op.create_table(
            "batch_upload_jobs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("source_key", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("file_name", sa.String(length=500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False),
            sa.Column("total_pages", sa.Integer(), nullable=False),
            sa.Column("definitions_json", sa.JSON(), nullable=True),
            sa.Column("retry_attempt", sa.Integer(), nullable=False, server_default=sa.text("0")),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index(
            "ix_batch_upload_jobs_source_key", "batch_upload_jobs", ["source_key"], unique=True
        )
        op.create_index("ix_batch_upload_jobs_user_id", "batch_upload_jobs", ["user_id"], unique=False)
        op.create_index("ix_batch_upload_jobs_status", "batch_upload_jobs", ["status"], unique=False)
        op.create_index(
            "ix_batch_upload_jobs_created_at", "batch_upload_jobs", ["created_at"], unique=False
        )

    if not _table_exists("scan_jobs"):
        op.create_table(
            "scan_jobs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("source_key", sa.String(length=128), nullable=False),
            sa.Column("user_id", sa.String(length=64), nullable=False),
            sa.Column("file_name", sa.String(length=500), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=False),
            sa.Column("selected_pages_json", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        )
        op.create_index("ix_scan_jobs_source_key", "scan_jobs", ["source_key"], unique=True)
        op.create_index("ix_scan_jobs_user_id", "scan_jobs", ["user_id"], unique=False)
        op.create_index("ix_scan_jobs_status", "scan_jobs", ["status"], unique=False)
        op.create_index("ix_scan_jobs_created_at", "scan_jobs", ["created_at"], unique=False)

    if not _table_exists("entity_states"):
        op.create_table(
            "entity_states",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True, nullable=False),
            sa.Column("target", sa.String(length=64), nullable=False),
            sa.Column("entity_id", sa.String(length=128), nullable=False),
            sa.Column("data_json", sa.JSON(), nullable=True),
            sa.Column("last_source_key", sa.String(length=128), nullable=False),
            sa.Column(
                "client_updated_at_ms", sa.BigInteger(), nullable=False, server_default=sa.text("0")
            ),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
            sa.UniqueConstraint("target", "entity_id", name="uq_entity_states_target_entity_id"),
        )
        op.create_index("ix_entity_states_target", "entity_states", ["target"], unique=False)
        op.create_index("ix_entity_states_entity_id", "entity_states", ["entity_id"], unique=False)
        op.create_index(
            "ix_entity_states_client_updated_at_ms",
            "entity_states",
            ["client_updated_at_ms"],
            unique=False,
        )
        op.create_index("ix_entity_states_updated_at", "entity_states", ["updated_at"], unique=False)
        op.create_index("ix_entity_states_deleted_at", "entity_states", ["deleted_at"], unique=False)
        op.create_index("ix_entity_states_created_at", "entity_states", ["created_at"], unique=False)


def downgrade() -> None:
    # Downgrading drops accepted records; only a minimal implementation is provided.
    for name in ["entity_states", "scan_jobs", "batch_upload_jobs", "server_records"]:
        if _table_exists(name):
            op.drop_table(name)
