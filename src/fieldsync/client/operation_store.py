from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import Engine, func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, SQLModel, col, create_engine, select

from fieldsync.client.models import (
    CLIENT_TABLES,
    COMPLETED,
    FAILED,
    PENDING,
    SYNCING,
    LocalOperation,
    LocalSyncMeta,
    OperationKind,
    OperationStatus,
)
from fieldsync.config import settings
from fieldsync.db_urls import ensure_sqlite_parent_dir, normalize_database_url_for_sync
from fieldsync.domain.duplicates import is_duplicate_error
from fieldsync.domain.idempotency import is_valid_key
from fieldsync.errors import (
    DerivationError,
    InvalidTransitionError,
    OperationNotCancellableError,
    OperationNotFoundError,
    StoreClosedError,
)
from fieldsync.sync_utils import now_ms

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING: frozenset({PENDING, SYNCING}),
    SYNCING: frozenset({COMPLETED, PENDING, FAILED}),
    FAILED: frozenset({FAILED, PENDING}),
    COMPLETED: frozenset(),
}

_PATCHABLE_FIELDS = frozenset({"status", "retry_count", "last_attempt_at_ms", "last_error"})
_KINDS = frozenset({"create", "update", "delete"})


@dataclass(frozen=True)
class NewOperation:
    idempotency_key: str
    kind: OperationKind
    target: str
    payload: dict[str, Any] = field(default_factory=dict)


class LocalOperationStore:
    """Durable device-local queue of operations, keyed by id and unique per idempotency key.

    The store owns its own engine and has an explicit lifecycle: `open()` creates
    the tables and recovers from a crash (operations left `syncing` go back to
    `pending`), `close()` releases the engine. Calls are synchronous.
    """

    def __init__(
        self,
        database_url: str | None = None,
        *,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._database_url = database_url or settings.client_database_url
        self._clock = clock
        self._engine: Engine | None = None
        self._lock = threading.RLock()

    def open(self) -> "LocalOperationStore":
        if self._engine is not None:
            return self
        ensure_sqlite_parent_dir(self._database_url)
        engine = create_engine(normalize_database_url_for_sync(self._database_url), echo=False)
        SQLModel.metadata.create_all(engine, tables=CLIENT_TABLES)
        self._engine = engine
        self._recover()
        return self

    def close(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()

    def __enter__(self) -> "LocalOperationStore":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    def _session(self) -> Session:
        if self._engine is None:
            raise StoreClosedError("operation store is not open")
        return Session(self._engine, expire_on_commit=False)

    def _recover(self) -> None:
        now = self._clock()
        with self._lock, self._session() as session:
            in_flight = session.exec(
                select(LocalOperation).where(LocalOperation.status == SYNCING)
            ).all()
            for op in in_flight:
                # The previous attempt never confirmed; replay is safe because the key is stable.
                op.status = PENDING
                op.updated_at_ms = now
                session.add(op)

            finished = session.exec(
                select(LocalOperation).where(LocalOperation.status == COMPLETED)
            ).all()
            for op in finished:
                session.delete(op)
            session.commit()

        if in_flight or finished:
            logger.warning(
                "operation store recovery: requeued=%s purged_completed=%s",
                len(in_flight),
                len(finished),
            )

    def enqueue(self, new_op: NewOperation) -> LocalOperation:
        """Insert unless the idempotency key is already queued; return the stored entry."""

        if not is_valid_key(new_op.idempotency_key):
            raise DerivationError(f"malformed idempotency key: {new_op.idempotency_key!r}")
        if new_op.kind not in _KINDS:
            raise ValueError(f"unknown operation kind: {new_op.kind}")

        with self._lock, self._session() as session:
            existing = self._get_by_key(session, new_op.idempotency_key)
            if existing is not None:
                logger.info(
                    "enqueue ignored, key already queued id=%s key=%s",
                    existing.id,
                    existing.idempotency_key,
                )
                return existing

            now = self._clock()
            last_seq = session.exec(select(func.max(LocalOperation.seq))).one()
            op = LocalOperation(
                id=uuid.uuid4().hex,
                idempotency_key=new_op.idempotency_key,
                kind=new_op.kind,
                target=new_op.target,
                payload_json=dict(new_op.payload),
                status=PENDING,
                retry_count=0,
                seq=int(last_seq or 0) + 1,
                created_at_ms=now,
                updated_at_ms=now,
            )
            session.add(op)
            try:
                session.commit()
            except IntegrityError as exc:
                # Another tab/process sharing the file queued the same key first.
                session.rollback()
                if not is_duplicate_error(exc):
                    raise
                existing = self._get_by_key(session, new_op.idempotency_key)
                if existing is None:
                    raise
                return existing

        logger.info("enqueued id=%s target=%s kind=%s", op.id, op.target, op.kind)
        return op

    @staticmethod
    def _get_by_key(session: Session, idempotency_key: str) -> LocalOperation | None:
        return session.exec(
            select(LocalOperation).where(LocalOperation.idempotency_key == idempotency_key)
        ).first()

    def get(self, operation_id: str) -> LocalOperation | None:
        with self._session() as session:
            return session.get(LocalOperation, operation_id)

    def get_by_key(self, idempotency_key: str) -> LocalOperation | None:
        with self._session() as session:
            return self._get_by_key(session, idempotency_key)

    def list(self, status: OperationStatus | None = None) -> list[LocalOperation]:
        stmt = select(LocalOperation)
        if status is not None:
            stmt = stmt.where(LocalOperation.status == status)
        stmt = stmt.order_by(col(LocalOperation.seq), col(LocalOperation.created_at_ms), col(LocalOperation.id))
        with self._session() as session:
            return list(session.exec(stmt).all())

    def update(self, operation_id: str, **patch: Any) -> LocalOperation:
        unknown = set(patch) - _PATCHABLE_FIELDS
        if unknown:
            raise ValueError(f"fields not patchable: {sorted(unknown)}")

        with self._lock, self._session() as session:
            op = session.get(LocalOperation, operation_id)
            if op is None:
                raise OperationNotFoundError(operation_id)

            requested = patch.get("status")
            if requested is not None and requested not in _ALLOWED_TRANSITIONS.get(op.status, ()):
                raise InvalidTransitionError(operation_id, op.status, str(requested))

            for name, value in patch.items():
                setattr(op, name, value)
            op.updated_at_ms = self._clock()
            session.add(op)
            session.commit()
            return op

    def remove(self, operation_id: str) -> bool:
        with self._lock, self._session() as session:
            op = session.get(LocalOperation, operation_id)
            if op is None:
                return False
            session.delete(op)
            session.commit()
            return True

    def _remove_if(self, operation_id: str, allowed: frozenset[str]) -> LocalOperation:
        with self._lock, self._session() as session:
            op = session.get(LocalOperation, operation_id)
            if op is None:
                raise OperationNotFoundError(operation_id)
            if op.status not in allowed:
                raise OperationNotCancellableError(operation_id, op.status)
            session.delete(op)
            session.commit()
            return op

    def cancel(self, operation_id: str) -> LocalOperation:
        """Undo a queued operation before it starts syncing."""
        return self._remove_if(operation_id, frozenset({PENDING}))

    def discard(self, operation_id: str) -> LocalOperation:
        """Drop an operation the user gave up on; never one that is in flight."""
        return self._remove_if(operation_id, frozenset({PENDING, FAILED}))

    def clear(self, status: OperationStatus = PENDING) -> int:
        """Bulk discard of every operation in `status`. Returns how many were removed."""

        if status not in (PENDING, FAILED):
            raise ValueError(f"only pending or failed operations can be cleared, not {status}")
        with self._lock, self._session() as session:
            ops = session.exec(select(LocalOperation).where(LocalOperation.status == status)).all()
            for op in ops:
                session.delete(op)
            session.commit()
        return len(ops)

    def count_by_status(self) -> dict[str, int]:
        counts = {PENDING: 0, SYNCING: 0, COMPLETED: 0, FAILED: 0}
        with self._session() as session:
            rows = session.exec(
                select(LocalOperation.status, func.count(col(LocalOperation.id))).group_by(
                    col(LocalOperation.status)
                )
            ).all()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def get_meta(self, key: str) -> str | None:
        with self._session() as session:
            row = session.get(LocalSyncMeta, key)
            return None if row is None else row.value

    def set_meta(self, key: str, value: str) -> None:
        with self._lock, self._session() as session:
            row = session.get(LocalSyncMeta, key)
            if row is None:
                row = LocalSyncMeta(key=key, value=value)
            else:
                row.value = value
            session.add(row)
            session.commit()
