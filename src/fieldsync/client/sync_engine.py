from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from fieldsync.client.models import (
    COMPLETED,
    FAILED,
    PENDING,
    SYNCING,
    LocalOperation,
    OperationStatus,
)
from fieldsync.client.operation_store import LocalOperationStore
from fieldsync.client.transport import IngestClient, SubmitOutcome, SubmitRequest
from fieldsync.config import settings
from fieldsync.errors import (
    IngestValidationError,
    InvalidTransitionError,
    OperationNotFoundError,
    TransientError,
)
from fieldsync.sync_utils import now_ms

logger = logging.getLogger(__name__)

LAST_SYNC_META_KEY = "last_sync_at_ms"

StatusListener = Callable[["SyncStatus"], None]


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 1.0
    max_seconds: float = 300.0
    max_retries: int = 8

    @classmethod
    def from_settings(cls) -> "BackoffPolicy":
        return cls(
            base_seconds=settings.sync_backoff_base_seconds,
            max_seconds=settings.sync_backoff_max_seconds,
            max_retries=settings.sync_max_retries,
        )

    def delay_ms(self, retry_count: int) -> int:
        if retry_count <= 0:
            return 0
        seconds = min(self.base_seconds * (2 ** (retry_count - 1)), self.max_seconds)
        return int(seconds * 1000)

    def next_attempt_at_ms(self, op: LocalOperation) -> int | None:
        if op.retry_count <= 0 or op.last_attempt_at_ms is None:
            return None
        return op.last_attempt_at_ms + self.delay_ms(op.retry_count)


@dataclass(frozen=True)
class SyncStatus:
    pending_count: int
    syncing_count: int
    failed_count: int
    last_sync_at_ms: int | None


@dataclass
class DrainReport:
    """Operation ids touched by one drain, by outcome.

    `completed` and `duplicates` are both confirmed by the server and removed
    from the store; `deferred` were not attempted (backoff window or lane stop);
    `errored` hit a local store error and were put back as pending.
    """

    completed: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    errored: list[str] = field(default_factory=list)

    @property
    def confirmed_count(self) -> int:
        return len(self.completed) + len(self.duplicates)


class SyncEngine:
    """Replays queued operations against the ingestion endpoint.

    Operations are grouped into one lane per target, so a create, update and
    delete of the same entity reach the server in the order they were queued.
    A lane is strictly sequential in creation order; lanes run concurrently
    with at most `max_in_flight` requests outstanding. Only one drain runs at
    a time. A local store error is confined to the operation that hit it.
    """

    def __init__(
        self,
        store: LocalOperationStore,
        client: IngestClient,
        *,
        backoff: BackoffPolicy | None = None,
        max_in_flight: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        limit = max_in_flight if max_in_flight is not None else settings.sync_max_in_flight
        if limit < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._store = store
        self._client = client
        self._backoff = backoff or BackoffPolicy.from_settings()
        self._clock = clock
        self._drain_lock = asyncio.Lock()
        self._in_flight = asyncio.Semaphore(limit)
        self._listeners: list[StatusListener] = []

    @property
    def is_draining(self) -> bool:
        return self._drain_lock.locked()

    async def drain(self) -> DrainReport:
        async with self._drain_lock:
            report = DrainReport()
            lanes: dict[str, list[LocalOperation]] = {}
            for op in self._store.list(PENDING):
                lanes.setdefault(op.target, []).append(op)

            if not lanes:
                return report

            await asyncio.gather(*(self._run_lane(ops, report) for ops in lanes.values()))

            logger.info(
                "drain finished completed=%s duplicates=%s retried=%s failed=%s deferred=%s errored=%s",
                len(report.completed),
                len(report.duplicates),
                len(report.retried),
                len(report.failed),
                len(report.deferred),
                len(report.errored),
            )
            return report

    async def _run_lane(self, ops: list[LocalOperation], report: DrainReport) -> None:
        for idx, op in enumerate(ops):
            due_at = self._backoff.next_attempt_at_ms(op)
            if due_at is not None and self._clock() < due_at:
                # Later operations in the lane wait behind this one.
                report.deferred.extend(o.id for o in ops[idx:])
                return

            try:
                advanced = await self._attempt(op, report)
            except Exception:
                logger.exception("store error while syncing op=%s", op.id)
                self._release(op.id)
                report.errored.append(op.id)
                advanced = False

            if not advanced:
                report.deferred.extend(o.id for o in ops[idx + 1 :])
                return

    async def _attempt(self, op: LocalOperation, report: DrainReport) -> bool:
        """Submit one operation. Returns False when the lane must stop for this drain."""

        async with self._in_flight:
            current = self._store.get(op.id)
            if current is None or current.status != PENDING:
                # Cancelled or discarded while queued behind the semaphore.
                return True

            current = self._store.update(
                op.id, status=SYNCING, last_attempt_at_ms=self._clock()
            )
            self._notify()

            try:
                outcome = await self._client.submit(
                    SubmitRequest(
                        target=current.target,
                        idempotency_key=current.idempotency_key,
                        kind=current.kind,
                        payload=current.payload_json,
                        metadata={
                            "operation_id": current.id,
                            "created_at_ms": current.created_at_ms,
                            "retry_count": current.retry_count,
                        },
                    )
                )
            except TransientError as exc:
                return self._on_transient(current, str(exc), report)
            except IngestValidationError as exc:
                self._on_permanent(current, exc, report)
                return True
            except Exception as exc:
                logger.exception("unexpected error syncing op=%s", current.id)
                return self._on_transient(current, f"unexpected error: {exc}", report)

            self._on_confirmed(current, outcome, report)
            return True

    def _release(self, operation_id: str) -> None:
        """Put an operation whose bookkeeping failed back where the next drain finds it."""

        try:
            current = self._store.get(operation_id)
            if current is None:
                return
            if current.status == SYNCING:
                self._store.update(operation_id, status=PENDING)
            elif current.status == COMPLETED:
                self._store.remove(operation_id)
            self._notify()
        except Exception:
            logger.exception("could not release op=%s, recovered on next open", operation_id)

    def _on_confirmed(
        self, op: LocalOperation, outcome: SubmitOutcome, report: DrainReport
    ) -> None:
        self._store.update(op.id, status=COMPLETED, last_error=None)
        self._store.remove(op.id)
        self._store.set_meta(LAST_SYNC_META_KEY, str(self._clock()))

        if outcome.status == "duplicate":
            report.duplicates.append(op.id)
            logger.info("op=%s already applied key=%s", op.id, op.idempotency_key)
        else:
            report.completed.append(op.id)
            logger.info("op=%s synced key=%s", op.id, op.idempotency_key)
        self._notify()

    def _on_transient(self, op: LocalOperation, message: str, report: DrainReport) -> bool:
        retry_count = op.retry_count + 1
        exhausted = retry_count >= self._backoff.max_retries
        self._store.update(
            op.id,
            status=FAILED if exhausted else PENDING,
            retry_count=retry_count,
            last_error=message,
        )
        if exhausted:
            report.failed.append(op.id)
            logger.warning(
                "op=%s failed after %s transient errors: %s", op.id, retry_count, message
            )
        else:
            report.retried.append(op.id)
            logger.info(
                "op=%s transient error retry_count=%s next_in_ms=%s: %s",
                op.id,
                retry_count,
                self._backoff.delay_ms(retry_count),
                message,
            )
        self._notify()
        return False

    def _on_permanent(
        self, op: LocalOperation, exc: IngestValidationError, report: DrainReport
    ) -> None:
        self._store.update(op.id, status=FAILED, last_error=str(exc))
        report.failed.append(op.id)
        logger.warning(
            "op=%s rejected status_code=%s: %s", op.id, exc.status_code, exc
        )
        self._notify()

    def status(self) -> SyncStatus:
        counts = self._store.count_by_status()
        raw = self._store.get_meta(LAST_SYNC_META_KEY)
        return SyncStatus(
            pending_count=counts[PENDING],
            syncing_count=counts[SYNCING],
            failed_count=counts[FAILED],
            last_sync_at_ms=int(raw) if raw else None,
        )

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.status()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("sync status listener failed")

    def retry(self, operation_id: str) -> LocalOperation:
        """User-initiated retry of a failed operation; the backoff counter starts over."""

        op = self._store.get(operation_id)
        if op is None:
            raise OperationNotFoundError(operation_id)
        if op.status != FAILED:
            raise InvalidTransitionError(operation_id, op.status, PENDING)
        op = self._store.update(
            operation_id,
            status=PENDING,
            retry_count=0,
            last_error=None,
            last_attempt_at_ms=None,
        )
        self._notify()
        return op

    def cancel(self, operation_id: str) -> LocalOperation:
        op = self._store.cancel(operation_id)
        self._notify()
        return op

    def discard(self, operation_id: str) -> LocalOperation:
        op = self._store.discard(operation_id)
        self._notify()
        return op

    def clear(self, status: OperationStatus = PENDING) -> int:
        """Drop every queued operation in `status`; in-flight work is left alone."""

        removed = self._store.clear(status)
        if removed:
            logger.info("cleared %s %s operations", removed, status)
        self._notify()
        return removed
