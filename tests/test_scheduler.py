from __future__ import annotations

import asyncio

import pytest

from fieldsync.client.operation_store import LocalOperationStore, NewOperation
from fieldsync.client.scheduler import SyncScheduler
from fieldsync.client.sync_engine import SyncEngine
from fieldsync.client.transport import SubmitOutcome, SubmitRequest
from fieldsync.domain.idempotency import derive_key


class _GatedClient:
    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.calls: list[str] = []

    async def submit(self, request: SubmitRequest) -> SubmitOutcome:
        self.calls.append(request.idempotency_key)
        await self.gate.wait()
        return SubmitOutcome(status="created", status_code=201)


def _op(n: int) -> NewOperation:
    return NewOperation(
        idempotency_key=derive_key("rating", "sched", n),
        kind="create",
        target="rating",
        payload={"id": f"r{n}", "data": {}},
    )


def _scheduler(store: LocalOperationStore, client: _GatedClient, **kwargs: object) -> SyncScheduler:
    engine = SyncEngine(store, client, max_in_flight=1)  # type: ignore[arg-type]
    return SyncScheduler(engine, **kwargs)  # type: ignore[arg-type]


@pytest.mark.anyio
async def test_triggers_during_a_drain_coalesce_into_one_follow_up(store: LocalOperationStore) -> None:
    client = _GatedClient()
    scheduler = _scheduler(store, client, interval_seconds=60)
    first = store.enqueue(_op(1))

    task = scheduler.on_manual_trigger()
    assert task is not None
    while not client.calls:
        await asyncio.sleep(0)

    second = store.enqueue(_op(2))
    assert scheduler.on_manual_trigger() is task
    assert scheduler.on_connectivity_restored() is task
    assert scheduler.on_manual_trigger() is task

    client.gate.set()
    await asyncio.wait_for(task, timeout=5)

    assert scheduler.drain_count == 2
    assert client.calls == [first.idempotency_key, second.idempotency_key]
    assert store.list() == []


@pytest.mark.anyio
async def test_offline_triggers_are_ignored_until_connectivity_returns(
    store: LocalOperationStore,
) -> None:
    client = _GatedClient()
    client.gate.set()
    scheduler = _scheduler(store, client, interval_seconds=60, online=False)
    store.enqueue(_op(1))

    assert scheduler.on_manual_trigger() is None
    assert client.calls == []

    task = scheduler.on_connectivity_restored()
    assert task is not None
    await asyncio.wait_for(task, timeout=5)
    assert scheduler.online
    assert scheduler.last_report is not None
    assert len(scheduler.last_report.completed) == 1

    scheduler.on_connectivity_lost()
    assert scheduler.on_manual_trigger() is None


@pytest.mark.anyio
async def test_periodic_drains_run_until_stopped(store: LocalOperationStore) -> None:
    client = _GatedClient()
    client.gate.set()
    scheduler = _scheduler(store, client, interval_seconds=0.01)
    stop = asyncio.Event()
    runner = asyncio.create_task(scheduler.run_periodic(stop))

    store.enqueue(_op(1))
    while scheduler.drain_count < 2:
        await asyncio.sleep(0.005)
    stop.set()
    await asyncio.wait_for(runner, timeout=5)

    assert len(client.calls) == 1
    assert store.list() == []


@pytest.mark.anyio
async def test_periodic_drains_skip_while_offline(store: LocalOperationStore) -> None:
    client = _GatedClient()
    scheduler = _scheduler(store, client, interval_seconds=0.01, online=False)
    stop = asyncio.Event()
    store.enqueue(_op(1))

    runner = asyncio.create_task(scheduler.run_periodic(stop))
    await asyncio.sleep(0.05)
    stop.set()
    await asyncio.wait_for(runner, timeout=5)

    assert scheduler.drain_count == 0
    assert client.calls == []
