from __future__ import annotations

from pathlib import Path

import pytest

from fieldsync.client.operation_store import LocalOperationStore, NewOperation
from fieldsync.domain.idempotency import FileIdentity, derive_key
from fieldsync.client.submissions import enqueue_batch_upload, enqueue_scan_job, enqueue_site_visit
from fieldsync.errors import (
    DerivationError,
    InvalidTransitionError,
    OperationNotCancellableError,
    OperationNotFoundError,
    StoreClosedError,
)


def _op(n: int, target: str = "site_visit", kind: str = "create") -> NewOperation:
    return NewOperation(
        idempotency_key=derive_key("visit", "op", n),
        kind=kind,  # type: ignore[arg-type]
        target=target,
        payload={"id": f"v{n}", "data": {"n": n}},
    )


def test_enqueue_same_key_twice_keeps_one_entry(store: LocalOperationStore):
    first = store.enqueue(_op(1))
    second = store.enqueue(_op(1))

    assert second.id == first.id
    assert len(store.list()) == 1
    assert first.status == "pending"
    assert first.retry_count == 0


def test_double_tap_on_batch_upload_enqueues_once(store: LocalOperationStore):
    f = FileIdentity(name="F.pdf", size=100, total_pages=10)
    defs = [{"start_page": 1, "end_page": 3, "mode": "new", "project_name": "A"}]

    a = enqueue_batch_upload(store, user_id="U1", file=f, definitions=defs)
    b = enqueue_batch_upload(store, user_id="U1", file=f, definitions=defs)
    c = enqueue_batch_upload(store, user_id="U1", file=f, definitions=defs, retry_attempt=1)

    assert a.id == b.id
    assert c.id != a.id
    assert a.payload_json["total_pages"] == 10
    assert [op.target for op in store.list()] == ["batch_upload", "batch_upload"]


def test_submission_helpers_reject_unusable_input(store: LocalOperationStore):
    with pytest.raises(DerivationError):
        enqueue_batch_upload(
            store, user_id="U1", file=FileIdentity(name="F.pdf", size=1), definitions=[{}]
        )
    with pytest.raises(DerivationError):
        enqueue_scan_job(
            store, user_id="U1", file=FileIdentity(name="F.pdf", size=1), selected_pages=[]
        )
    with pytest.raises(DerivationError):
        enqueue_site_visit(store, user_id="U1", visit={"notes": "no id"})
    assert store.list() == []


def test_enqueue_rejects_malformed_keys(store: LocalOperationStore):
    with pytest.raises(DerivationError):
        store.enqueue(NewOperation(idempotency_key="not-a-key", kind="create", target="rating"))


def test_list_is_in_creation_order_and_filters_by_status(store: LocalOperationStore):
    ops = [store.enqueue(_op(n)) for n in range(5)]
    assert [o.id for o in store.list()] == [o.id for o in ops]
    assert [o.seq for o in store.list()] == sorted(o.seq for o in ops)

    store.update(ops[2].id, status="syncing")
    assert [o.id for o in store.list("pending")] == [ops[0].id, ops[1].id, ops[3].id, ops[4].id]
    assert [o.id for o in store.list("syncing")] == [ops[2].id]


def test_status_transitions_are_validated(store: LocalOperationStore):
    op = store.enqueue(_op(1))

    with pytest.raises(InvalidTransitionError):
        store.update(op.id, status="completed")
    with pytest.raises(InvalidTransitionError):
        store.update(op.id, status="failed")

    store.update(op.id, status="syncing", last_attempt_at_ms=123)
    updated = store.update(op.id, status="failed", last_error="rejected")
    assert updated.last_attempt_at_ms == 123
    assert updated.last_error == "rejected"

    with pytest.raises(InvalidTransitionError):
        store.update(op.id, status="syncing")
    assert store.update(op.id, status="pending").status == "pending"

    store.update(op.id, status="syncing")
    store.update(op.id, status="completed")
    with pytest.raises(InvalidTransitionError):
        store.update(op.id, status="pending")


def test_update_rejects_unknown_fields_and_ids(store: LocalOperationStore):
    op = store.enqueue(_op(1))
    with pytest.raises(ValueError):
        store.update(op.id, idempotency_key="visit_" + "0" * 64)
    with pytest.raises(OperationNotFoundError):
        store.update("missing", status="syncing")


def test_cancel_only_before_sync_starts(store: LocalOperationStore):
    queued = store.enqueue(_op(1))
    in_flight = store.enqueue(_op(2))
    store.update(in_flight.id, status="syncing")

    store.cancel(queued.id)
    assert store.get(queued.id) is None

    with pytest.raises(OperationNotCancellableError):
        store.cancel(in_flight.id)
    with pytest.raises(OperationNotCancellableError):
        store.discard(in_flight.id)
    with pytest.raises(OperationNotFoundError):
        store.cancel(queued.id)


def test_discard_removes_failed_operations(store: LocalOperationStore):
    op = store.enqueue(_op(1))
    store.update(op.id, status="syncing")
    store.update(op.id, status="failed")

    with pytest.raises(OperationNotCancellableError):
        store.cancel(op.id)
    store.discard(op.id)
    assert store.get_by_key(op.idempotency_key) is None


def test_clear_is_a_bulk_discard_of_one_status(store: LocalOperationStore):
    queued = [store.enqueue(_op(n)) for n in range(3)]
    store.update(queued[0].id, status="syncing")

    assert store.clear() == 2
    assert [o.id for o in store.list()] == [queued[0].id]
    with pytest.raises(ValueError):
        store.clear("syncing")


def test_each_entity_edit_gets_its_own_key_but_a_repeat_does_not(store: LocalOperationStore):
    created = enqueue_site_visit(store, user_id="U1", visit={"id": "v1", "notes": "a"})
    to_b = enqueue_site_visit(store, user_id="U1", visit={"id": "v1", "notes": "b"}, kind="update")
    repeated = enqueue_site_visit(store, user_id="U1", visit={"id": "v1", "notes": "b"}, kind="update")
    back_to_a = enqueue_site_visit(store, user_id="U1", visit={"id": "v1", "notes": "a"}, kind="update")

    assert repeated.id == to_b.id
    assert len({created.idempotency_key, to_b.idempotency_key, back_to_a.idempotency_key}) == 3
    assert [o.id for o in store.list()] == [created.id, to_b.id, back_to_a.id]

    # Another entity keeps its own numbering.
    other = enqueue_site_visit(store, user_id="U1", visit={"id": "v2", "notes": "a"})
    assert other.idempotency_key != created.idempotency_key


def test_entity_payload_carries_only_keyed_fields(store: LocalOperationStore):
    op = enqueue_site_visit(
        store,
        user_id="U1",
        visit={"id": "v1", "notes": "x", "employer_ids": ["e2", "e1"], "debug_trace": "t-1"},
    )
    assert op.payload_json["id"] == "v1"
    assert op.payload_json["data"] == {"employer_ids": ["e2", "e1"], "notes": "x"}


def test_count_by_status_and_meta(store: LocalOperationStore):
    a = store.enqueue(_op(1))
    store.enqueue(_op(2))
    store.update(a.id, status="syncing")

    assert store.count_by_status() == {"pending": 1, "syncing": 1, "completed": 0, "failed": 0}

    assert store.get_meta("last_sync_at_ms") is None
    store.set_meta("last_sync_at_ms", "1000")
    store.set_meta("last_sync_at_ms", "2000")
    assert store.get_meta("last_sync_at_ms") == "2000"


def test_reopen_recovers_in_flight_operations(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'nested' / 'outbox.db'}"
    with LocalOperationStore(url) as s:
        in_flight = s.enqueue(_op(1))
        done = s.enqueue(_op(2))
        kept = s.enqueue(_op(3))
        s.update(in_flight.id, status="syncing", last_attempt_at_ms=5)
        s.update(done.id, status="syncing")
        s.update(done.id, status="completed")
        # Simulated crash: close without the engine finishing either operation.

    with LocalOperationStore(url) as s:
        recovered = s.get(in_flight.id)
        assert recovered is not None
        assert recovered.status == "pending"
        assert s.get(done.id) is None
        assert [o.id for o in s.list("pending")] == [in_flight.id, kept.id]


def test_closed_store_raises(tmp_path: Path):
    s = LocalOperationStore(f"sqlite:///{tmp_path / 'outbox.db'}").open()
    assert s.is_open
    s.close()
    with pytest.raises(StoreClosedError):
        s.list()


def test_stores_on_the_same_file_share_one_entry_per_key(tmp_path: Path):
    url = f"sqlite:///{tmp_path / 'shared.db'}"
    with LocalOperationStore(url) as tab_a, LocalOperationStore(url) as tab_b:
        a = tab_a.enqueue(_op(7))
        b = tab_b.enqueue(_op(7))
        assert a.id == b.id
        assert len(tab_b.list()) == 1
