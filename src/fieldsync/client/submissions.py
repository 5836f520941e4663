"""Derive-and-enqueue helpers for the submitting screens.

A double tap, a resubmitted form or a second tab produce the same key and get
the already queued operation back.

Entity edits (site visits, ratings) are numbered per entity in the store's
meta table. Repeating the last edit reuses its revision and therefore its key;
any other edit takes the next revision. Only allow-listed fields are sent, so
the server never receives a change the key does not account for.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from fieldsync.client.models import LocalOperation, OperationKind
from fieldsync.client.operation_store import LocalOperationStore, NewOperation
from fieldsync.domain.idempotency import (
    BATCH_DEFINITION_FIELDS,
    RATING_KEYS,
    SITE_VISIT_KEYS,
    FileIdentity,
    KeySchema,
    batch_upload_key,
    pick,
    scan_job_key,
)
from fieldsync.errors import DerivationError
from fieldsync.sync_utils import now_ms


def enqueue_batch_upload(
    store: LocalOperationStore,
    *,
    user_id: str,
    file: FileIdentity,
    definitions: Sequence[Mapping[str, Any]],
    retry_attempt: int = 0,
) -> LocalOperation:
    if file.total_pages is None:
        raise DerivationError("batch uploads need the file's total_pages")
    if not definitions:
        raise DerivationError("batch uploads need at least one project definition")

    key = batch_upload_key(
        user_id=user_id, file=file, definitions=definitions, retry_attempt=retry_attempt
    )
    payload = {
        "user_id": user_id,
        "file_name": file.name,
        "file_size": file.size,
        "total_pages": file.total_pages,
        "definitions": [pick(d, BATCH_DEFINITION_FIELDS) for d in definitions],
        "retry_attempt": retry_attempt,
    }
    return store.enqueue(
        NewOperation(idempotency_key=key, kind="create", target="batch_upload", payload=payload)
    )


def enqueue_scan_job(
    store: LocalOperationStore,
    *,
    user_id: str,
    file: FileIdentity,
    selected_pages: Iterable[int],
    retry_attempt: int = 0,
) -> LocalOperation:
    pages = sorted(set(selected_pages))
    if not pages:
        raise DerivationError("scan jobs need at least one selected page")

    key = scan_job_key(
        user_id=user_id, file=file, selected_pages=pages, retry_attempt=retry_attempt
    )
    payload = {
        "user_id": user_id,
        "file_name": file.name,
        "file_size": file.size,
        "selected_pages": pages,
    }
    return store.enqueue(
        NewOperation(idempotency_key=key, kind="create", target="scan_job", payload=payload)
    )


def _enqueue_entity(
    store: LocalOperationStore,
    schema: KeySchema,
    target: str,
    *,
    user_id: str,
    kind: OperationKind,
    data: Mapping[str, Any],
    retry_attempt: int | None,
) -> LocalOperation:
    entity_id = data.get("id")
    if not isinstance(entity_id, str) or not entity_id:
        raise DerivationError(f"{target} entries need a string id")

    meta_key = f"revision:{target}:{entity_id}"
    raw = store.get_meta(meta_key)
    state = json.loads(raw) if raw else {}
    revision = int(state.get("revision", 0))

    def _derive(rev: int) -> str:
        return schema.derive(
            user_id, kind=kind, payload=data, retry_attempt=retry_attempt, revision=rev
        )

    key = _derive(revision) if revision else None
    if key is None or key != state.get("last_key"):
        revision += 1
        key = _derive(revision)

    payload = {
        "id": entity_id,
        "client_updated_at_ms": now_ms(),
        "data": {name: data[name] for name in schema.fields if name in data and name != "id"},
    }
    op = store.enqueue(
        NewOperation(idempotency_key=key, kind=kind, target=target, payload=payload)
    )
    store.set_meta(meta_key, json.dumps({"revision": revision, "last_key": key}))
    return op


def enqueue_site_visit(
    store: LocalOperationStore,
    *,
    user_id: str,
    visit: Mapping[str, Any],
    kind: OperationKind = "create",
    retry_attempt: int | None = None,
) -> LocalOperation:
    return _enqueue_entity(
        store,
        SITE_VISIT_KEYS,
        "site_visit",
        user_id=user_id,
        kind=kind,
        data=visit,
        retry_attempt=retry_attempt,
    )


def enqueue_rating(
    store: LocalOperationStore,
    *,
    user_id: str,
    rating: Mapping[str, Any],
    kind: OperationKind = "create",
    retry_attempt: int | None = None,
) -> LocalOperation:
    return _enqueue_entity(
        store,
        RATING_KEYS,
        "rating",
        user_id=user_id,
        kind=kind,
        data=rating,
        retry_attempt=retry_attempt,
    )
