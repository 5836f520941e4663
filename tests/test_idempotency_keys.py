from __future__ import annotations

import pytest

from fieldsync.domain.idempotency import (
    RATING_KEYS,
    SITE_VISIT_KEYS,
    FileIdentity,
    batch_upload_key,
    canonicalize,
    derive_key,
    is_valid_key,
    pick,
    scan_job_key,
    split_key,
    unordered,
)
from fieldsync.errors import DerivationError

FILE_F = FileIdentity(name="F.pdf", size=48213, total_pages=10)
DEFS = [
    {"start_page": 1, "end_page": 3, "mode": "new", "project_name": "A"},
    {"start_page": 4, "end_page": 6, "mode": "new", "project_name": "B"},
]


def test_batch_scenario_reorder_keeps_key_and_range_change_does_not():
    k1 = batch_upload_key(user_id="U1", file=FILE_F, definitions=DEFS)
    assert k1.startswith("batch_")
    assert is_valid_key(k1)

    reordered = list(reversed(DEFS))
    assert batch_upload_key(user_id="U1", file=FILE_F, definitions=reordered) == k1

    narrowed = [DEFS[0], {**DEFS[1], "end_page": 5}]
    k2 = batch_upload_key(user_id="U1", file=FILE_F, definitions=narrowed)
    assert k2 != k1


def test_derivation_is_deterministic():
    a = derive_key("visit", "u1", {"b": 2, "a": [1, 2]})
    b = derive_key("visit", "u1", {"a": [1, 2], "b": 2})
    assert a == b


@pytest.mark.parametrize(
    "change",
    [
        {"user_id": "U2"},
        {"file": FileIdentity(name="G.pdf", size=48213, total_pages=10)},
        {"file": FileIdentity(name="F.pdf", size=48214, total_pages=10)},
        {"file": FileIdentity(name="F.pdf", size=48213, total_pages=11)},
        {"definitions": [{**DEFS[0], "project_name": "C"}, DEFS[1]]},
        {"definitions": [{**DEFS[0], "mode": "existing", "project_id": "p1"}, DEFS[1]]},
    ],
)
def test_any_allow_listed_change_changes_the_key(change: dict[str, object]):
    base = {"user_id": "U1", "file": FILE_F, "definitions": DEFS}
    assert batch_upload_key(**{**base, **change}) != batch_upload_key(**base)  # type: ignore[arg-type]


def test_retry_attempt_is_part_of_the_key():
    first = batch_upload_key(user_id="U1", file=FILE_F, definitions=DEFS, retry_attempt=0)
    second = batch_upload_key(user_id="U1", file=FILE_F, definitions=DEFS, retry_attempt=1)
    assert first != second

    job0 = scan_job_key(user_id="U1", file=FILE_F, selected_pages=[1, 2])
    job1 = scan_job_key(user_id="U1", file=FILE_F, selected_pages=[1, 2], retry_attempt=1)
    assert job0 != job1


def test_fields_outside_the_allow_list_do_not_reach_the_hash():
    noisy = [{**d, "ui_color": "red", "client_row_id": i} for i, d in enumerate(DEFS)]
    assert batch_upload_key(user_id="U1", file=FILE_F, definitions=noisy) == batch_upload_key(
        user_id="U1", file=FILE_F, definitions=DEFS
    )

    visit = {"id": "v1", "project_id": "p1", "visit_date": "2026-10-01", "notes": "ok"}
    with_noise = {**visit, "draft_saved_at": 1712345678901}
    assert SITE_VISIT_KEYS.derive("U1", kind="create", payload=visit) == SITE_VISIT_KEYS.derive(
        "U1", kind="create", payload=with_noise
    )


def test_selected_pages_are_a_set():
    a = scan_job_key(user_id="U1", file=FILE_F, selected_pages=[3, 1, 2])
    b = scan_job_key(user_id="U1", file=FILE_F, selected_pages=[1, 2, 3])
    assert a == b
    assert a.startswith("job_")
    assert scan_job_key(user_id="U1", file=FILE_F, selected_pages=[1, 2]) != a


def test_site_visit_id_lists_are_unordered_but_kind_matters():
    visit = {"id": "v1", "employer_ids": ["e2", "e1"], "reason_ids": ["r1", "r3"]}
    swapped = {"id": "v1", "employer_ids": ["e1", "e2"], "reason_ids": ["r3", "r1"]}
    create_key = SITE_VISIT_KEYS.derive("U1", kind="create", payload=visit)
    assert create_key.startswith("visit_")
    assert SITE_VISIT_KEYS.derive("U1", kind="create", payload=swapped) == create_key
    assert SITE_VISIT_KEYS.derive("U1", kind="update", payload=visit) != create_key


def test_revision_separates_repeated_values_of_one_entity():
    visit = {"id": "v1", "notes": "a"}
    rev2 = SITE_VISIT_KEYS.derive("U1", kind="update", payload=visit, revision=2)
    rev4 = SITE_VISIT_KEYS.derive("U1", kind="update", payload=visit, revision=4)
    assert rev2 != rev4
    assert SITE_VISIT_KEYS.derive("U1", kind="update", payload=visit, revision=2) == rev2
    assert SITE_VISIT_KEYS.derive("U1", kind="update", payload=visit) not in (rev2, rev4)


def test_rating_criteria_keep_their_order():
    r1 = {"id": "r1", "employer_id": "e1", "track": "a", "criteria": [3, 1]}
    r2 = {"id": "r1", "employer_id": "e1", "track": "a", "criteria": [1, 3]}
    assert RATING_KEYS.derive("U1", kind="create", payload=r1) != RATING_KEYS.derive(
        "U1", kind="create", payload=r2
    )


def test_canonicalize_normalizes_numbers_and_drops_none():
    assert canonicalize({"a": 10.0, "b": None, "c": [1.5, 2.0]}) == {"a": 10, "c": [1.5, 2]}
    assert derive_key("batch", {"n": 10}) == derive_key("batch", {"n": 10.0})
    assert derive_key("batch", "x", None) == derive_key("batch", "x")
    assert canonicalize(unordered([{"b": 1}, {"a": 2}])) == [{"a": 2}, {"b": 1}]
    assert canonicalize(frozenset({3, 1, 2})) == [1, 2, 3]


@pytest.mark.parametrize(
    "bad",
    [float("nan"), float("inf"), {1: "int key"}, object(), b"bytes"],
)
def test_canonicalize_rejects_unsupported_input(bad: object):
    with pytest.raises(DerivationError):
        canonicalize(bad)


@pytest.mark.parametrize("domain", ["", "Batch", "batch_", "1job", "a-b"])
def test_derive_key_rejects_bad_domains(domain: str):
    with pytest.raises(DerivationError):
        derive_key(domain, "x")


def test_split_key_and_validity():
    key = derive_key("site_visit", "x")
    parsed = split_key(key)
    assert parsed is not None
    assert parsed[0] == "site_visit"
    assert len(parsed[1]) == 64

    assert split_key("batch_nothex") is None
    assert not is_valid_key("batch_" + "A" * 64)
    assert not is_valid_key("")


def test_pick_is_an_allow_list():
    assert pick({"a": 1, "b": None, "c": 3}, ("a", "b", "z")) == {"a": 1}
