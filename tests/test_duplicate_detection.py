from __future__ import annotations

import sqlite3

import pytest
from sqlalchemy.exc import IntegrityError

from fieldsync.domain.duplicates import is_duplicate_error


@pytest.mark.parametrize(
    "err",
    [
        {"code": "23505"},
        {"code": 23505},
        {"message": "duplicate key value violates unique constraint"},
        {"message": "UNIQUE constraint failed: server_records.idempotency_key"},
    ],
)
def test_mapping_errors_classified_as_duplicate(err: dict[str, object]):
    assert is_duplicate_error(err) is True


@pytest.mark.parametrize(
    "err",
    [
        None,
        {"code": "42P01"},
        {"code": "42P01", "message": "relation does not exist"},
        {},
        RuntimeError("connection reset"),
    ],
)
def test_non_duplicates(err: object):
    assert is_duplicate_error(err) is False


class _PgError(Exception):
    def __init__(self, message: str, sqlstate: str) -> None:
        super().__init__(message)
        self.sqlstate = sqlstate


def test_sqlalchemy_wrapper_is_inspected_through_orig():
    wrapped = IntegrityError("INSERT ...", {}, _PgError("boom", "23505"))
    assert is_duplicate_error(wrapped) is True


def test_sqlite_unique_failure_is_detected_by_message():
    orig = sqlite3.IntegrityError("UNIQUE constraint failed: local_operations.idempotency_key")
    assert is_duplicate_error(IntegrityError("INSERT ...", {}, orig)) is True


def test_other_integrity_errors_are_not_duplicates():
    orig = sqlite3.IntegrityError("NOT NULL constraint failed: scan_jobs.user_id")
    assert is_duplicate_error(IntegrityError("INSERT ...", {}, orig)) is False
