from __future__ import annotations

from collections.abc import Mapping

# PostgreSQL SQLSTATE for unique_violation.
UNIQUE_VIOLATION_CODE = "23505"

_DUPLICATE_MARKERS = ("duplicate", "unique")


def _structured_code(err: object) -> str | None:
    if isinstance(err, Mapping):
        code = err.get("code")
        return None if code is None else str(code)
    for attr in ("sqlstate", "pgcode", "code"):
        code = getattr(err, attr, None)
        if isinstance(code, (str, int)) and str(code):
            return str(code)
    return None


def _message(err: object) -> str:
    if isinstance(err, Mapping):
        msg = err.get("message")
        return msg if isinstance(msg, str) else ""
    if isinstance(err, BaseException):
        return str(err)
    msg = getattr(err, "message", None)
    return msg if isinstance(msg, str) else ""


def is_duplicate_error(err: object) -> bool:
    """Classify an error as an idempotency/uniqueness conflict.

    Accepts mappings (`{"code": ..., "message": ...}`), DB-API exceptions and
    SQLAlchemy wrappers (inspected through `.orig`). The message substring path
    is kept alongside the structured code because not every backend exposes
    SQLSTATE (SQLite reports "UNIQUE constraint failed").
    """

    if err is None:
        return False

    if _structured_code(err) == UNIQUE_VIOLATION_CODE:
        return True

    orig = getattr(err, "orig", None)
    if orig is not None and orig is not err and is_duplicate_error(orig):
        return True

    message = _message(err).lower()
    return any(marker in message for marker in _DUPLICATE_MARKERS)
