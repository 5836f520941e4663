"""Deterministic idempotency keys.

A key is `<domain>_<sha256 hex>` computed over the canonical JSON of the parts
that identify a logical submission. Canonicalization:

- `None` parts and `None` mapping values are dropped.
- Mapping keys are sorted; only allow-listed fields take part (see `pick`).
- Order-irrelevant arrays (`unordered`, set, frozenset) are sorted by their
  canonical JSON text.
- Integral floats are encoded as ints, so `10` and `10.0` hash the same.

`retry_attempt` is deliberately part of the canonical input: a user-initiated
resubmission bumps it and gets a new key (and a new ServerRecord), while an
automatic network retry replays the stored operation and reuses its key.
Entity edits carry a `revision` the same way: every distinct local edit of an
entity gets the next revision, so editing a field back to an earlier value
still yields a new key.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from fieldsync.errors import DerivationError

_DOMAIN_RE = re.compile(r"^[a-z][a-z0-9_]*[a-z0-9]$|^[a-z]$")
_KEY_RE = re.compile(r"^(?P<domain>[a-z][a-z0-9_]*)_(?P<digest>[0-9a-f]{64})$")

BATCH_DEFINITION_FIELDS = ("start_page", "end_page", "mode", "project_id", "project_name")


@dataclass(frozen=True)
class Unordered:
    items: tuple[object, ...]


def unordered(items: Iterable[object]) -> Unordered:
    return Unordered(tuple(items))


def pick(mapping: Mapping[str, Any], allowed: Iterable[str]) -> dict[str, Any]:
    """Allow-list projection; fields outside `allowed` never reach the hash."""
    return {name: mapping[name] for name in allowed if mapping.get(name) is not None}


def _canonical_dumps(value: object) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False)


def canonicalize(value: object) -> object:
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        if not math.isfinite(value):
            raise DerivationError(f"non-finite number in key input: {value!r}")
        return int(value) if value.is_integer() else value
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for k, v in value.items():
            if not isinstance(k, str):
                raise DerivationError(f"mapping keys must be strings, got {type(k).__name__}")
            if v is None:
                continue
            out[k] = canonicalize(v)
        return out
    if isinstance(value, (Unordered, set, frozenset)):
        items = value.items if isinstance(value, Unordered) else tuple(value)
        members = [canonicalize(v) for v in items if v is not None]
        return sorted(members, key=_canonical_dumps)
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    raise DerivationError(f"unsupported type in key input: {type(value).__name__}")


def derive_key(domain: str, *parts: object) -> str:
    if not isinstance(domain, str) or not _DOMAIN_RE.match(domain):
        raise DerivationError(f"invalid key domain: {domain!r}")
    canonical = [canonicalize(p) for p in parts if p is not None]
    digest = hashlib.sha256(_canonical_dumps(canonical).encode("utf-8")).hexdigest()
    return f"{domain}_{digest}"


def split_key(key: str) -> tuple[str, str] | None:
    m = _KEY_RE.match(key or "")
    if m is None:
        return None
    return m.group("domain"), m.group("digest")


def is_valid_key(key: str) -> bool:
    return split_key(key) is not None


@dataclass(frozen=True)
class KeySchema:
    """Allow-list deriver for a payload-shaped submission."""

    domain: str
    fields: tuple[str, ...]
    unordered_fields: frozenset[str] = frozenset()

    def canonical_payload(self, payload: Mapping[str, Any]) -> dict[str, object]:
        out: dict[str, object] = {}
        for name, value in pick(payload, self.fields).items():
            out[name] = unordered(value) if name in self.unordered_fields else value
        return out

    def derive(
        self,
        *scope: object,
        kind: str,
        payload: Mapping[str, Any],
        retry_attempt: int | None = None,
        revision: int | None = None,
    ) -> str:
        retry = None if retry_attempt is None else {"retry_attempt": retry_attempt}
        edit = None if revision is None else {"revision": revision}
        return derive_key(
            self.domain, *scope, kind, self.canonical_payload(payload), retry, edit
        )


SITE_VISIT_KEYS = KeySchema(
    domain="visit",
    fields=("id", "project_id", "visit_date", "employer_ids", "reason_ids", "notes"),
    unordered_fields=frozenset({"employer_ids", "reason_ids"}),
)

RATING_KEYS = KeySchema(
    domain="rating",
    fields=("id", "employer_id", "track", "criteria", "assessed_on", "notes"),
)


@dataclass(frozen=True)
class FileIdentity:
    name: str
    size: int
    total_pages: int | None = None
    content_hash: str | None = None

    def key_parts(self) -> dict[str, object]:
        return pick(
            {
                "name": self.name,
                "size": self.size,
                "total_pages": self.total_pages,
                "content_hash": self.content_hash,
            },
            ("name", "size", "total_pages", "content_hash"),
        )


def batch_upload_key(
    *,
    user_id: str,
    file: FileIdentity,
    definitions: Sequence[Mapping[str, Any]],
    retry_attempt: int = 0,
) -> str:
    return derive_key(
        "batch",
        user_id,
        file.key_parts(),
        unordered(pick(d, BATCH_DEFINITION_FIELDS) for d in definitions),
        {"retry_attempt": retry_attempt},
    )


def scan_job_key(
    *,
    user_id: str,
    file: FileIdentity,
    selected_pages: Iterable[int],
    retry_attempt: int = 0,
) -> str:
    return derive_key(
        "job",
        user_id,
        file.key_parts(),
        unordered(selected_pages),
        {"retry_attempt": retry_attempt},
    )
