"""Audit change-set computation and sanitization utilities.

This module prepares arbitrary snapshots for storage in an audit record:
- to_json_safe: Convert nested values into JSON-safe structures
- redact_sensitive_fields: Mask sensitive keys in a snapshot
- enforce_size_limit: Replace oversized snapshots with a hash reference
- compute_changes: Human-readable "field: old → new" lines
- compute_diff_jsonpatch: RFC 6902 patch between two snapshots
- sanitize_headers: Redact credentials from request headers

Functions:
    build_change_set: Run the whole pipeline and return a ChangeSet
"""

import copy
import hashlib
import json
from collections.abc import Mapping
from datetime import date, datetime
from enum import Enum
from typing import Any
from uuid import UUID

import jsonpatch

from src.audit.config import (
    MAX_SNAPSHOT_SIZE_BYTES,
    REDACTED_MARKER,
    SENSITIVE_FIELDS,
    SENSITIVE_HEADERS,
)
from src.audit.models import ChangeSet


def to_json_safe(value: Any) -> Any:
    """Convert a value into a JSON-serializable structure.

    Dicts and sequences are converted recursively. Datetimes become ISO
    strings, enums their value, UUIDs strings; anything else unknown is
    stringified so serialization never fails at insert time.

    Args:
        value: The value to convert.

    Returns:
        A JSON-safe equivalent of the value.
    """
    if isinstance(value, Enum):
        return to_json_safe(value.value)
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Mapping):
        return {str(k): to_json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return str(value)


def _mask_value(value: str) -> str:
    """Mask a sensitive string value, keeping first 2 and last 2 chars.

    Args:
        value: The string value to mask.

    Returns:
        Masked string, or "****" if the value is too short.
    """
    if len(value) < 8:
        return "****"
    return f"{value[:2]}****{value[-2:]}"


def _redact_value(value: Any, key: str) -> Any:
    # A sensitive key masks its whole value, containers included
    if key in SENSITIVE_FIELDS and value is not None:
        if isinstance(value, str):
            return _mask_value(value)
        return "****"
    if isinstance(value, dict):
        return {k: _redact_value(v, k) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact_value(item, key) for item in value]
    return value


def redact_sensitive_fields(data: dict | None) -> dict | None:
    """Mask sensitive fields in a snapshot.

    Args:
        data: The snapshot to redact (None returns None).

    Returns:
        A redacted deep copy of the snapshot, or None.
    """
    if data is None:
        return None
    result = copy.deepcopy(data)
    return {k: _redact_value(v, k) for k, v in result.items()}


def enforce_size_limit(value: dict | None) -> tuple[dict | None, bool]:
    """Enforce the maximum stored snapshot size.

    Args:
        value: The snapshot to check (None is handled gracefully).

    Returns:
        Tuple of (value, replaced):
        - If within limit: (value, False)
        - If over limit: ({"_reference": sha256, "_size": n}, True)
    """
    if value is None:
        return (None, False)

    serialized = json.dumps(value, sort_keys=True).encode("utf-8")
    if len(serialized) <= MAX_SNAPSHOT_SIZE_BYTES:
        return (value, False)

    return (
        {"_reference": hashlib.sha256(serialized).hexdigest(), "_size": len(serialized)},
        True,
    )


def compute_changes(old: Mapping | None, new: Mapping | None) -> tuple[str, ...]:
    """List top-level fields that differ between two snapshots.

    Keys are visited in first-seen order (old first, then keys only in new).
    A key missing on one side renders as None.

    Args:
        old: Snapshot before the change.
        new: Snapshot after the change.

    Returns:
        Tuple of "field: old → new" strings, empty if either side is missing.
    """
    if not old or not new:
        return ()

    keys = list(dict.fromkeys([*old.keys(), *new.keys()]))
    changes = []
    for key in keys:
        before = old.get(key)
        after = new.get(key)
        if before != after:
            changes.append(f"{key}: {before} → {after}")
    return tuple(changes)


def compute_diff_jsonpatch(old: dict | None, new: dict | None) -> list[dict] | None:
    """Compute an RFC 6902 JSON Patch between two snapshots.

    Args:
        old: The original snapshot (None for creation).
        new: The new snapshot (None for deletion).

    Returns:
        List of patch operations, or None if there is nothing to diff.
    """
    if old is None and new is None:
        return None

    patch = jsonpatch.make_patch(old if old is not None else {}, new if new is not None else {})
    if not patch.patch:
        return None
    return patch.patch


def _snapshot(value: Any) -> dict | None:
    if value is None:
        return None
    safe = to_json_safe(value)
    if isinstance(safe, dict):
        return safe
    # Scalars and sequences are wrapped so every stored snapshot is an object
    return {"value": safe}


def build_change_set(old: Any, new: Any) -> ChangeSet | None:
    """Build the stored change set for a mutation.

    Snapshots are made JSON-safe and redacted; diff lines and the JSON
    Patch are computed from the redacted values; oversized snapshots are
    then swapped for hash references.

    Args:
        old: Snapshot before the change, any mapping or None.
        new: Snapshot after the change, any mapping or None.

    Returns:
        A ChangeSet, or None when both snapshots are absent.
    """
    if old is None and new is None:
        return None

    before = redact_sensitive_fields(_snapshot(old))
    after = redact_sensitive_fields(_snapshot(new))

    changes = compute_changes(before, after)
    patch = compute_diff_jsonpatch(before, after)

    before, _ = enforce_size_limit(before)
    after, _ = enforce_size_limit(after)

    return ChangeSet(before=before, after=after, changes=changes, patch=patch)


def sanitize_headers(headers: Mapping[str, str] | None) -> dict[str, str]:
    """Copy request headers with credentials redacted.

    Args:
        headers: Request headers (any case).

    Returns:
        Dict of headers with lower-cased keys and sensitive values replaced.
    """
    if not headers:
        return {}
    sanitized = {}
    for name, value in headers.items():
        key = name.lower()
        sanitized[key] = REDACTED_MARKER if key in SENSITIVE_HEADERS else value
    return sanitized
