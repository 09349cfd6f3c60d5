"""Snapshot fingerprints used as the data-equality oracle for autosave."""
from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import date, datetime
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)

UNSERIALIZABLE_PREFIX = "unserializable:"


def _encode_default(value: Any) -> Any:
    to_payload = getattr(value, "to_payload", None)
    if callable(to_payload):
        return to_payload()
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Serialize ``value`` with a stable key order.

    Raises :class:`TypeError` or :class:`ValueError` for values that cannot be
    represented as JSON.
    """
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        allow_nan=False,
        default=_encode_default,
    )


def payload_size(value: Any) -> int:
    """Return the UTF-8 byte length of the canonical JSON for ``value``."""
    return len(canonical_json(value).encode("utf-8"))


def fingerprint(snapshot: Any) -> Optional[str]:
    """Return a comparable digest of ``snapshot`` or ``None`` for no snapshot.

    Never raises.  When the snapshot cannot be serialized a unique sentinel is
    returned so the caller treats the state as changed.
    """
    if snapshot is None:
        return None
    try:
        text = canonical_json(snapshot)
    except Exception as exc:  # noqa: BLE001
        LOGGER.warning("Failed to fingerprint snapshot: %s", exc)
        return f"{UNSERIALIZABLE_PREFIX}{uuid.uuid4().hex}"
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def is_unserializable(value: Optional[str]) -> bool:
    """Return whether ``value`` is a sentinel produced for a failed fingerprint."""
    return bool(value) and value.startswith(UNSERIALIZABLE_PREFIX)
