"""
Idempotency key derivation.

Webhook providers retry with byte-identical bodies, so hashing the canonical
payload collapses redeliveries onto the same key when the caller has no
upstream event id to offer.
"""

import hashlib
import json
from collections.abc import Mapping, Sequence
from typing import Any


def canonical_bytes(payload: Any) -> bytes:
    """
    Canonicalize a payload to bytes.

    Raw bytes are used as-is, strings are UTF-8 encoded, and anything else is
    serialized as JSON with sorted keys and compact separators so that key
    order and whitespace do not change the fingerprint.
    """
    if payload is None:
        return b""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        return bytes(payload)
    if isinstance(payload, str):
        return payload.encode("utf-8")
    if isinstance(payload, (Mapping, Sequence)):
        return json.dumps(
            payload,
            sort_keys=True,
            separators=(",", ":"),
            ensure_ascii=False,
            default=str,
        ).encode("utf-8")
    return str(payload).encode("utf-8")


def fingerprint(payload: Any) -> str:
    """SHA-256 hex digest of the canonical payload bytes."""
    return hashlib.sha256(canonical_bytes(payload)).hexdigest()


def derive_idempotency_key(key: str | None = None, payload: Any = None) -> str:
    """
    Compute a stable deduplication key.

    Args:
        key: Caller-supplied key, e.g. an upstream event id. Used verbatim
            (surrounding whitespace stripped) when non-empty.
        payload: Raw bytes or structured payload to fingerprint otherwise.

    Returns:
        The idempotency key. Never fails.
    """
    if key is not None and key.strip():
        return key.strip()
    return fingerprint(payload)
