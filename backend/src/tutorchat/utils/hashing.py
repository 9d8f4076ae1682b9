"""Hashing utilities for deterministic identifiers."""

import hashlib
import uuid

# Fixed namespace so ids are stable across processes and deployments
TUTORCHAT_NAMESPACE = uuid.UUID("5b0d6c1e-8a2f-4c7e-9d3b-2f4e6a8c0b1d")


def deterministic_uuid(key: str) -> uuid.UUID:
    """
    Derive a stable UUID from a string key.

    The same key always yields the same UUID, which lets projections, summary
    nodes and graph rows be rewritten idempotently.

    Args:
        key: Canonical key, e.g. "chat_doc|message_chunk|<msg_id>|0"

    Returns:
        UUID (version 5) derived from the key
    """
    return uuid.uuid5(TUTORCHAT_NAMESPACE, key)


def advisory_lock_key(key: str) -> int:
    """
    Map a string key onto a signed 64-bit integer for pg_advisory_xact_lock.

    Args:
        key: Arbitrary string key

    Returns:
        Signed 64-bit integer
    """
    digest = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big", signed=True)
