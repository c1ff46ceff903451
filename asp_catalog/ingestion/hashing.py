"""
Content Hashing
===============

SHA-256 fingerprints used for change detection, duplicate detection and
as the as-of marker on raw-to-canonical links.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any


def compute_hash(content: bytes) -> str:
    """
    Compute the SHA-256 hash of content.

    Args:
        content: Raw bytes to hash

    Returns:
        Hex-encoded SHA-256 hash (64 characters)
    """
    return hashlib.sha256(content).hexdigest()


def canonical_json_bytes(data: Any) -> bytes:
    """Serialize JSON with sorted keys so key order never changes the bytes."""
    return json.dumps(
        data, sort_keys=True, ensure_ascii=False, separators=(",", ":"), default=str
    ).encode("utf-8")


def compute_json_hash(data: Any) -> str:
    """Hash a JSON-compatible value independent of its key order."""
    return compute_hash(canonical_json_bytes(data))
