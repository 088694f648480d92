"""
Deterministic content hashing for JSON-LD change detection.

A page's structured data is re-serialized canonically (sorted keys, compact
separators, UTF-8) before hashing, so two payloads that differ only in key
order or whitespace hash identically. The stored hash is the only thing the
pipeline compares to decide "changed" versus "no-op".

Examples:
    >>> a = content_hash({"name": "Björk", "@type": "MusicGroup"})
    >>> b = content_hash({"@type": "MusicGroup", "name": "Björk"})
    >>> a == b
    True
    >>> len(a)
    64

Tags:
    hashing, canonical-json, change-detection, sitemap-spine
"""

import hashlib
import json
from typing import Any


def canonical_json(document: Any) -> str:
    """Serialize *document* with sorted keys and no insignificant whitespace."""
    return json.dumps(document, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def compute_hash(*values: Any, length: int = 64) -> str:
    """
    Compute a deterministic SHA-256 hash from values.

    Values are joined with ``|`` after ``str()`` conversion, so the hash is
    order-dependent: ``compute_hash("a", "b") != compute_hash("b", "a")``.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 64, the full digest)

    Returns:
        Hex string of the requested length
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:length]


def content_hash(document: Any) -> str:
    """Hash the canonical serialization of a decoded JSON document."""
    return compute_hash(canonical_json(document))


def hash_payload(payload: bytes | str) -> str:
    """Decode a raw JSON payload and return its :func:`content_hash`.

    Raises:
        ValueError: If *payload* is not valid JSON.
    """
    return content_hash(json.loads(payload))
