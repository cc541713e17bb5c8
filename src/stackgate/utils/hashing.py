"""Hashing helpers."""

from __future__ import annotations

import hashlib
import json

from stackgate.utils.serialization import json_default


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def canonical_json(payload: object) -> str:
    """Serialize with sorted keys and no whitespace so equal payloads hash equally."""
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        default=json_default,
    )


def sha256_json(payload: object) -> str:
    return sha256_text(canonical_json(payload))
