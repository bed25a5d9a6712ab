"""SHA-256 helpers for the content-addressed artifact store."""

from __future__ import annotations

import hashlib
import re

_SHA256_HEX_RE = re.compile(r"^[0-9a-f]{64}$")

__all__ = ["is_sha256_hex", "sha256_bytes"]


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def is_sha256_hex(value: object) -> bool:
    """``True`` for a lowercase 64-character hex digest, the only form blobs are stored under."""

    return isinstance(value, str) and _SHA256_HEX_RE.fullmatch(value) is not None
