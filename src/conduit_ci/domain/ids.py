"""Run and stage identifiers.

Run ids look like ``run-01J9Z3K8Q4W6T2M0XBCDEFGHJK``: a fixed prefix and a
ULID, so ids sort by creation time and are safe to use as directory names.
Stage ids come from the pipeline file and are only validated here.
"""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

RUN_ID_PREFIX: Final[str] = "run-"

_ALPHABET: Final[str] = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_ULID_CHARS: Final[int] = 26
_RANDOM_BYTES: Final[int] = 10
_MAX_TIMESTAMP_MS: Final[int] = (1 << 48) - 1
_DECODE: Final[dict[str, int]] = {char: index for index, char in enumerate(_ALPHABET)}

STAGE_ID_PATTERN_DESCRIPTION: Final[str] = "lowercase letters, digits, '-', '_' or '.'"
_STAGE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z0-9][a-z0-9._-]{0,63}$")

__all__ = [
    "RUN_ID_PREFIX",
    "STAGE_ID_PATTERN_DESCRIPTION",
    "generate_run_id",
    "is_valid_stage_id",
    "validate_run_id",
]


def generate_run_id(
    *,
    timestamp_ms: int | None = None,
    randbytes: Callable[[int], bytes] | None = None,
) -> str:
    """Return a new ``run-<ulid>`` id; both sources are injectable for tests."""
    ts_ms = time.time_ns() // 1_000_000 if timestamp_ms is None else timestamp_ms
    if not 0 <= ts_ms <= _MAX_TIMESTAMP_MS:
        raise ValueError(f"timestamp_ms out of range: {ts_ms}")
    raw = (randbytes or secrets.token_bytes)(_RANDOM_BYTES)
    if len(raw) != _RANDOM_BYTES:
        raise ValueError(f"randbytes must return exactly {_RANDOM_BYTES} bytes")

    value = (ts_ms << 80) | int.from_bytes(raw, "big")
    chars = []
    for _ in range(_ULID_CHARS):
        chars.append(_ALPHABET[value & 0b11111])
        value >>= 5
    return RUN_ID_PREFIX + "".join(reversed(chars))


def validate_run_id(run_id: str) -> None:
    """Raise ``ValueError`` naming the first problem with ``run_id``."""
    if not isinstance(run_id, str):
        raise ValueError(f"run id must be a string, got {type(run_id).__name__}")
    if not run_id.startswith(RUN_ID_PREFIX):
        raise ValueError(f"run id must start with {RUN_ID_PREFIX!r}")

    ulid = run_id[len(RUN_ID_PREFIX) :]
    if len(ulid) != _ULID_CHARS:
        raise ValueError(f"run id must end with a {_ULID_CHARS}-character ULID, got {len(ulid)}")
    for index, char in enumerate(ulid):
        if char.upper() not in _DECODE:
            raise ValueError(f"invalid ULID character {char!r} at index {index}")
    # 26 base32 chars hold 130 bits; a ULID is 128.
    if _DECODE[ulid[0].upper()] > 7:
        raise ValueError("ULID overflows 128 bits")


def is_valid_stage_id(stage_id: object) -> bool:
    return isinstance(stage_id, str) and _STAGE_ID_RE.fullmatch(stage_id) is not None
