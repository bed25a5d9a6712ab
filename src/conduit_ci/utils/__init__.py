"""Utility exports for filesystem, hashing, and concurrency helpers."""

from conduit_ci.utils.concurrency import CancellationToken, run_with_timeout, sleep_or_cancel
from conduit_ci.utils.fs import atomic_write, is_within, iter_files, safe_delete, safe_relative_path
from conduit_ci.utils.hashing import is_sha256_hex, sha256_bytes

__all__ = [
    "CancellationToken",
    "atomic_write",
    "is_sha256_hex",
    "is_within",
    "iter_files",
    "run_with_timeout",
    "safe_delete",
    "safe_relative_path",
    "sha256_bytes",
    "sleep_or_cancel",
]
