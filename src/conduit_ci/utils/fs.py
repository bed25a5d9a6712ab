"""
Filesystem helpers for the artifact store and stage workspaces.

Atomic writes use a temp file in the destination directory and replace the
target in a single step. Deletion and artifact-name resolution refuse paths
that escape their root.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import stat
import tempfile
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "is_within",
    "iter_files",
    "safe_delete",
    "safe_relative_path",
]


def atomic_write(
    path: PathLike,
    data: bytes | str,
    *,
    encoding: str = "utf-8",
    make_parents: bool = False,
) -> None:
    """
    Atomically write ``data`` to ``path``.

    The write strategy is:
    1. create temp file in the same directory,
    2. write + flush + fsync file data,
    3. replace target via ``os.replace``.
    """

    target = Path(path)
    if make_parents:
        target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)
    if not target_parent.is_dir():
        raise NotADirectoryError(f"{target_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    try:
        with os.fdopen(fd, "wb") as file_handle:
            file_handle.write(payload)
            file_handle.flush()
            os.fsync(file_handle.fileno())

        os.replace(temp_path, target)
        _fsync_directory(target_parent)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    try:
        resolved_parent = Path(parent).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except FileNotFoundError:
        return False
    if not resolved_parent.is_dir():
        return False
    return resolved_child.is_relative_to(resolved_parent)


def safe_relative_path(value: str) -> PurePosixPath:
    """
    Validate a relative POSIX path used as an artifact name or output path.

    Absolute paths, backslashes, empty segments and ``.``/``..`` segments are
    rejected with ``ValueError``.
    """

    if not isinstance(value, str) or not value:
        raise ValueError("path cannot be empty")
    if "\\" in value:
        raise ValueError(f"path must use POSIX separators: {value!r}")
    posix_path = PurePosixPath(value)
    if posix_path.is_absolute():
        raise ValueError(f"path must be relative: {value!r}")
    if any(part in {"", ".", ".."} for part in value.split("/")):
        raise ValueError(f"path is not safe: {value!r}")
    return posix_path


def safe_delete(path: PathLike, root: PathLike) -> None:
    """
    Delete ``path`` only if it is contained within ``root``.

    Symlinks are unlinked without traversing into their targets. Missing paths
    are ignored.
    """

    workspace = Path(root).resolve(strict=True)
    if not workspace.is_dir():
        raise NotADirectoryError(f"{workspace!s} is not a directory")

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return

    candidate = target.parent.resolve(strict=True) / target.name
    if not candidate.is_relative_to(workspace):
        raise ValueError(f"refusing to delete path outside root: {target!s}")

    if target.is_symlink():
        target.unlink()
        return
    if target.is_dir():
        shutil.rmtree(target)
        return
    target.unlink()


def iter_files(directory: PathLike) -> Iterator[Path]:
    """Yield regular files below ``directory`` in deterministic order."""

    root = Path(directory)
    for current_dir, dir_names, file_names in os.walk(root, topdown=True, followlinks=False):
        dir_names.sort()
        file_names.sort()
        current = Path(current_dir)
        for file_name in file_names:
            file_path = current / file_name
            try:
                mode = file_path.lstat().st_mode
            except FileNotFoundError:
                continue
            if stat.S_ISREG(mode):
                yield file_path


def _fsync_directory(path: Path) -> None:
    # Some filesystems do not support fsync on directories.
    if os.name == "nt":
        return

    flags = os.O_RDONLY
    if hasattr(os, "O_DIRECTORY"):
        flags |= os.O_DIRECTORY

    try:
        dir_fd = os.open(path, flags)
    except OSError:
        return

    try:
        os.fsync(dir_fd)
    except OSError:
        return
    finally:
        os.close(dir_fd)
