"""
shipline — filesystem helpers

File: src/shipline/utils/fs.py
Last updated: 2026-10-18

Purpose
- Atomic file replacement for reports and the version artifact.
- Workspace containment checks for stage working directories.
- Artifact collection: copy one declared file, never interpret it.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "collect_file",
    "is_within",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Replace ``path`` with ``data`` in one step; readers never see a partial file.

    The parent directory must already exist. Text is written without newline
    translation so the bytes on disk are exactly ``data.encode(encoding)``.
    """
    target = Path(path)
    directory = target.parent.resolve(strict=True)
    payload = data if isinstance(data, bytes) else data.encode(encoding)

    fd, temp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_name, target)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(temp_name)
        raise
    _sync_directory(directory)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """``True`` when both paths exist and ``child`` resolves inside ``parent``."""
    try:
        resolved_parent = Path(parent).resolve(strict=True)
        resolved_child = Path(child).resolve(strict=True)
    except (FileNotFoundError, NotADirectoryError):
        return False
    if not resolved_parent.is_dir():
        return False
    return resolved_child == resolved_parent or resolved_parent in resolved_child.parents


def collect_file(source: PathLike, destination_dir: PathLike) -> Path | None:
    """Copy ``source`` into ``destination_dir`` (created on demand).

    Returns the copy's path, or ``None`` when ``source`` is not a regular file.
    """
    source_path = Path(source)
    if not source_path.is_file():
        return None
    destination = Path(destination_dir)
    destination.mkdir(parents=True, exist_ok=True)
    return Path(shutil.copy2(source_path, destination / source_path.name))


def _sync_directory(directory: Path) -> None:
    # Directory fsync persists the rename; unsupported on Windows and some filesystems.
    if os.name == "nt":
        return
    flags = os.O_RDONLY | getattr(os, "O_DIRECTORY", 0)
    try:
        dir_fd = os.open(directory, flags)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)
