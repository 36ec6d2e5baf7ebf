"""Utility exports for filesystem and concurrency helpers."""

from shipline.utils.concurrency import CancellationToken, run_with_timeout
from shipline.utils.fs import atomic_write, collect_file, is_within

__all__ = [
    "CancellationToken",
    "atomic_write",
    "collect_file",
    "is_within",
    "run_with_timeout",
]
