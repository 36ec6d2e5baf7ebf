"""Stable constants shared across shipline packages."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Versioning.
SEED_VERSION: Final[tuple[int, int, int]] = (1, 0, 0)
VERSION_TAG_PREFIX: Final[str] = "v"
LATEST_TAG: Final[str] = "latest"
VERSION_FILE_NAME: Final[str] = "VERSION"
CONTEXT_VERSION_KEY: Final[str] = "version"
CONTEXT_IMAGE_KEY: Final[str] = "image_ref"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_REPORT_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths (relative to workspace root unless overridden by config).
CONFIG_FILE_NAME: Final[str] = "shipline.toml"
DEFAULT_PIPELINE_FILE: Final[PurePosixPath] = PurePosixPath("shipline.yaml")
ARTIFACTS_DIR: Final[PurePosixPath] = PurePosixPath(".shipline/artifacts")
REPORTS_DIR: Final[PurePosixPath] = PurePosixPath(".shipline/reports")
LOG_DIR: Final[PurePosixPath] = PurePosixPath(".shipline/logs")

# Environment variable prefix for values exported from the shared context.
CONTEXT_ENV_PREFIX: Final[str] = "PIPELINE_"

__all__ = [
    "ARTIFACTS_DIR",
    "CONFIG_FILE_NAME",
    "CONFIG_SCHEMA_VERSION",
    "CONTEXT_ENV_PREFIX",
    "CONTEXT_IMAGE_KEY",
    "CONTEXT_VERSION_KEY",
    "DEFAULT_PIPELINE_FILE",
    "LATEST_TAG",
    "LOG_DIR",
    "REPORTS_DIR",
    "RUN_REPORT_SCHEMA_VERSION",
    "SEED_VERSION",
    "VERSION_FILE_NAME",
    "VERSION_TAG_PREFIX",
]
