"""
shipline — semantic version resolution

File: src/shipline/versioning/resolver.py
Last updated: 2026-10-18

Purpose
- Derive the next build's semantic version from the latest release tag or, when
  configured, from a monotonically increasing CI build counter.

Functional requirements
- Tags are ``v<int>.<int>.<int>``; a single leading ``v`` is stripped when present.
- An absent, empty or malformed tag falls back to the seed ``1.0.0`` as a whole
  tuple; partially valid tags are never mixed with the seed.
- The resolved version always increments patch by exactly one and carries
  major/minor unchanged.
- Resolution is pure: no filesystem, network or hidden state. Tag lookup and
  artifact writing live in separate functions.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from shipline.constants import SEED_VERSION, VERSION_TAG_PREFIX
from shipline.utils.fs import atomic_write

if TYPE_CHECKING:
    import os

_CORE_RE = re.compile(r"^([0-9]+)\.([0-9]+)\.([0-9]+)$")

STRATEGY_TAG = "tag"
STRATEGY_BUILD_COUNTER = "build_counter"
VERSION_STRATEGIES: tuple[str, ...] = (STRATEGY_TAG, STRATEGY_BUILD_COUNTER)


class VersionParseError(ValueError):
    """Raised when a tag does not match ``v<int>.<int>.<int>``."""


@dataclass(frozen=True, slots=True, order=True)
class Version:
    """Immutable semantic version triple."""

    major: int
    minor: int
    patch: int

    def __post_init__(self) -> None:
        for label, value in (("major", self.major), ("minor", self.minor), ("patch", self.patch)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"{label} must be an int")
            if value < 0:
                raise ValueError(f"{label} must be >= 0")

    @classmethod
    def parse(cls, text: str) -> Version:
        """Strictly parse ``text``; a leading ``v`` is optional."""
        if not isinstance(text, str):
            raise VersionParseError(f"tag must be a string, got {type(text).__name__}")
        candidate = text.strip()
        if candidate.startswith(VERSION_TAG_PREFIX):
            candidate = candidate[len(VERSION_TAG_PREFIX) :]
        match = _CORE_RE.fullmatch(candidate)
        if match is None:
            raise VersionParseError(f"not a semantic version tag: {text!r}")
        major, minor, patch = (int(group) for group in match.groups())
        return cls(major, minor, patch)

    @classmethod
    def seed(cls) -> Version:
        return cls(*SEED_VERSION)

    def bump_patch(self) -> Version:
        return Version(self.major, self.minor, self.patch + 1)

    def render(self, prefix: str = VERSION_TAG_PREFIX) -> str:
        return f"{prefix}{self.major}.{self.minor}.{self.patch}"

    def __str__(self) -> str:
        return self.render()


def parse_tag(tag: str | None) -> Version | None:
    """Return the parsed tag, or ``None`` when it is absent or malformed."""
    if tag is None or not tag.strip():
        return None
    try:
        return Version.parse(tag)
    except VersionParseError:
        return None


@runtime_checkable
class VersionResolver(Protocol):
    """Strategy that derives the next version from an optional input token."""

    def resolve(self, latest: str | None) -> Version: ...


@dataclass(frozen=True, slots=True)
class TagVersionResolver:
    """Increment the patch component of the latest release tag."""

    seed: Version = Version(*SEED_VERSION)

    def resolve(self, latest: str | None) -> Version:
        base = parse_tag(latest)
        if base is None:
            base = self.seed
        return base.bump_patch()


@dataclass(frozen=True, slots=True)
class BuildCounterVersionResolver:
    """Use the CI build counter as the patch component.

    Major and minor are fixed by configuration. A missing, non-integer or
    negative counter resolves the same way a missing tag does.
    """

    major: int = SEED_VERSION[0]
    minor: int = SEED_VERSION[1]
    seed: Version = Version(*SEED_VERSION)

    def resolve(self, latest: str | None) -> Version:
        counter = _parse_counter(latest)
        if counter is None:
            return self.seed.bump_patch()
        return Version(self.major, self.minor, counter)


def resolver_for_strategy(
    strategy: str,
    *,
    seed: Version | None = None,
    major: int | None = None,
    minor: int | None = None,
) -> VersionResolver:
    """Build the resolver configured by ``versioning.strategy``."""
    effective_seed = seed if seed is not None else Version.seed()
    if strategy == STRATEGY_TAG:
        return TagVersionResolver(seed=effective_seed)
    if strategy == STRATEGY_BUILD_COUNTER:
        return BuildCounterVersionResolver(
            major=effective_seed.major if major is None else major,
            minor=effective_seed.minor if minor is None else minor,
            seed=effective_seed,
        )
    raise ValueError(f"unknown version strategy {strategy!r}; expected one of {VERSION_STRATEGIES}")


def resolve(latest_tag: str | None) -> Version:
    """Resolve the next version from ``latest_tag`` with the default tag strategy."""
    return TagVersionResolver().resolve(latest_tag)


def write_version_artifact(version: Version, path: str | os.PathLike[str]) -> Path:
    """Write ``version`` as the exact file content, with no trailing newline."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    atomic_write(target, version.render())
    return target


def _parse_counter(raw: str | None) -> int | None:
    if raw is None:
        return None
    text = raw.strip()
    if not text.isdigit() or not text.isascii():
        return None
    return int(text)


__all__ = [
    "STRATEGY_BUILD_COUNTER",
    "STRATEGY_TAG",
    "VERSION_STRATEGIES",
    "BuildCounterVersionResolver",
    "TagVersionResolver",
    "Version",
    "VersionParseError",
    "VersionResolver",
    "parse_tag",
    "resolve",
    "resolver_for_strategy",
    "write_version_artifact",
]
