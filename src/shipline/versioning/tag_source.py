"""Git-backed lookup and creation of release tags."""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from shipline.constants import VERSION_TAG_PREFIX

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence

    from shipline.versioning.resolver import Version

logger = logging.getLogger(__name__)


class GitTagError(RuntimeError):
    """Raised when a git tag command exits non-zero."""

    def __init__(
        self,
        *,
        command: Sequence[str],
        returncode: int,
        stdout: str,
        stderr: str,
    ) -> None:
        self.command = tuple(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        message = f"git command failed ({returncode}): {' '.join(command)}"
        if stderr.strip():
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


@runtime_checkable
class TagSource(Protocol):
    """Source of the most recent release tag, if any."""

    def latest_tag(self) -> str | None: ...


@dataclass(frozen=True, slots=True)
class StaticTagSource:
    """Tag source returning a fixed value; used for ``--tag`` overrides and tests."""

    tag: str | None = None

    def latest_tag(self) -> str | None:
        return self.tag


@dataclass(slots=True)
class GitTagSource:
    """Read and create release tags in a local git repository."""

    repo_path: Path
    match: str = f"{VERSION_TAG_PREFIX}*"
    remote: str = "origin"
    env_overrides: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.repo_path = Path(self.repo_path).resolve()

    def latest_tag(self) -> str | None:
        """Return the nearest reachable tag matching ``match``, or ``None``.

        A repository without commits or matching tags is not an error; it is the
        first-release case and resolves to the seed version.
        """
        args = ["describe", "--tags", "--abbrev=0"]
        if self.match:
            args.extend(["--match", self.match])
        completed = self._run_git(args, check=False)
        if completed.returncode != 0:
            logger.info(
                "no release tag found",
                extra={"repo": self.repo_path.as_posix(), "match": self.match},
            )
            return None
        tag = completed.stdout.strip()
        return tag or None

    def create_tag(self, version: Version, *, message: str | None = None, push: bool = False) -> str:
        """Create an annotated tag for ``version`` at ``HEAD`` and optionally push it."""
        name = version.render()
        self._run_git(["tag", "-a", name, "-m", message or f"Release {name}"])
        if push:
            self._run_git(["push", self.remote, f"refs/tags/{name}"])
        logger.info("created release tag", extra={"tag": name, "pushed": push})
        return name

    def _run_git(self, args: Sequence[str], *, check: bool = True) -> subprocess.CompletedProcess[str]:
        command = ("git", *args)
        env = os.environ.copy()
        env["GIT_TERMINAL_PROMPT"] = "0"
        env.setdefault("GIT_CONFIG_NOSYSTEM", "1")
        env.update(self.env_overrides)

        try:
            completed = subprocess.run(
                command,
                cwd=self.repo_path,
                env=env,
                text=True,
                capture_output=True,
                check=False,
            )
        except OSError as exc:
            raise GitTagError(command=command, returncode=-1, stdout="", stderr=str(exc)) from exc
        if check and completed.returncode != 0:
            raise GitTagError(
                command=command,
                returncode=completed.returncode,
                stdout=completed.stdout,
                stderr=completed.stderr,
            )
        return completed


__all__ = ["GitTagError", "GitTagSource", "StaticTagSource", "TagSource"]
