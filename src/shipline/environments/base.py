"""
shipline — execution environment contract

File: src/shipline/environments/base.py
Last updated: 2026-10-18

Purpose
- Define the capability interface every execution environment satisfies and the
  value types that cross it.

Functional requirements
- ``Environment`` is a structural protocol (``enter`` / ``run`` / ``exit``); the
  local-process, container and remote implementations share no base class.
- ``EnvironmentFault`` signals an environment that could not be provisioned,
  released or asked to run a command it cannot host. It is always a hard failure.
  A missing tool is not a fault: it surfaces as exit status 127.
- Commands run through ``run_host_command`` are killed when the awaiting task is
  cancelled, which is how stage timeouts and cancellation reach the process.
- ``EnvironmentRegistry`` creates a fresh environment instance for each stage.
"""

from __future__ import annotations

import asyncio
import os
import time
from collections.abc import Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

# Shell conventions for commands that could not be started.
_EXIT_NOT_FOUND = 127
_EXIT_NOT_EXECUTABLE = 126


class EnvironmentFault(RuntimeError):
    """Raised when an execution environment cannot be provisioned or used."""

    def __init__(self, message: str, *, environment_id: str | None = None) -> None:
        self.environment_id = environment_id
        if environment_id:
            message = f"environment {environment_id!r}: {message}"
        super().__init__(message)


class EnvironmentKind(StrEnum):
    """Environment implementations available to pipeline definitions."""

    LOCAL = "local"
    CONTAINER = "container"
    SSH = "ssh"


@dataclass(frozen=True, slots=True)
class CommandSpec:
    """Command invocation inside an environment.

    ``cwd`` is relative to the environment's workspace root and must not escape it.
    """

    argv: tuple[str, ...]
    cwd: str = "."
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if isinstance(self.argv, str) or not isinstance(self.argv, (list, tuple)):
            raise ValueError("CommandSpec.argv must be a sequence of strings")
        argv = tuple(self.argv)
        if not argv:
            raise ValueError("CommandSpec.argv must not be empty")
        if not all(isinstance(item, str) for item in argv):
            raise ValueError("CommandSpec.argv entries must be strings")
        if not argv[0].strip():
            raise ValueError("CommandSpec.argv[0] must be non-empty")
        object.__setattr__(self, "argv", argv)
        object.__setattr__(self, "cwd", relative_workdir(self.cwd).as_posix())
        if not isinstance(self.env, Mapping):
            raise ValueError("CommandSpec.env must be a mapping")
        env: dict[str, str] = {}
        for key, value in self.env.items():
            if not isinstance(key, str) or not key:
                raise ValueError("CommandSpec.env keys must be non-empty strings")
            if not isinstance(value, str):
                raise ValueError(f"CommandSpec.env[{key!r}] must be a string")
            env[key] = value
        object.__setattr__(self, "env", env)


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a single command. Exit status is the only success signal."""

    argv: tuple[str, ...]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@runtime_checkable
class Environment(Protocol):
    """Isolated execution context for one stage."""

    environment_id: str

    async def enter(self) -> None: ...

    async def run(self, spec: CommandSpec) -> CommandResult: ...

    async def exit(self) -> None: ...


class EnvironmentRegistry:
    """Map environment ids to factories; one instance is created per stage."""

    def __init__(self) -> None:
        self._factories: dict[str, Callable[[], Environment]] = {}

    def register(self, environment_id: str, factory: Callable[[], Environment]) -> None:
        key = environment_id.strip()
        if not key:
            raise ValueError("environment_id must be non-empty")
        if key in self._factories:
            raise ValueError(f"environment {key!r} is already registered")
        self._factories[key] = factory

    def create(self, environment_id: str) -> Environment:
        factory = self._factories.get(environment_id)
        if factory is None:
            raise EnvironmentFault("not registered", environment_id=environment_id)
        return factory()

    def ids(self) -> tuple[str, ...]:
        return tuple(sorted(self._factories))

    def __contains__(self, environment_id: object) -> bool:
        return environment_id in self._factories


async def run_host_command(
    argv: Sequence[str],
    *,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
) -> CommandResult:
    """Run ``argv`` on the host and capture its output.

    The child is killed if the awaiting task is cancelled. A missing executable is
    reported like a shell would, as exit status 127 (126 when it is not executable),
    so the stage's declared policy applies. Any other spawn error raises
    ``EnvironmentFault``.
    """
    started_ns = time.monotonic_ns()
    command = tuple(argv)
    if cwd is not None and not os.path.isdir(cwd):
        raise EnvironmentFault(f"working directory {os.fspath(cwd)!r} does not exist")
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        return _spawn_failure(command, _EXIT_NOT_FOUND, exc, started_ns)
    except PermissionError as exc:
        return _spawn_failure(command, _EXIT_NOT_EXECUTABLE, exc, started_ns)
    except OSError as exc:
        raise EnvironmentFault(f"cannot spawn {command[0]!r}: {exc}") from exc

    try:
        stdout_bytes, stderr_bytes = await process.communicate()
    except asyncio.CancelledError:
        with suppress(ProcessLookupError):
            process.kill()
        await process.communicate()
        raise

    return CommandResult(
        argv=command,
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=_normalize_output_text(stdout_bytes),
        stderr=_normalize_output_text(stderr_bytes),
        duration_ms=_elapsed_ms(started_ns),
    )


def _spawn_failure(command: tuple[str, ...], exit_code: int, exc: OSError, started_ns: int) -> CommandResult:
    return CommandResult(
        argv=command,
        exit_code=exit_code,
        stderr=f"cannot execute {command[0]!r}: {exc}",
        duration_ms=_elapsed_ms(started_ns),
    )


def relative_workdir(value: str | os.PathLike[str]) -> PurePosixPath:
    """Normalize a stage workdir; absolute paths and ``..`` segments are rejected."""
    raw = os.fspath(value)
    if not isinstance(raw, str) or not raw.strip():
        raise ValueError("workdir must be a non-empty string")
    text = raw.strip().replace("\\", "/")
    path = PurePosixPath(text)
    if path.is_absolute():
        raise ValueError(f"workdir must be relative to the workspace: {raw!r}")
    if any(part == ".." for part in path.parts):
        raise ValueError(f"workdir must not contain '..': {raw!r}")
    return path


def _elapsed_ms(started_ns: int) -> int:
    delta_ns = time.monotonic_ns() - started_ns
    if delta_ns < 0:
        return 0
    return delta_ns // 1_000_000


def _normalize_output_text(raw: bytes) -> str:
    text = raw.decode("utf-8", errors="replace")
    return text.replace("\r\n", "\n").replace("\r", "\n")


__all__ = [
    "CommandResult",
    "CommandSpec",
    "Environment",
    "EnvironmentFault",
    "EnvironmentKind",
    "EnvironmentRegistry",
    "relative_workdir",
    "run_host_command",
]
