"""Container execution environment driven through the docker/podman CLI."""

from __future__ import annotations

import logging
from enum import StrEnum
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from shipline.environments.base import (
    CommandResult,
    CommandSpec,
    EnvironmentFault,
    run_host_command,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

logger = logging.getLogger(__name__)


class ContainerRuntime(StrEnum):
    """Container CLIs accepted by :class:`ContainerEnvironment`."""

    DOCKER = "docker"
    PODMAN = "podman"


class ContainerEnvironment:
    """Run stage commands inside a throwaway container.

    ``enter`` starts a detached container with the workspace bind-mounted at
    ``mount_point``; each command is an ``exec`` into it and ``exit`` force-removes
    it, which also stops anything a cancelled ``exec`` left running.
    """

    def __init__(
        self,
        environment_id: str,
        *,
        image: str,
        workspace_root: Path | str,
        runtime: ContainerRuntime | str = ContainerRuntime.DOCKER,
        mount_point: str = "/workspace",
        env: Mapping[str, str] | None = None,
        run_args: Sequence[str] = (),
        runner: Callable[..., Awaitable[CommandResult]] = run_host_command,
    ) -> None:
        if not image.strip():
            raise ValueError("image must be non-empty")
        mount = PurePosixPath(mount_point)
        if not mount.is_absolute():
            raise ValueError("mount_point must be an absolute container path")
        self.environment_id = environment_id
        self._image = image.strip()
        self._workspace_root = Path(workspace_root)
        self._runtime = _coerce_runtime(runtime)
        self._mount_point = mount
        self._env = dict(env or {})
        self._run_args = tuple(run_args)
        self._runner = runner
        self._container_id: str | None = None

    @property
    def image(self) -> str:
        return self._image

    @property
    def container_id(self) -> str | None:
        return self._container_id

    async def enter(self) -> None:
        if self._container_id is not None:
            raise EnvironmentFault("container already started", environment_id=self.environment_id)
        if not self._workspace_root.is_dir():
            raise EnvironmentFault(
                f"workspace root {self._workspace_root.as_posix()} is not a directory",
                environment_id=self.environment_id,
            )
        root = self._workspace_root.resolve(strict=True)
        argv = [
            self._runtime.value,
            "run",
            "--detach",
            "--rm",
            "--volume",
            f"{root.as_posix()}:{self._mount_point.as_posix()}",
            "--workdir",
            self._mount_point.as_posix(),
            *_env_flags(self._env),
            *self._run_args,
            self._image,
            "sleep",
            "infinity",
        ]
        result = await self._host(argv)
        container_id = result.stdout.strip().splitlines()[-1].strip() if result.stdout.strip() else ""
        if not result.succeeded or not container_id:
            raise EnvironmentFault(
                f"failed to start container from {self._image!r}: {_tail(result.stderr)}",
                environment_id=self.environment_id,
            )
        self._container_id = container_id
        logger.debug(
            "container started",
            extra={"environment": self.environment_id, "container_id": container_id},
        )

    async def run(self, spec: CommandSpec) -> CommandResult:
        if self._container_id is None:
            raise EnvironmentFault("run() called before enter()", environment_id=self.environment_id)
        workdir = self._mount_point / spec.cwd
        argv = [
            self._runtime.value,
            "exec",
            "--workdir",
            workdir.as_posix(),
            *_env_flags(spec.env),
            self._container_id,
            *spec.argv,
        ]
        result = await self._host(argv)
        return CommandResult(
            argv=spec.argv,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )

    async def exit(self) -> None:
        container_id = self._container_id
        if container_id is None:
            return
        self._container_id = None
        result = await self._host([self._runtime.value, "rm", "--force", container_id])
        if not result.succeeded:
            raise EnvironmentFault(
                f"failed to remove container {container_id}: {_tail(result.stderr)}",
                environment_id=self.environment_id,
            )

    async def _host(self, argv: Sequence[str]) -> CommandResult:
        try:
            return await self._runner(tuple(argv))
        except EnvironmentFault as exc:
            raise EnvironmentFault(str(exc), environment_id=self.environment_id) from exc


def _coerce_runtime(value: ContainerRuntime | str) -> ContainerRuntime:
    if isinstance(value, ContainerRuntime):
        return value
    normalized = str(value).strip().lower()
    try:
        return ContainerRuntime(normalized)
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ContainerRuntime)
        raise ValueError(f"unsupported container runtime {value!r}; expected one of: {allowed}") from exc


def _env_flags(env: Mapping[str, str]) -> list[str]:
    flags: list[str] = []
    for key, value in sorted(env.items()):
        flags.extend(["--env", f"{key}={value}"])
    return flags


def _tail(text: str, limit: int = 400) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[-limit:]


__all__ = ["ContainerEnvironment", "ContainerRuntime"]
