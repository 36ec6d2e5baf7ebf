"""Remote execution environment reached over OpenSSH in batch mode."""

from __future__ import annotations

import shlex
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from shipline.environments.base import (
    CommandResult,
    CommandSpec,
    EnvironmentFault,
    run_host_command,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

# ssh reserves 255 for its own connection and protocol errors.
_SSH_ERROR_EXIT_CODE = 255


class SshEnvironment:
    """Run stage commands on a remote host under ``remote_root``.

    The remote checkout is expected to mirror the workspace; synchronizing it is
    the job of an earlier stage.
    """

    def __init__(
        self,
        environment_id: str,
        *,
        host: str,
        remote_root: str,
        user: str | None = None,
        port: int | None = None,
        identity_file: str | None = None,
        options: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        runner: Callable[..., Awaitable[CommandResult]] = run_host_command,
    ) -> None:
        if not host.strip():
            raise ValueError("host must be non-empty")
        root = PurePosixPath(remote_root)
        if not root.is_absolute():
            raise ValueError("remote_root must be an absolute path")
        if port is not None and not 0 < port < 65536:
            raise ValueError("port must be within 1..65535")
        self.environment_id = environment_id
        self._target = f"{user}@{host.strip()}" if user else host.strip()
        self._remote_root = root
        self._port = port
        self._identity_file = identity_file
        self._options = tuple(options)
        self._env = dict(env or {})
        self._runner = runner
        self._entered = False

    @property
    def target(self) -> str:
        return self._target

    async def enter(self) -> None:
        check_root = f"test -d {shlex.quote(self._remote_root.as_posix())}"
        result = await self._ssh(check_root)
        if not result.succeeded:
            raise EnvironmentFault(
                f"remote root {self._remote_root.as_posix()} unreachable on {self._target}: "
                f"{result.stderr.strip() or f'exit {result.exit_code}'}",
                environment_id=self.environment_id,
            )
        self._entered = True

    async def run(self, spec: CommandSpec) -> CommandResult:
        if not self._entered:
            raise EnvironmentFault("run() called before enter()", environment_id=self.environment_id)
        result = await self._ssh(self.remote_command(spec))
        if result.exit_code == _SSH_ERROR_EXIT_CODE:
            raise EnvironmentFault(
                f"ssh to {self._target} failed: {result.stderr.strip()}",
                environment_id=self.environment_id,
            )
        return CommandResult(
            argv=spec.argv,
            exit_code=result.exit_code,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=result.duration_ms,
        )

    async def exit(self) -> None:
        self._entered = False

    def remote_command(self, spec: CommandSpec) -> str:
        """Render the single shell string executed by the remote login shell."""
        workdir = self._remote_root / spec.cwd
        env = {**self._env, **spec.env}
        parts = [f"cd {shlex.quote(workdir.as_posix())}", "&&"]
        if env:
            parts.append("env")
            parts.extend(shlex.quote(f"{key}={value}") for key, value in sorted(env.items()))
        parts.append(shlex.join(spec.argv))
        return " ".join(parts)

    def _base_argv(self) -> list[str]:
        argv = ["ssh", "-o", "BatchMode=yes"]
        if self._port is not None:
            argv.extend(["-p", str(self._port)])
        if self._identity_file:
            argv.extend(["-i", self._identity_file])
        argv.extend(self._options)
        argv.append(self._target)
        return argv

    async def _ssh(self, remote_command: str) -> CommandResult:
        try:
            return await self._runner((*self._base_argv(), remote_command))
        except EnvironmentFault as exc:
            raise EnvironmentFault(str(exc), environment_id=self.environment_id) from exc


__all__ = ["SshEnvironment"]
