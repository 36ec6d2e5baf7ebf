"""Host-process execution environment confined to the workspace root."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from shipline.environments.base import (
    CommandResult,
    CommandSpec,
    EnvironmentFault,
    run_host_command,
)
from shipline.utils.fs import is_within

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping


class LocalProcessEnvironment:
    """Run stage commands as host subprocesses under ``workspace_root``.

    With ``inherit_host_env`` disabled only ``PATH`` is carried over from the host,
    plus the environment's own overrides and the per-command variables.
    """

    def __init__(
        self,
        environment_id: str,
        *,
        workspace_root: Path | str,
        inherit_host_env: bool = True,
        env: Mapping[str, str] | None = None,
        runner: Callable[..., Awaitable[CommandResult]] = run_host_command,
    ) -> None:
        self.environment_id = environment_id
        self._workspace_root = Path(workspace_root)
        self._inherit_host_env = bool(inherit_host_env)
        self._env_overrides = dict(env or {})
        self._runner = runner
        self._entered = False

    @property
    def workspace_root(self) -> Path:
        return self._workspace_root

    async def enter(self) -> None:
        if not self._workspace_root.is_dir():
            raise EnvironmentFault(
                f"workspace root {self._workspace_root.as_posix()} is not a directory",
                environment_id=self.environment_id,
            )
        self._workspace_root = self._workspace_root.resolve(strict=True)
        self._entered = True

    async def run(self, spec: CommandSpec) -> CommandResult:
        if not self._entered:
            raise EnvironmentFault("run() called before enter()", environment_id=self.environment_id)
        cwd = self._resolve_cwd(spec.cwd)
        try:
            return await self._runner(spec.argv, cwd=cwd, env=self._build_environment(spec.env))
        except EnvironmentFault as exc:
            raise EnvironmentFault(str(exc), environment_id=self.environment_id) from exc

    async def exit(self) -> None:
        self._entered = False

    def _resolve_cwd(self, workdir: str) -> Path:
        path = self._workspace_root / workdir
        if not path.is_dir():
            raise EnvironmentFault(
                f"working directory {workdir!r} does not exist",
                environment_id=self.environment_id,
            )
        if not is_within(path, self._workspace_root):
            raise EnvironmentFault(
                f"working directory {workdir!r} is outside workspace {self._workspace_root!s}",
                environment_id=self.environment_id,
            )
        return path.resolve(strict=True)

    def _build_environment(self, env: Mapping[str, str]) -> dict[str, str]:
        if self._inherit_host_env:
            merged = dict(os.environ)
        else:
            merged = {}
            host_path = os.environ.get("PATH")
            if host_path:
                merged["PATH"] = host_path
        merged.update(self._env_overrides)
        merged.update(env)
        return merged


__all__ = ["LocalProcessEnvironment"]
