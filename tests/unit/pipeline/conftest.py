"""Shared doubles for pipeline tests: a scripted environment and its registry harness."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from shipline.environments.base import CommandResult, CommandSpec, EnvironmentFault, EnvironmentRegistry
from shipline.pipeline.models import PipelineContext


class ScriptedEnvironment:
    """Environment double that interprets argv instead of spawning processes.

    ``ok`` succeeds, ``fail [code]`` exits non-zero, ``sleep <seconds>`` waits,
    ``fault`` raises ``EnvironmentFault`` and ``write <file> <text>`` creates a
    file under the workspace.
    """

    def __init__(
        self,
        environment_id: str,
        harness: Harness,
        *,
        fail_enter: bool = False,
        fail_exit: bool = False,
    ) -> None:
        self.environment_id = environment_id
        self._harness = harness
        self._fail_enter = fail_enter
        self._fail_exit = fail_exit

    async def enter(self) -> None:
        self._harness.events.append(("enter", self.environment_id))
        if self._fail_enter:
            raise EnvironmentFault("cannot provision", environment_id=self.environment_id)

    async def run(self, spec: CommandSpec) -> CommandResult:
        self._harness.events.append(("run", self.environment_id, *spec.argv))
        self._harness.specs.append(spec)
        verb, *rest = spec.argv
        if verb == "sleep":
            try:
                await asyncio.sleep(float(rest[0]))
            except asyncio.CancelledError:
                self._harness.events.append(("interrupted", self.environment_id))
                raise
        elif verb == "fail":
            code = int(rest[0]) if rest else 1
            return CommandResult(argv=spec.argv, exit_code=code, stderr="boom")
        elif verb == "fault":
            raise EnvironmentFault("connection lost", environment_id=self.environment_id)
        elif verb == "write":
            target = self._harness.workspace / spec.cwd / rest[0]
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(rest[1], encoding="utf-8")
        return CommandResult(argv=spec.argv, exit_code=0, stdout="ok")

    async def exit(self) -> None:
        self._harness.events.append(("exit", self.environment_id))
        if self._fail_exit:
            raise RuntimeError("teardown broke")


@dataclass
class Harness:
    workspace: Path
    registry: EnvironmentRegistry = field(default_factory=EnvironmentRegistry)
    events: list[tuple[str, ...]] = field(default_factory=list)
    specs: list[CommandSpec] = field(default_factory=list)

    def add(self, environment_id: str, **options: bool) -> None:
        self.registry.register(
            environment_id, lambda: ScriptedEnvironment(environment_id, self, **options)
        )

    def context(self, values: dict[str, object] | None = None) -> PipelineContext:
        return PipelineContext(
            values if values is not None else {},
            workspace_root=self.workspace,
            run_id="run-test",
        )

    def count(self, kind: str) -> int:
        return sum(1 for event in self.events if event[0] == kind)

    def commands(self) -> list[tuple[str, ...]]:
        return [event[2:] for event in self.events if event[0] == "run"]


@pytest.fixture
def harness(tmp_path: Path) -> Harness:
    built = Harness(workspace=tmp_path)
    built.add("box")
    return built


@pytest.fixture
def harness_factory(tmp_path: Path) -> Callable[[], Harness]:
    """Fresh harnesses for tests that execute several runs, e.g. property tests."""

    def build() -> Harness:
        built = Harness(workspace=tmp_path)
        built.add("box")
        return built

    return build
