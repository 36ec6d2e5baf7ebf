"""
shipline — pipeline run model

File: src/shipline/pipeline/models.py
Last updated: 2026-10-18

Purpose
- Define stage descriptors, stage results, the shared run context and the run
  record with its state machine.

Normative behavior
- Run states: pending -> running -> stage_failed -> (running | aborted);
  running -> (completed | aborted). ``aborted`` and ``completed`` are terminal.
- A run is mutated only by appending results, transitioning state and finalizing.
- The outcome is ``failure`` iff at least one result is ``failed`` with an
  effective ``hard`` policy. Skipped stages never affect the outcome.
- The shared context is one mutable object passed by reference to every stage;
  it is the only state that crosses environment boundaries besides the workspace.
"""

from __future__ import annotations

import re
import uuid
from collections.abc import Awaitable, Callable, Iterator, Mapping, MutableMapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from string import Template
from typing import TYPE_CHECKING, Final, TypeAlias

from shipline.constants import ARTIFACTS_DIR, CONTEXT_ENV_PREFIX, CONTEXT_VERSION_KEY
from shipline.environments.base import relative_workdir
from shipline.versioning.resolver import Version, parse_tag

if TYPE_CHECKING:
    from shipline.environments.base import Environment

_ENV_KEY_RE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class FailurePolicy(StrEnum):
    """How a stage failure affects the run."""

    HARD = "hard"
    SOFT = "soft"


class StageStatus(StrEnum):
    """Terminal status of one stage."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class FailureKind(StrEnum):
    """Why a failed stage failed."""

    STAGE_FAILURE = "stage_failure"
    ENVIRONMENT_FAULT = "environment_fault"
    TIMEOUT_EXCEEDED = "timeout_exceeded"
    CANCELLED = "cancelled"
    EXECUTOR_FAULT = "executor_fault"


class RunState(StrEnum):
    """Pipeline run lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    STAGE_FAILED = "stage_failed"
    ABORTED = "aborted"
    COMPLETED = "completed"


class RunOutcome(StrEnum):
    """Aggregate verdict of a finalized run."""

    SUCCESS = "success"
    FAILURE = "failure"


TERMINAL_STATES: Final[frozenset[RunState]] = frozenset({RunState.ABORTED, RunState.COMPLETED})

_ALLOWED_TRANSITIONS: Final[Mapping[RunState, frozenset[RunState]]] = {
    RunState.PENDING: frozenset({RunState.RUNNING, RunState.ABORTED}),
    RunState.RUNNING: frozenset({RunState.STAGE_FAILED, RunState.COMPLETED, RunState.ABORTED}),
    RunState.STAGE_FAILED: frozenset({RunState.RUNNING, RunState.ABORTED}),
    RunState.ABORTED: frozenset(),
    RunState.COMPLETED: frozenset(),
}

# Failure kinds that are hard regardless of the stage's declared policy.
ALWAYS_HARD_KINDS: Final[frozenset[FailureKind]] = frozenset(
    {FailureKind.ENVIRONMENT_FAULT, FailureKind.CANCELLED, FailureKind.EXECUTOR_FAULT}
)


class InvalidTransitionError(RuntimeError):
    """Raised on a run state transition the lifecycle does not allow."""


class StageActionError(RuntimeError):
    """Raised by in-process stage actions to fail their stage with a message."""


class PipelineContext(MutableMapping[str, object]):
    """Mutable key/value context shared by every stage of one run.

    The wrapped mapping is held by reference: values written by a stage are
    visible to the caller's mapping and to every later stage.
    """

    def __init__(
        self,
        values: MutableMapping[str, object] | None = None,
        *,
        workspace_root: Path | str = ".",
        run_id: str | None = None,
        artifacts_dir: Path | str | None = None,
    ) -> None:
        self._values: MutableMapping[str, object] = values if values is not None else {}
        self.workspace_root = Path(workspace_root)
        self.run_id = run_id or new_run_id()
        self.artifacts_dir = (
            Path(artifacts_dir) if artifacts_dir is not None else self.workspace_root / ARTIFACTS_DIR
        )

    @property
    def values(self) -> MutableMapping[str, object]:
        return self._values

    def __getitem__(self, key: str) -> object:
        return self._values[key]

    def __setitem__(self, key: str, value: object) -> None:
        self._values[key] = value

    def __delitem__(self, key: str) -> None:
        del self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def version(self) -> Version | None:
        raw = self._values.get(CONTEXT_VERSION_KEY)
        if isinstance(raw, Version):
            return raw
        if isinstance(raw, str):
            return parse_tag(raw)
        return None

    def render(self, text: str) -> str:
        """Substitute ``$key`` / ``${key}`` placeholders; unknown keys are left as-is."""
        return Template(text).safe_substitute(self._scalar_values())

    def render_argv(self, argv: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(self.render(item) for item in argv)

    def export_env(self) -> dict[str, str]:
        """Scalar context values as ``PIPELINE_<KEY>`` environment variables."""
        exported: dict[str, str] = {}
        for key, value in self._scalar_values().items():
            if _ENV_KEY_RE.fullmatch(key):
                exported[f"{CONTEXT_ENV_PREFIX}{key.upper()}"] = value
        return exported

    def _scalar_values(self) -> dict[str, str]:
        scalars: dict[str, str] = {}
        for key, value in self._values.items():
            if not isinstance(key, str):
                continue
            if isinstance(value, bool):
                scalars[key] = "true" if value else "false"
            elif isinstance(value, (str, int, float, Version)):
                scalars[key] = str(value)
        return scalars


@dataclass(frozen=True, slots=True)
class Precondition:
    """Named predicate over the shared context; unmet means the stage is skipped."""

    description: str
    check: Callable[[PipelineContext], bool]

    def __call__(self, context: PipelineContext) -> bool:
        return bool(self.check(context))


@dataclass(frozen=True, slots=True)
class StageInvocation:
    """Arguments handed to an in-process stage action."""

    stage: StageDescriptor
    environment: Environment
    context: PipelineContext


StageAction: TypeAlias = Callable[[StageInvocation], Awaitable[object]]


@dataclass(frozen=True, slots=True)
class StageDescriptor:
    """Declarative description of one pipeline stage.

    Exactly one of ``command`` (argv executed in the environment) or ``action``
    (async callable run in-process against the entered environment) is set.
    ``workdir`` and ``artifact_path`` are relative; the artifact is resolved
    against the workdir.
    """

    name: str
    environment: str
    command: tuple[str, ...] = ()
    action: StageAction | None = None
    workdir: str = "."
    policy: FailurePolicy = FailurePolicy.HARD
    artifact_path: str | None = None
    precondition: Precondition | None = None
    timeout_seconds: float | None = None
    timeout_policy: FailurePolicy | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    description: str = ""

    def __post_init__(self) -> None:
        name = _non_empty(self.name, "StageDescriptor.name")
        object.__setattr__(self, "name", name)
        object.__setattr__(
            self, "environment", _non_empty(self.environment, f"stage {name!r} environment")
        )

        if isinstance(self.command, str):
            raise ValueError(f"stage {name!r} command must be a sequence of strings")
        command = tuple(self.command)
        if not all(isinstance(item, str) for item in command):
            raise ValueError(f"stage {name!r} command entries must be strings")
        object.__setattr__(self, "command", command)
        if bool(command) == (self.action is not None):
            raise ValueError(f"stage {name!r} must define exactly one of command or action")

        try:
            object.__setattr__(self, "workdir", relative_workdir(self.workdir).as_posix())
            if self.artifact_path is not None:
                object.__setattr__(
                    self, "artifact_path", relative_workdir(self.artifact_path).as_posix()
                )
        except ValueError as exc:
            raise ValueError(f"stage {name!r}: {exc}") from exc

        object.__setattr__(self, "policy", FailurePolicy(self.policy))
        if self.timeout_policy is not None:
            object.__setattr__(self, "timeout_policy", FailurePolicy(self.timeout_policy))

        if self.timeout_seconds is not None:
            if isinstance(self.timeout_seconds, bool) or self.timeout_seconds <= 0:
                raise ValueError(f"stage {name!r} timeout_seconds must be > 0 when provided")
            object.__setattr__(self, "timeout_seconds", float(self.timeout_seconds))

        object.__setattr__(self, "env", {str(key): str(value) for key, value in self.env.items()})

    @property
    def effective_timeout_policy(self) -> FailurePolicy:
        """Policy applied when the bounded wait expires; the declared policy unless overridden."""
        return self.timeout_policy if self.timeout_policy is not None else self.policy


@dataclass(frozen=True, slots=True)
class StageResult:
    """Immutable outcome of one stage.

    ``policy`` is the effective policy used for outcome evaluation: the stage's
    declared policy, its timeout policy for timeouts, or ``hard`` for environment
    faults, cancellation and executor faults.
    """

    name: str
    status: StageStatus
    duration_ms: int
    policy: FailurePolicy = FailurePolicy.HARD
    artifact: Path | None = None
    exit_code: int | None = None
    failure_kind: FailureKind | None = None
    detail: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "status", StageStatus(self.status))
        object.__setattr__(self, "policy", FailurePolicy(self.policy))
        if self.duration_ms < 0:
            raise ValueError("StageResult.duration_ms must be >= 0")
        if self.failure_kind is not None:
            object.__setattr__(self, "failure_kind", FailureKind(self.failure_kind))
        if self.status is StageStatus.FAILED and self.failure_kind is None:
            raise ValueError(f"failed stage {self.name!r} requires a failure_kind")
        if self.status is not StageStatus.FAILED and self.failure_kind is not None:
            raise ValueError(f"stage {self.name!r} is {self.status} but has a failure_kind")
        if self.failure_kind in ALWAYS_HARD_KINDS and self.policy is not FailurePolicy.HARD:
            raise ValueError(f"{self.failure_kind} failures are always hard")

    @property
    def blocking(self) -> bool:
        """``True`` when this result forces the run outcome to ``failure``."""
        return self.status is StageStatus.FAILED and self.policy is FailurePolicy.HARD


@dataclass(slots=True)
class PipelineRun:
    """Record of one pipeline execution."""

    run_id: str
    stages: tuple[StageDescriptor, ...]
    context: PipelineContext
    results: list[StageResult] = field(default_factory=list)
    state: RunState = RunState.PENDING
    state_history: list[RunState] = field(default_factory=lambda: [RunState.PENDING])
    outcome: RunOutcome | None = None
    current_stage: str | None = None
    cleanup_result: StageResult | None = None
    cleanup_error: str | None = None
    fault_detail: str | None = None
    duration_ms: int | None = None

    def __post_init__(self) -> None:
        self.stages = tuple(self.stages)
        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise ValueError(f"duplicate stage name {stage.name!r}")
            seen.add(stage.name)

    @property
    def version(self) -> Version | None:
        return self.context.version

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def hard_failures(self) -> tuple[StageResult, ...]:
        return tuple(result for result in self.results if result.blocking)

    @property
    def soft_failures(self) -> tuple[StageResult, ...]:
        return tuple(
            result
            for result in self.results
            if result.status is StageStatus.FAILED and result.policy is FailurePolicy.SOFT
        )

    @property
    def not_attempted(self) -> tuple[str, ...]:
        recorded = {result.name for result in self.results}
        return tuple(stage.name for stage in self.stages if stage.name not in recorded)

    def result_for(self, name: str) -> StageResult | None:
        for result in self.results:
            if result.name == name:
                return result
        return None

    def transition(self, target: RunState) -> None:
        target = RunState(target)
        if target not in _ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(f"invalid run transition {self.state} -> {target}")
        self.state = target
        self.state_history.append(target)

    def record(self, result: StageResult) -> None:
        if self.is_terminal:
            raise InvalidTransitionError(f"cannot record results on a {self.state} run")
        if not any(stage.name == result.name for stage in self.stages):
            raise ValueError(f"result for unknown stage {result.name!r}")
        if self.result_for(result.name) is not None:
            raise ValueError(f"stage {result.name!r} already has a result")
        self.results.append(result)

    def finalize(self) -> RunOutcome:
        """Fix the outcome: ``failure`` on any blocking result or an executor interruption."""
        if self.outcome is not None:
            raise InvalidTransitionError("run is already finalized")
        if not self.is_terminal:
            raise InvalidTransitionError(f"cannot finalize a {self.state} run")
        self.outcome = (
            RunOutcome.FAILURE
            if self.fault_detail is not None or any(result.blocking for result in self.results)
            else RunOutcome.SUCCESS
        )
        return self.outcome


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def _non_empty(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} must be non-empty")
    return stripped


__all__ = [
    "ALWAYS_HARD_KINDS",
    "TERMINAL_STATES",
    "FailureKind",
    "FailurePolicy",
    "InvalidTransitionError",
    "PipelineContext",
    "PipelineRun",
    "Precondition",
    "RunOutcome",
    "RunState",
    "StageAction",
    "StageActionError",
    "StageDescriptor",
    "StageInvocation",
    "StageResult",
    "new_run_id",
]
