"""
shipline — YAML pipeline definitions

File: src/shipline/pipeline/definition.py
Last updated: 2026-10-18

Purpose
- Load a pipeline file (environments, ordered stages, cleanup) into stage
  descriptors and an environment registry.

Functional requirements
- Validation is strict: unknown keys, duplicate stage names, undeclared
  environments and malformed fields are all reported together with their paths.
- ``run`` accepts an argv list or a shell-like string split with ``shlex``.
- ``uses`` names a built-in action; ``with`` carries its options.
- ``when`` declares a precondition (``file_exists`` and/or ``variable_set``).
- A ``local`` environment is always available unless the file redefines it.
- Quality-gate stages inherit ``[quality_gate]`` timeout settings unless the stage
  sets its own.
"""

from __future__ import annotations

import shlex
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

import yaml

from shipline.environments.base import EnvironmentKind, EnvironmentRegistry
from shipline.environments.container import ContainerEnvironment
from shipline.environments.local import LocalProcessEnvironment
from shipline.environments.ssh import SshEnvironment
from shipline.pipeline.models import FailurePolicy, Precondition, StageDescriptor
from shipline.pipeline.preconditions import all_of, file_exists, variable_set
from shipline.pipeline.steps import StepDefaults, build_action

if TYPE_CHECKING:
    from shipline.environments.base import Environment

PIPELINE_SCHEMA_VERSION: Final[int] = 1
DEFAULT_ENVIRONMENT_ID: Final[str] = "local"

_TOP_LEVEL_KEYS: Final[frozenset[str]] = frozenset(
    {"schema_version", "name", "environments", "stages", "cleanup"}
)
_STAGE_KEYS: Final[frozenset[str]] = frozenset(
    {
        "name",
        "environment",
        "run",
        "uses",
        "with",
        "workdir",
        "policy",
        "artifact",
        "when",
        "timeout_seconds",
        "timeout_policy",
        "env",
        "description",
    }
)
_WHEN_KEYS: Final[frozenset[str]] = frozenset({"file_exists", "variable_set"})
_ENVIRONMENT_KEYS: Final[Mapping[EnvironmentKind, frozenset[str]]] = {
    EnvironmentKind.LOCAL: frozenset({"kind", "env"}),
    EnvironmentKind.CONTAINER: frozenset({"kind", "env", "image", "run_args"}),
    EnvironmentKind.SSH: frozenset(
        {"kind", "env", "host", "user", "port", "remote_root", "identity_file", "options"}
    ),
}


@dataclass(frozen=True, slots=True)
class DefinitionIssue:
    path: str
    message: str


class PipelineDefinitionError(ValueError):
    """Raised when a pipeline file cannot be read or fails validation."""

    def __init__(self, issues: Sequence[DefinitionIssue], *, source: Path | None = None) -> None:
        self.issues = tuple(issues)
        self.source = source
        where = f" {source.as_posix()}" if source is not None else ""
        rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid pipeline definition{where}:\n{rendered}")


@dataclass(frozen=True, slots=True)
class EnvironmentSpec:
    """Declared environment: its kind and kind-specific options."""

    environment_id: str
    kind: EnvironmentKind
    options: Mapping[str, object] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PipelineDefinition:
    """Validated pipeline file contents."""

    name: str
    stages: tuple[StageDescriptor, ...]
    environments: Mapping[str, EnvironmentSpec]
    cleanup: StageDescriptor | None = None
    source: Path | None = None

    def build_registry(
        self,
        workspace_root: Path | str,
        *,
        container_runtime: str = "docker",
        mount_point: str = "/workspace",
        inherit_host_env: bool = True,
    ) -> EnvironmentRegistry:
        """Register one factory per declared environment; each call yields a fresh instance."""
        registry = EnvironmentRegistry()
        root = Path(workspace_root)
        for environment_id, spec in sorted(self.environments.items()):
            registry.register(
                environment_id,
                _factory_for(
                    spec,
                    root,
                    container_runtime=container_runtime,
                    mount_point=mount_point,
                    inherit_host_env=inherit_host_env,
                ),
            )
        return registry


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[DefinitionIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(DefinitionIssue(path=path, message=message))

    def items(self) -> tuple[DefinitionIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def load_pipeline_definition(
    path: Path | str,
    *,
    defaults: StepDefaults | None = None,
) -> PipelineDefinition:
    """Read and validate the YAML pipeline file at ``path``."""
    source = Path(path)
    try:
        text = source.read_text(encoding="utf-8")
    except OSError as exc:
        raise PipelineDefinitionError(
            [DefinitionIssue(path="<file>", message=f"cannot read: {exc}")], source=source
        ) from exc
    try:
        payload = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise PipelineDefinitionError(
            [DefinitionIssue(path="<file>", message=f"invalid YAML: {exc}")], source=source
        ) from exc
    return parse_pipeline_definition(payload, defaults=defaults, source=source)


def parse_pipeline_definition(
    payload: object,
    *,
    defaults: StepDefaults | None = None,
    source: Path | None = None,
) -> PipelineDefinition:
    """Validate an already-parsed pipeline mapping."""
    step_defaults = defaults or StepDefaults()
    issues = _IssueCollector()

    if not isinstance(payload, Mapping):
        raise PipelineDefinitionError(
            [DefinitionIssue(path="<root>", message="must be a mapping")], source=source
        )

    _reject_unknown_keys(payload, _TOP_LEVEL_KEYS, "", issues)

    schema_version = payload.get("schema_version", PIPELINE_SCHEMA_VERSION)
    if schema_version != PIPELINE_SCHEMA_VERSION:
        issues.add("schema_version", f"unsupported version {schema_version!r}; expected {PIPELINE_SCHEMA_VERSION}")

    name = payload.get("name", source.stem if source is not None else "pipeline")
    if not isinstance(name, str) or not name.strip():
        issues.add("name", "must be a non-empty string")
        name = "pipeline"

    environments = _parse_environments(payload.get("environments", {}), issues)

    raw_stages = payload.get("stages")
    stages: list[StageDescriptor] = []
    if not isinstance(raw_stages, list) or not raw_stages:
        issues.add("stages", "must be a non-empty list")
    else:
        seen: set[str] = set()
        for index, raw_stage in enumerate(raw_stages):
            stage = _parse_stage(raw_stage, f"stages[{index}]", environments, step_defaults, issues)
            if stage is None:
                continue
            if stage.name in seen:
                issues.add(f"stages[{index}].name", f"duplicate stage name {stage.name!r}")
                continue
            seen.add(stage.name)
            stages.append(stage)

    cleanup: StageDescriptor | None = None
    raw_cleanup = payload.get("cleanup")
    if raw_cleanup is not None:
        cleanup = _parse_stage(raw_cleanup, "cleanup", environments, step_defaults, issues)

    if issues.has_issues:
        raise PipelineDefinitionError(issues.items(), source=source)

    return PipelineDefinition(
        name=name.strip(),
        stages=tuple(stages),
        environments=environments,
        cleanup=cleanup,
        source=source,
    )


def _parse_environments(raw: object, issues: _IssueCollector) -> dict[str, EnvironmentSpec]:
    environments: dict[str, EnvironmentSpec] = {
        DEFAULT_ENVIRONMENT_ID: EnvironmentSpec(DEFAULT_ENVIRONMENT_ID, EnvironmentKind.LOCAL)
    }
    if not isinstance(raw, Mapping):
        issues.add("environments", "must be a mapping of id -> environment")
        return environments

    for raw_id, raw_spec in raw.items():
        path = f"environments.{raw_id}"
        if not isinstance(raw_id, str) or not raw_id.strip():
            issues.add(path, "environment id must be a non-empty string")
            continue
        if not isinstance(raw_spec, Mapping):
            issues.add(path, "must be a mapping")
            continue
        try:
            kind = EnvironmentKind(str(raw_spec.get("kind", "")).strip().lower())
        except ValueError:
            allowed = ", ".join(item.value for item in EnvironmentKind)
            issues.add(f"{path}.kind", f"must be one of: {allowed}")
            continue
        _reject_unknown_keys(raw_spec, _ENVIRONMENT_KEYS[kind], path, issues)

        options = {key: value for key, value in raw_spec.items() if key != "kind"}
        env = options.get("env", {})
        if not _is_str_mapping(env):
            issues.add(f"{path}.env", "must be a mapping of strings")
        if kind is EnvironmentKind.CONTAINER:
            _require_str(options, "image", path, issues)
            _check_str_list(options, "run_args", path, issues)
        elif kind is EnvironmentKind.SSH:
            _require_str(options, "host", path, issues)
            remote_root = _require_str(options, "remote_root", path, issues)
            if remote_root is not None and not remote_root.startswith("/"):
                issues.add(f"{path}.remote_root", "must be an absolute path")
            port = options.get("port")
            if port is not None and (isinstance(port, bool) or not isinstance(port, int) or not 0 < port < 65536):
                issues.add(f"{path}.port", "must be an integer within 1..65535")
            _check_str_list(options, "options", path, issues)
        environments[raw_id.strip()] = EnvironmentSpec(raw_id.strip(), kind, options)
    return environments


def _parse_stage(
    raw: object,
    path: str,
    environments: Mapping[str, EnvironmentSpec],
    defaults: StepDefaults,
    issues: _IssueCollector,
) -> StageDescriptor | None:
    if not isinstance(raw, Mapping):
        issues.add(path, "must be a mapping")
        return None
    before = len(issues.items())
    _reject_unknown_keys(raw, _STAGE_KEYS, path, issues)

    name = _require_str(raw, "name", path, issues)
    environment = raw.get("environment", DEFAULT_ENVIRONMENT_ID)
    if not isinstance(environment, str) or environment not in environments:
        issues.add(f"{path}.environment", f"undeclared environment {environment!r}")

    command: tuple[str, ...] = ()
    action = None
    has_run = "run" in raw
    uses = raw.get("uses")
    if has_run == (uses is not None):
        issues.add(path, "must define exactly one of 'run' or 'uses'")
    elif has_run:
        command = _parse_command(raw["run"], f"{path}.run", issues)
    else:
        options = raw.get("with", {})
        if not isinstance(uses, str) or not uses.strip():
            issues.add(f"{path}.uses", "must be a non-empty string")
        elif not isinstance(options, Mapping):
            issues.add(f"{path}.with", "must be a mapping")
        else:
            try:
                action = build_action(uses.strip(), options, defaults)
            except ValueError as exc:
                issues.add(f"{path}.uses", str(exc))
    if has_run and "with" in raw:
        issues.add(f"{path}.with", "only valid together with 'uses'")

    policy = _parse_policy(raw.get("policy", FailurePolicy.HARD.value), f"{path}.policy", issues)
    timeout_seconds = raw.get("timeout_seconds")
    timeout_policy_raw = raw.get("timeout_policy")
    if uses == "quality_gate":
        if timeout_seconds is None:
            timeout_seconds = defaults.gate_timeout_seconds
        if timeout_policy_raw is None:
            timeout_policy_raw = (FailurePolicy.HARD if defaults.gate_abort_on_timeout else FailurePolicy.SOFT).value
    if timeout_seconds is not None and (
        isinstance(timeout_seconds, bool) or not isinstance(timeout_seconds, (int, float)) or timeout_seconds <= 0
    ):
        issues.add(f"{path}.timeout_seconds", "must be a number > 0")
        timeout_seconds = None
    timeout_policy = (
        None
        if timeout_policy_raw is None
        else _parse_policy(timeout_policy_raw, f"{path}.timeout_policy", issues)
    )

    env = raw.get("env", {})
    if not _is_str_mapping(env):
        issues.add(f"{path}.env", "must be a mapping of strings")
        env = {}

    precondition = _parse_when(raw.get("when"), f"{path}.when", issues)

    workdir = raw.get("workdir", ".")
    artifact = raw.get("artifact")
    description = raw.get("description", "")
    if not isinstance(workdir, str):
        issues.add(f"{path}.workdir", "must be a string")
    if artifact is not None and not isinstance(artifact, str):
        issues.add(f"{path}.artifact", "must be a string")
    if not isinstance(description, str):
        issues.add(f"{path}.description", "must be a string")

    if len(issues.items()) != before or name is None:
        return None

    try:
        return StageDescriptor(
            name=name,
            environment=str(environment),
            command=command,
            action=action,
            workdir=workdir,
            policy=policy,
            artifact_path=artifact,
            precondition=precondition,
            timeout_seconds=timeout_seconds,
            timeout_policy=timeout_policy,
            env=env,
            description=description,
        )
    except ValueError as exc:
        issues.add(path, str(exc))
        return None


def _parse_command(raw: object, path: str, issues: _IssueCollector) -> tuple[str, ...]:
    if isinstance(raw, str):
        try:
            argv = tuple(shlex.split(raw))
        except ValueError as exc:
            issues.add(path, f"cannot split command: {exc}")
            return ()
    elif isinstance(raw, list) and all(isinstance(item, (str, int, float)) for item in raw):
        argv = tuple(str(item) for item in raw)
    else:
        issues.add(path, "must be a string or a list of strings")
        return ()
    if not argv:
        issues.add(path, "must not be empty")
    return argv


def _parse_when(raw: object, path: str, issues: _IssueCollector) -> Precondition | None:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or not raw:
        issues.add(path, "must be a non-empty mapping")
        return None
    _reject_unknown_keys(raw, _WHEN_KEYS, path, issues)
    members: list[Precondition] = []
    for key in sorted(_WHEN_KEYS & set(raw)):
        value = raw[key]
        values = value if isinstance(value, list) else [value]
        for item in values:
            if not isinstance(item, str) or not item.strip():
                issues.add(f"{path}.{key}", "must be a non-empty string or list of strings")
                continue
            try:
                members.append(file_exists(item) if key == "file_exists" else variable_set(item))
            except ValueError as exc:
                issues.add(f"{path}.{key}", str(exc))
    if not members:
        return None
    return members[0] if len(members) == 1 else all_of(*members)


def _parse_policy(raw: object, path: str, issues: _IssueCollector) -> FailurePolicy:
    try:
        return FailurePolicy(str(raw).strip().lower())
    except ValueError:
        issues.add(path, "must be 'hard' or 'soft'")
        return FailurePolicy.HARD


def _factory_for(
    spec: EnvironmentSpec,
    workspace_root: Path,
    *,
    container_runtime: str,
    mount_point: str,
    inherit_host_env: bool,
) -> Callable[[], Environment]:
    options = spec.options
    env = dict(options.get("env", {}) or {})
    if spec.kind is EnvironmentKind.CONTAINER:
        return lambda: ContainerEnvironment(
            spec.environment_id,
            image=str(options["image"]),
            workspace_root=workspace_root,
            runtime=container_runtime,
            mount_point=mount_point,
            env=env,
            run_args=tuple(options.get("run_args", ()) or ()),
        )
    if spec.kind is EnvironmentKind.SSH:
        return lambda: SshEnvironment(
            spec.environment_id,
            host=str(options["host"]),
            remote_root=str(options["remote_root"]),
            user=options.get("user"),
            port=options.get("port"),
            identity_file=options.get("identity_file"),
            options=tuple(options.get("options", ()) or ()),
            env=env,
        )
    return lambda: LocalProcessEnvironment(
        spec.environment_id,
        workspace_root=workspace_root,
        inherit_host_env=inherit_host_env,
        env=env,
    )


def _reject_unknown_keys(
    payload: Mapping[object, object],
    allowed: frozenset[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in payload:
        if key not in allowed:
            issues.add(f"{path}.{key}" if path else str(key), "unknown key")


def _require_str(payload: Mapping[object, object], key: str, path: str, issues: _IssueCollector) -> str | None:
    value = payload.get(key)
    if not isinstance(value, str) or not value.strip():
        issues.add(f"{path}.{key}", "must be a non-empty string")
        return None
    return value.strip()


def _check_str_list(payload: Mapping[object, object], key: str, path: str, issues: _IssueCollector) -> None:
    value = payload.get(key)
    if value is None:
        return
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        issues.add(f"{path}.{key}", "must be a list of strings")


def _is_str_mapping(value: object) -> bool:
    return isinstance(value, Mapping) and all(
        isinstance(key, str) and isinstance(item, str) for key, item in value.items()
    )


__all__ = [
    "DEFAULT_ENVIRONMENT_ID",
    "PIPELINE_SCHEMA_VERSION",
    "DefinitionIssue",
    "EnvironmentSpec",
    "PipelineDefinition",
    "PipelineDefinitionError",
    "load_pipeline_definition",
    "parse_pipeline_definition",
]
