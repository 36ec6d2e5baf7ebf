"""
shipline — built-in stage actions

File: src/shipline/pipeline/steps.py
Last updated: 2026-10-18

Purpose
- Provide the in-process actions pipeline definitions reference with ``uses:``.

Functional requirements
- ``resolve_version`` computes the run's version once, stores it in the shared
  context under ``version`` and writes the plain-text version artifact.
- ``quality_gate`` waits for the external quality service verdict.
- ``build_image`` builds ``<repository>:<version>`` and stores it as ``image_ref``.
- ``publish_image`` pushes the built image as ``<version>`` and ``latest``.
- Factories validate their ``with:`` options when the pipeline is loaded, not
  when the stage runs.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Final

from shipline.constants import (
    CONTEXT_IMAGE_KEY,
    CONTEXT_VERSION_KEY,
    LATEST_TAG,
    VERSION_FILE_NAME,
    VERSION_TAG_PREFIX,
)
from shipline.environments.base import relative_workdir
from shipline.pipeline.models import StageAction, StageActionError, StageInvocation
from shipline.pipeline.publish import ImagePublisher
from shipline.pipeline.quality_gate import HttpQualityGate
from shipline.versioning.resolver import (
    STRATEGY_BUILD_COUNTER,
    STRATEGY_TAG,
    VERSION_STRATEGIES,
    Version,
    resolver_for_strategy,
    write_version_artifact,
)
from shipline.versioning.tag_source import GitTagSource

if TYPE_CHECKING:
    import requests

    from shipline.pipeline.models import PipelineContext
    from shipline.versioning.tag_source import TagSource

# Context keys callers may pre-populate to override tag or counter lookup.
CONTEXT_LATEST_TAG_KEY: Final[str] = "latest_tag"
CONTEXT_BUILD_NUMBER_KEY: Final[str] = "build_number"
CONTEXT_GATE_STATUS_KEY: Final[str] = "quality_gate_status"
CONTEXT_PUBLISHED_KEY: Final[str] = "published_images"


@dataclass(frozen=True, slots=True)
class StepDefaults:
    """Configuration-derived defaults for built-in actions."""

    version_strategy: str = STRATEGY_TAG
    seed: Version = field(default_factory=Version.seed)
    tag_match: str = f"{VERSION_TAG_PREFIX}*"
    build_counter_env: str = "BUILD_NUMBER"
    version_file: str = VERSION_FILE_NAME
    gate_url: str | None = None
    gate_params: Mapping[str, str] = field(default_factory=dict)
    gate_token_env: str | None = None
    gate_poll_interval_seconds: float = 5.0
    gate_request_timeout_seconds: float = 10.0
    gate_timeout_seconds: float | None = None
    gate_abort_on_timeout: bool = False
    registry_repository: str | None = None
    latest_tag: str = LATEST_TAG
    container_runtime: str = "docker"
    tag_source: TagSource | None = None
    http_session: requests.Session | None = None

    @classmethod
    def from_config(
        cls,
        config: Mapping[str, object],
        *,
        tag_source: TagSource | None = None,
        http_session: requests.Session | None = None,
    ) -> StepDefaults:
        """Derive action defaults from a validated effective config."""
        versioning = _section(config, "versioning")
        gate = _section(config, "quality_gate")
        registry = _section(config, "registry")
        environments = _section(config, "environments")
        seed = versioning.get("seed")
        timeout = gate.get("timeout_seconds")
        return cls(
            version_strategy=str(versioning.get("strategy", STRATEGY_TAG)),
            seed=Version.parse(seed) if isinstance(seed, str) else Version.seed(),
            tag_match=str(versioning.get("tag_match", f"{VERSION_TAG_PREFIX}*")),
            build_counter_env=str(versioning.get("build_counter_env", "BUILD_NUMBER")),
            version_file=str(versioning.get("version_file", VERSION_FILE_NAME)),
            gate_url=_str_or_none(gate.get("url")),
            gate_params={str(key): str(value) for key, value in _section(gate, "params").items()},
            gate_token_env=_str_or_none(gate.get("token_env")),
            gate_poll_interval_seconds=float(gate.get("poll_interval_seconds", 5.0)),
            gate_request_timeout_seconds=float(gate.get("request_timeout_seconds", 10.0)),
            gate_timeout_seconds=float(timeout) if isinstance(timeout, (int, float)) else None,
            gate_abort_on_timeout=bool(gate.get("abort_on_timeout", False)),
            registry_repository=_str_or_none(registry.get("repository")),
            latest_tag=str(registry.get("latest_tag", LATEST_TAG)),
            container_runtime=str(environments.get("container_runtime", "docker")),
            tag_source=tag_source,
            http_session=http_session,
        )


ActionFactory = Callable[[Mapping[str, object], StepDefaults], StageAction]


def resolve_version_action(options: Mapping[str, object], defaults: StepDefaults) -> StageAction:
    _reject_unknown(options, {"strategy", "file"}, "resolve_version")
    strategy = _optional_str(options, "strategy", "resolve_version") or defaults.version_strategy
    if strategy not in VERSION_STRATEGIES:
        raise ValueError(f"resolve_version.strategy must be one of {VERSION_STRATEGIES}")
    version_file = relative_workdir(
        _optional_str(options, "file", "resolve_version") or defaults.version_file
    ).as_posix()
    resolver = resolver_for_strategy(strategy, seed=defaults.seed)

    async def action(invocation: StageInvocation) -> None:
        context = invocation.context
        version = context.version
        if version is None:
            latest = await _version_input(strategy, context, defaults)
            version = resolver.resolve(latest)
        # Always stored in tag form, e.g. v1.2.3.
        context[CONTEXT_VERSION_KEY] = version.render()
        target = Path(context.workspace_root) / context.render(invocation.stage.workdir) / version_file
        await asyncio.to_thread(write_version_artifact, version, target)

    return action


def quality_gate_action(options: Mapping[str, object], defaults: StepDefaults) -> StageAction:
    _reject_unknown(options, {"url", "params", "token_env", "poll_interval_seconds"}, "quality_gate")
    url = _optional_str(options, "url", "quality_gate") or defaults.gate_url
    if not url:
        raise ValueError("quality_gate requires a url (stage option or [quality_gate].url)")
    raw_params = options.get("params", defaults.gate_params)
    if not isinstance(raw_params, Mapping):
        raise ValueError("quality_gate.params must be a mapping")
    params = {str(key): str(value) for key, value in raw_params.items()}
    token_env = _optional_str(options, "token_env", "quality_gate") or defaults.gate_token_env
    raw_interval = options.get("poll_interval_seconds", defaults.gate_poll_interval_seconds)
    if isinstance(raw_interval, bool) or not isinstance(raw_interval, (int, float)) or raw_interval <= 0:
        raise ValueError("quality_gate.poll_interval_seconds must be > 0")

    async def action(invocation: StageInvocation) -> None:
        context = invocation.context
        gate = HttpQualityGate(
            context.render(url),
            params={key: context.render(value) for key, value in params.items()},
            token=os.environ.get(token_env) if token_env else None,
            poll_interval_seconds=float(raw_interval),
            request_timeout_seconds=defaults.gate_request_timeout_seconds,
            session=defaults.http_session,
        )
        verdict = await gate.wait()
        context[CONTEXT_GATE_STATUS_KEY] = verdict.status
        if not verdict.passed:
            raise StageActionError(verdict.detail or f"quality gate status {verdict.status}")

    return action


def build_image_action(options: Mapping[str, object], defaults: StepDefaults) -> StageAction:
    _reject_unknown(options, {"repository", "dockerfile", "context"}, "build_image")
    publisher = _publisher(options, defaults, "build_image")
    dockerfile = _optional_str(options, "dockerfile", "build_image")
    context_dir = _optional_str(options, "context", "build_image")
    if context_dir is not None:
        relative_workdir(context_dir)

    async def action(invocation: StageInvocation) -> None:
        context = invocation.context
        version = _require_version(context)
        reference = await publisher.build(
            invocation.environment,
            version,
            context_dir=context.render(context_dir or invocation.stage.workdir),
            dockerfile=dockerfile,
        )
        context[CONTEXT_IMAGE_KEY] = reference

    return action


def publish_image_action(options: Mapping[str, object], defaults: StepDefaults) -> StageAction:
    _reject_unknown(options, {"repository"}, "publish_image")
    publisher = _publisher(options, defaults, "publish_image")

    async def action(invocation: StageInvocation) -> None:
        context = invocation.context
        version = _require_version(context)
        source = context.get(CONTEXT_IMAGE_KEY)
        if not isinstance(source, str) or not source:
            source = publisher.image_ref(version)
        published = await publisher.publish(invocation.environment, source, version)
        context[CONTEXT_PUBLISHED_KEY] = [item.reference for item in published]

    return action


BUILTIN_ACTIONS: Final[Mapping[str, ActionFactory]] = {
    "resolve_version": resolve_version_action,
    "quality_gate": quality_gate_action,
    "build_image": build_image_action,
    "publish_image": publish_image_action,
}


def build_action(name: str, options: Mapping[str, object], defaults: StepDefaults) -> StageAction:
    """Instantiate the built-in action ``name`` with its ``with:`` options."""
    factory = BUILTIN_ACTIONS.get(name)
    if factory is None:
        known = ", ".join(sorted(BUILTIN_ACTIONS))
        raise ValueError(f"unknown built-in action {name!r}; expected one of: {known}")
    return factory(options, defaults)


async def _version_input(strategy: str, context: PipelineContext, defaults: StepDefaults) -> str | None:
    if strategy == STRATEGY_BUILD_COUNTER:
        override = context.get(CONTEXT_BUILD_NUMBER_KEY)
        if override is not None:
            return str(override)
        return os.environ.get(defaults.build_counter_env)

    override = context.get(CONTEXT_LATEST_TAG_KEY)
    if isinstance(override, str):
        return override
    source = defaults.tag_source or GitTagSource(Path(context.workspace_root), match=defaults.tag_match)
    return await asyncio.to_thread(source.latest_tag)


def _require_version(context: PipelineContext) -> Version:
    version = context.version
    if version is None:
        raise StageActionError("no resolved version in context; run resolve_version first")
    return version


def _publisher(options: Mapping[str, object], defaults: StepDefaults, step: str) -> ImagePublisher:
    repository = _optional_str(options, "repository", step) or defaults.registry_repository
    if not repository:
        raise ValueError(f"{step} requires a repository (stage option or [registry].repository)")
    return ImagePublisher(
        repository,
        runtime=defaults.container_runtime,
        latest_tag=defaults.latest_tag,
    )


def _section(payload: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = payload.get(key)
    return value if isinstance(value, Mapping) else {}


def _str_or_none(value: object) -> str | None:
    return value if isinstance(value, str) and value else None


def _reject_unknown(options: Mapping[str, object], allowed: set[str], step: str) -> None:
    unknown = sorted(set(options) - allowed)
    if unknown:
        raise ValueError(f"{step} does not accept option(s): {', '.join(unknown)}")


def _optional_str(options: Mapping[str, object], key: str, step: str) -> str | None:
    value = options.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{step}.{key} must be a non-empty string")
    return value.strip()


__all__ = [
    "BUILTIN_ACTIONS",
    "CONTEXT_BUILD_NUMBER_KEY",
    "CONTEXT_GATE_STATUS_KEY",
    "CONTEXT_LATEST_TAG_KEY",
    "CONTEXT_PUBLISHED_KEY",
    "ActionFactory",
    "StepDefaults",
    "build_action",
    "build_image_action",
    "publish_image_action",
    "quality_gate_action",
    "resolve_version_action",
]
