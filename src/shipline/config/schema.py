"""
shipline — configuration schema and validation.

File: src/shipline/config/schema.py
Last updated: 2026-10-18

Purpose
- Hold the built-in defaults for ``shipline.toml`` and the rules every
  effective config must satisfy before a run starts.

Model
- Each section is a table of fields; each field carries a checker that either
  returns the normalized value or raises ``_Invalid`` with a short message.
- Validation collects every problem as a ``ConfigValidationIssue`` (dotted path
  plus message) instead of stopping at the first one.
- Profiles are partial overlays of the same sections (``meta`` excluded).
- Credentials are referenced by environment variable name through ``*_env``
  keys; any other secret-looking key is rejected outright.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict

from shipline.constants import (
    ARTIFACTS_DIR,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_PIPELINE_FILE,
    LATEST_TAG,
    LOG_DIR,
    REPORTS_DIR,
    VERSION_FILE_NAME,
)
from shipline.versioning.resolver import VERSION_STRATEGIES, Version, VersionParseError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "local")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
CONTAINER_RUNTIMES: Final[tuple[str, ...]] = ("docker", "podman")

REDACTED_VALUE: Final[str] = "<redacted>"

# Relative values are resolved against the directory holding shipline.toml.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("pipeline", "definition"),
    ("paths", "workspace_root"),
    ("paths", "artifacts_dir"),
    ("paths", "reports_dir"),
    ("observability", "log_dir"),
)

_ENV_NAME = re.compile(r"[A-Z_][A-Z0-9_]*")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_WORD_BREAK = re.compile(r"([a-z0-9])([A-Z])")
_WORD_SPLIT = re.compile(r"[^a-z0-9]+")

_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"apikey", "auth", "credential", "credentials", "passwd", "password", "private", "secret", "token"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = ("access_token", "api_key", "client_secret", "private_key")


class MetaConfig(TypedDict):
    schema_version: int


class PipelineSection(TypedDict):
    definition: str
    default_stage_timeout_seconds: float


class VersioningConfig(TypedDict):
    strategy: Literal["tag", "build_counter"]
    seed: str
    tag_match: str
    build_counter_env: str
    version_file: str


class EnvironmentsConfig(TypedDict):
    container_runtime: Literal["docker", "podman"]
    mount_point: str
    inherit_host_env: bool


class QualityGateConfig(TypedDict):
    url: NotRequired[str]
    token_env: NotRequired[str]
    timeout_seconds: NotRequired[float]
    params: dict[str, str]
    poll_interval_seconds: float
    request_timeout_seconds: float
    abort_on_timeout: bool


class RegistryConfig(TypedDict):
    repository: NotRequired[str]
    latest_tag: str


class PathsConfig(TypedDict):
    workspace_root: str
    artifacts_dir: str
    reports_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    redact_secrets: bool
    log_to_stdout: bool


class ProfileOverlay(TypedDict, total=False):
    pipeline: dict[str, object]
    versioning: dict[str, object]
    environments: dict[str, object]
    quality_gate: dict[str, object]
    registry: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class ShiplineConfig(TypedDict):
    meta: MetaConfig
    pipeline: PipelineSection
    versioning: VersioningConfig
    environments: EnvironmentsConfig
    quality_gate: QualityGateConfig
    registry: RegistryConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[ShiplineConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "pipeline": {
        "definition": DEFAULT_PIPELINE_FILE.as_posix(),
        "default_stage_timeout_seconds": 3600.0,
    },
    "versioning": {
        "strategy": "tag",
        "seed": "1.0.0",
        "tag_match": "v*",
        "build_counter_env": "BUILD_NUMBER",
        "version_file": VERSION_FILE_NAME,
    },
    "environments": {
        "container_runtime": "docker",
        "mount_point": "/workspace",
        "inherit_host_env": True,
    },
    "quality_gate": {
        "params": {},
        "poll_interval_seconds": 5.0,
        "request_timeout_seconds": 10.0,
        "abort_on_timeout": False,
    },
    "registry": {"latest_tag": LATEST_TAG},
    "paths": {
        "workspace_root": ".",
        "artifacts_dir": ARTIFACTS_DIR.as_posix(),
        "reports_dir": REPORTS_DIR.as_posix(),
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": LOG_DIR.as_posix(),
        "redact_secrets": True,
        "log_to_stdout": False,
    },
    "profiles": {
        "ci": {
            "environments": {"inherit_host_env": False},
            "quality_gate": {"abort_on_timeout": True},
            "observability": {"log_to_stdout": True},
        },
        "local": {"observability": {"log_level": "DEBUG"}},
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """One failed rule, addressed by dotted path (``quality_gate.url``)."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised by ``assert_valid_config`` with every collected issue."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues] or ["- <root>: unknown failure"]
        super().__init__("invalid config:\n" + "\n".join(lines))


class _Invalid(ValueError):
    pass


_Check = Callable[[object], object]


@dataclass(frozen=True, slots=True)
class _Field:
    name: str
    check: _Check
    required: bool = True


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise _Invalid("must not be empty")
    return stripped


def _path_text(value: object) -> str:
    text = _text(value)
    if "\x00" in text:
        raise _Invalid("must not contain NUL bytes")
    return text


def _workspace_relative(value: object) -> str:
    text = _path_text(value)
    if text.startswith(("/", "\\")) or ".." in text.replace("\\", "/").split("/"):
        raise _Invalid("must be a relative path inside the workspace")
    return text


def _env_name(value: object) -> str:
    text = _text(value)
    if _ENV_NAME.fullmatch(text) is None:
        raise _Invalid("must be an env var name (example: QUALITY_GATE_TOKEN)")
    return text


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Invalid(f"expected boolean, got {type(value).__name__}")
    return value


def _seconds(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Invalid(f"expected number, got {type(value).__name__}")
    seconds = float(value)
    if not math.isfinite(seconds):
        raise _Invalid("must be finite")
    if seconds <= 0:
        raise _Invalid("must be > 0")
    return seconds


def _one_of(choices: tuple[str, ...]) -> _Check:
    def check(value: object) -> str:
        text = _text(value)
        if text not in choices:
            raise _Invalid(f"invalid value {text!r}; expected one of: {', '.join(sorted(choices))}")
        return text

    return check


def _schema_version(value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise _Invalid(f"expected integer, got {type(value).__name__}")
    if value < 1:
        raise _Invalid("must be >= 1")
    if value != ConfigSchemaVersion:
        raise _Invalid(migration_guidance(value))
    return value


def _seed(value: object) -> str:
    try:
        return Version.parse(_text(value)).render(prefix="")
    except VersionParseError as exc:
        raise _Invalid(str(exc)) from exc


def _container_path(value: object) -> str:
    text = _text(value)
    if not text.startswith("/"):
        raise _Invalid("must be an absolute container path")
    return text


def _http_url(value: object) -> str:
    text = _text(value)
    if not text.startswith(("http://", "https://")):
        raise _Invalid("must be an http(s) URL")
    return text


def _repository(value: object) -> str:
    text = _text(value)
    if ":" in text.rsplit("/", 1)[-1]:
        raise _Invalid("must not include a tag")
    return text


def _string_params(value: object) -> dict[str, str]:
    if not isinstance(value, Mapping):
        raise _Invalid(f"expected object, got {type(value).__name__}")
    params: dict[str, str] = {}
    for key, item in value.items():
        if not isinstance(key, str) or not isinstance(item, str) or not item.strip():
            raise _Invalid(f"entry {key!r} must map a string key to a non-empty string")
        params[key] = item.strip()
    return dict(sorted(params.items()))


_SECTIONS: Final[dict[str, tuple[_Field, ...]]] = {
    "meta": (_Field("schema_version", _schema_version),),
    "pipeline": (
        _Field("definition", _path_text),
        _Field("default_stage_timeout_seconds", _seconds),
    ),
    "versioning": (
        _Field("strategy", _one_of(VERSION_STRATEGIES)),
        _Field("seed", _seed),
        _Field("tag_match", _text),
        _Field("build_counter_env", _env_name),
        _Field("version_file", _workspace_relative),
    ),
    "environments": (
        _Field("container_runtime", _one_of(CONTAINER_RUNTIMES)),
        _Field("mount_point", _container_path),
        _Field("inherit_host_env", _flag),
    ),
    "quality_gate": (
        _Field("url", _http_url, required=False),
        _Field("token_env", _env_name, required=False),
        _Field("timeout_seconds", _seconds, required=False),
        _Field("params", _string_params),
        _Field("poll_interval_seconds", _seconds),
        _Field("request_timeout_seconds", _seconds),
        _Field("abort_on_timeout", _flag),
    ),
    "registry": (
        _Field("repository", _repository, required=False),
        _Field("latest_tag", _text),
    ),
    "paths": (
        _Field("workspace_root", _path_text),
        _Field("artifacts_dir", _path_text),
        _Field("reports_dir", _path_text),
    ),
    "observability": (
        _Field("log_level", _one_of(LOG_LEVELS)),
        _Field("log_dir", _path_text),
        _Field("redact_secrets", _flag),
        _Field("log_to_stdout", _flag),
    ),
}

_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(sorted(set(_SECTIONS) - {"meta"}))


def default_config() -> ShiplineConfig:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain what to upgrade when ``meta.schema_version`` does not match this build."""
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade shipline.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the shipline runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated.

    Nested mappings merge key by key; every other value (lists included)
    replaces what was there.
    """
    merged: dict[str, Any] = _clone(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _clone(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge ``profiles.<profile>`` over ``config`` and validate the result.

    ``None`` or a blank name returns an unmodified copy.
    """
    selected = (profile or "").strip()
    if not selected:
        return _clone(config)

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError([ConfigValidationIssue("profiles", f"profile {selected!r} is not defined")])
    if not isinstance(overlay, Mapping):
        issue = ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object")
        raise ConfigValidationError([issue])
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Check a full config and return the normalized copy, or every issue found."""
    issues: list[ConfigValidationIssue] = []
    root = _mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized: dict[str, Any] = {}
    _report_unknown(root, (*_SECTIONS, "profiles"), "", issues)
    for section in sorted(_SECTIONS):
        if section not in root:
            issues.append(ConfigValidationIssue(section, "missing required field"))
            continue
        payload = _mapping(root[section], section, issues)
        if payload is not None:
            normalized[section] = _check_section(section, payload, section, issues, partial=False)

    if "profiles" in root:
        profiles = _mapping(root["profiles"], "profiles", issues)
        if profiles is not None:
            normalized["profiles"] = _check_profiles(profiles, issues)

    selected = (active_profile or "").strip()
    if selected and selected not in normalized.get("profiles", {}):
        issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` safe to print: ``*_env`` references and secret-looking keys are masked."""
    if not isinstance(config, Mapping):
        return {}
    return _redacted(config)


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    return redact_config(config)


def _check_section(
    section: str,
    payload: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    fields = _SECTIONS[section]
    _report_unknown(payload, tuple(field.name for field in fields), path, issues)

    checked: dict[str, Any] = {}
    for field in sorted(fields, key=lambda item: item.name):
        field_path = f"{path}.{field.name}"
        if field.name not in payload:
            if field.required and not partial:
                issues.append(ConfigValidationIssue(field_path, "missing required field"))
            continue
        try:
            checked[field.name] = field.check(payload[field.name])
        except _Invalid as exc:
            issues.append(ConfigValidationIssue(field_path, str(exc)))
    return checked


def _check_profiles(profiles: Mapping[str, object], issues: list[ConfigValidationIssue]) -> dict[str, Any]:
    checked: dict[str, Any] = {}
    for name in sorted(profiles):
        profile_path = f"profiles.{name}"
        if _PROFILE_NAME.fullmatch(name) is None:
            issues.append(ConfigValidationIssue(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$"))
            continue
        overlay = _mapping(profiles[name], profile_path, issues)
        if overlay is None:
            continue
        _report_unknown(overlay, _OVERLAY_SECTIONS, profile_path, issues)
        sections: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            if overlay.get(section) is None:
                continue
            section_path = f"{profile_path}.{section}"
            payload = _mapping(overlay[section], section_path, issues)
            if payload is not None:
                sections[section] = _check_section(section, payload, section_path, issues, partial=True)
        checked[name] = sections
    return checked


def _mapping(value: object, path: str, issues: list[ConfigValidationIssue]) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.append(ConfigValidationIssue(path, f"object key must be string, got {type(key).__name__}"))
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _report_unknown(
    payload: Mapping[str, object],
    known: Sequence[str],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    for key in sorted(set(payload) - set(known)):
        key_path = f"{path}.{key}" if path else key
        if _is_secret_key(key):
            message = "embedded secret values are forbidden; use an *_env key with an env var name"
        else:
            message = "unknown field"
        issues.append(ConfigValidationIssue(key_path, message))


def _key_words(key: str) -> list[str]:
    spaced = _WORD_BREAK.sub(r"\1_\2", key.strip()).lower()
    return [word for word in _WORD_SPLIT.split(spaced) if word]


def _is_secret_key(key: str) -> bool:
    words = _key_words(key)
    if words[-1:] == ["env"]:
        return False
    joined = "_".join(words)
    return not _SECRET_WORDS.isdisjoint(words) or any(phrase in joined for phrase in _SECRET_PHRASES)


def _redacted(payload: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(payload):
        value = payload[key]
        if _key_words(key)[-1:] == ["env"] or _is_secret_key(key):
            out[key] = REDACTED_VALUE
        elif isinstance(value, Mapping):
            out[key] = _redacted(value)
        elif isinstance(value, (list, tuple)):
            out[key] = [_redacted(item) if isinstance(item, Mapping) else item for item in value]
        else:
            out[key] = value
    return out


def _clone(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _clone(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_clone(item) for item in value]
    return copy.deepcopy(value)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "CONTAINER_RUNTIMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "REDACTED_VALUE",
    "ShiplineConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
