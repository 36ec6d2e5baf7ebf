"""
shipline — config loader

File: src/shipline/config/loader.py
Last updated: 2026-10-18

Purpose
- Build the effective config for one invocation from layered sources.

Layering (later wins)
1. built-in defaults
2. ``shipline.toml`` (explicit path, or looked up in the repo root)
3. the selected profile overlay (``--profile``, ``profile`` CLI key or ``SHIPLINE_PROFILE``)
4. ``SHIPLINE_<SECTION>_<KEY>`` environment variables, typed after the value they replace
5. CLI overrides given as dotted keys (``pipeline.default_stage_timeout_seconds``)

The merged result is validated after every layer that can introduce bad values,
and path fields are made absolute relative to the config file's directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from shipline.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)
from shipline.constants import CONFIG_FILE_NAME

DEFAULT_CONFIG_FILE: Final[str] = CONFIG_FILE_NAME
ENV_PREFIX: Final[str] = "SHIPLINE_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Optional fields have no default value to infer an env type from.
_OPTIONAL_FIELD_TYPES: Final[Mapping[tuple[str, ...], type]] = {
    ("quality_gate", "url"): str,
    ("quality_gate", "token_env"): str,
    ("quality_gate", "timeout_seconds"): float,
    ("registry", "repository"): str,
}


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    search_dir: str | Path | None = None,
    require_secret_env_values: bool = False,
) -> dict[str, Any]:
    """Return the validated effective config.

    A missing ``shipline.toml`` in ``search_dir`` (default: the current
    directory) is not an error; a missing explicit ``config_path`` is.
    """
    env = dict(os.environ if environ is None else environ)
    overrides = dict(cli_overrides or {})
    if config_path is None:
        source = (Path(search_dir or Path.cwd()).expanduser() / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()

    file_layer = _read_toml(source, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), file_layer))

    active_profile = _select_profile(profile, overrides, env)
    if active_profile is not None:
        config = apply_profile_overlay(config, active_profile)

    config = merge_config(config, _env_layer(config, env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config, active_profile=active_profile)
    config = assert_valid_config(normalize_paths(config, base_dir=source.parent), active_profile=active_profile)

    if require_secret_env_values:
        _check_secret_env(config, env)
    return config


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make every path field (including those inside profiles) absolute under ``base_dir``."""
    result = merge_config({}, config)
    targets = list(PATH_FIELDS)
    profiles = result.get("profiles")
    if isinstance(profiles, Mapping):
        targets.extend(("profiles", name, *field) for name in sorted(profiles) for field in PATH_FIELDS)
    for path in targets:
        value = _lookup(result, path)
        if isinstance(value, str):
            _assign(result, path, _absolute(value, base_dir))
    return result


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted view of ``config`` for display and logs."""
    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object]) -> str:
    return json.dumps(effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None,
    overrides: Mapping[str, object],
    env: Mapping[str, str],
) -> str | None:
    if explicit is not None:
        return explicit.strip() or None
    if "profile" in overrides and overrides["profile"] is not None:
        chosen = overrides["profile"]
        if not isinstance(chosen, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
        return chosen.strip() or None
    return (env.get(PROFILE_ENV_VAR) or "").strip() or None


def _env_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    field_types: dict[tuple[str, ...], type] = {
        path: type(value)
        for path, value in _leaves(config)
        if path[0] != "profiles" and isinstance(value, (str, int, float, bool))
    }
    for path, field_type in _OPTIONAL_FIELD_TYPES.items():
        field_types.setdefault(path, field_type)

    layer: dict[str, Any] = {}
    for path in sorted(field_types):
        name = env_var_name(path)
        if name in env:
            _assign(layer, path, _coerce(env[name], field_types[path], name, path))
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        value = overrides[key]
        if key == "profile" or value is None:
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


def env_var_name(path: tuple[str, ...]) -> str:
    """``("quality_gate", "url")`` -> ``SHIPLINE_QUALITY_GATE_URL``."""
    return ENV_PREFIX + "_".join(part.upper() for part in path)


def _coerce(raw: str, field_type: type, name: str, path: tuple[str, ...]) -> object:
    text = raw.strip()
    target = ".".join(path)
    if field_type is bool:
        lowered = text.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
        raise ConfigLoadError(f"{name} -> {target} must be a boolean (true/false/1/0/yes/no/on/off)")
    parsers: dict[type, tuple[Callable[[str], object], str]] = {
        int: (int, "an integer"),
        float: (float, "a number"),
    }
    if field_type not in parsers:
        return text
    parse, label = parsers[field_type]
    try:
        return parse(text)
    except ValueError as exc:
        raise ConfigLoadError(f"{name} -> {target} must be {label}") from exc


def _leaves(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _lookup(payload: Mapping[str, object], path: tuple[str, ...]) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    node = target
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[path[-1]] = value


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _check_secret_env(config: Mapping[str, object], env: Mapping[str, str]) -> None:
    # The gate token only matters when a gate is configured.
    if not _lookup(config, ("quality_gate", "url")):
        return
    name = _lookup(config, ("quality_gate", "token_env"))
    if isinstance(name, str) and not env.get(name, "").strip():
        raise ConfigLoadError(
            f"missing required secret environment variable values: quality_gate.token_env -> {name}"
        )


__all__ = [
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "ConfigLoadError",
    "dump_effective_config",
    "effective_config",
    "env_var_name",
    "load_config",
    "normalize_paths",
]
