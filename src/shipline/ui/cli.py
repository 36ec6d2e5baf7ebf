"""Command-line interface router for shipline."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import signal
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from shipline.config import (
    ConfigLoadError,
    ConfigValidationError,
    effective_config,
    load_config,
)
from shipline.constants import CONTEXT_VERSION_KEY
from shipline.observability import setup_logging, shutdown_logging
from shipline.pipeline.definition import (
    PipelineDefinition,
    PipelineDefinitionError,
    load_pipeline_definition,
)
from shipline.pipeline.executor import ExecutorFault, PipelineExecutor
from shipline.pipeline.models import PipelineContext, PipelineRun, RunOutcome, new_run_id
from shipline.pipeline.report import run_to_dict, write_run_report
from shipline.pipeline.steps import CONTEXT_BUILD_NUMBER_KEY, CONTEXT_LATEST_TAG_KEY, StepDefaults
from shipline.ui.render import CLIRenderer, create_renderer
from shipline.utils.concurrency import CancellationToken
from shipline.versioning import (
    STRATEGY_BUILD_COUNTER,
    VERSION_STRATEGIES,
    GitTagError,
    GitTagSource,
    resolver_for_strategy,
    write_version_artifact,
)


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="shipline",
        description=(
            "shipline — sequential CI pipeline runner.\n\n"
            "Common workflows:\n"
            "  shipline run                 Execute ./shipline.yaml\n"
            "  shipline plan                Show the stages a run would execute\n"
            "  shipline version             Print the next release version\n"
            "  shipline config              Print the effective (redacted) config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--repo-root",
        default=".",
        help="Repository root directory (default: current working directory).",
    )
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to shipline TOML config (default: <repo-root>/shipline.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run -----------------------------------------------------------------
    run_parser = subparsers.add_parser(
        "run",
        parents=[common],
        help="Execute the pipeline",
        description=(
            "Run every stage of the pipeline in order, then cleanup.\n\n"
            "Examples:\n"
            "  shipline run\n"
            "  shipline run --pipeline ci/release.yaml --profile ci\n"
            "  shipline run --tag v2.3.9 --set branch=main --json\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    run_parser.add_argument("--pipeline", default=None, help="Pipeline YAML file override")
    run_parser.add_argument("--tag", default=None, help="Latest release tag (skips git lookup)")
    run_parser.add_argument("--build-number", default=None, help="CI build counter override")
    run_parser.add_argument(
        "--set",
        dest="context_values",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Seed the shared context (repeatable)",
    )
    run_parser.add_argument("--report", default=None, help="Run report path override")
    run_parser.add_argument("--json", action="store_true", help="Emit the run report as JSON")
    run_parser.set_defaults(handler=_cmd_run)

    # plan ----------------------------------------------------------------
    plan_parser = subparsers.add_parser(
        "plan",
        parents=[common],
        help="Validate the pipeline and list its stages",
    )
    plan_parser.add_argument("--pipeline", default=None, help="Pipeline YAML file override")
    plan_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    plan_parser.set_defaults(handler=_cmd_plan)

    # version -------------------------------------------------------------
    version_parser = subparsers.add_parser(
        "version",
        parents=[common],
        help="Resolve the next release version",
        description=(
            "Compute the next version from the latest tag (or build counter).\n\n"
            "Examples:\n"
            "  shipline version\n"
            "  shipline version --tag v1.4.2\n"
            "  shipline version --strategy build_counter --build-number 57 --write\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    version_parser.add_argument("--tag", default=None, help="Latest tag (skips git lookup)")
    version_parser.add_argument("--build-number", default=None, help="CI build counter")
    version_parser.add_argument(
        "--strategy", choices=VERSION_STRATEGIES, default=None, help="Versioning strategy override"
    )
    version_parser.add_argument(
        "--write",
        nargs="?",
        const="",
        default=None,
        metavar="PATH",
        help="Write the version artifact (default path: versioning.version_file)",
    )
    version_parser.add_argument(
        "--create-tag", action="store_true", help="Create an annotated git tag for the version"
    )
    version_parser.add_argument(
        "--push", action="store_true", help="Push the created tag to the remote"
    )
    version_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    version_parser.set_defaults(handler=_cmd_version)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective configuration (secrets redacted)",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit deterministic JSON output")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_run(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    defaults = StepDefaults.from_config(config)
    definition = _load_definition(args, config, repo_root, defaults)

    paths = _section(config, "paths")
    environments = _section(config, "environments")
    workspace_root = Path(str(paths.get("workspace_root", repo_root)))
    run_id = new_run_id()

    values: dict[str, object] = dict(_parse_context_values(args.context_values))
    if args.tag is not None:
        values[CONTEXT_LATEST_TAG_KEY] = args.tag
    if args.build_number is not None:
        values[CONTEXT_BUILD_NUMBER_KEY] = args.build_number
    context = PipelineContext(
        values,
        workspace_root=workspace_root,
        run_id=run_id,
        artifacts_dir=paths.get("artifacts_dir"),
    )

    registry = definition.build_registry(
        workspace_root,
        container_runtime=str(environments.get("container_runtime", "docker")),
        mount_point=str(environments.get("mount_point", "/workspace")),
        inherit_host_env=bool(environments.get("inherit_host_env", True)),
    )

    emit_json = bool(args.json)
    renderer = _get_renderer(args)
    if not emit_json:
        renderer.kv("Pipeline", definition.name)
        renderer.kv("Run ID", run_id)
        renderer.section("Stages:")

    executor = PipelineExecutor(
        registry,
        cleanup=definition.cleanup,
        default_stage_timeout_seconds=float(
            _section(config, "pipeline").get("default_stage_timeout_seconds", 3600.0)
        ),
        observer=None if emit_json else renderer.stage,
    )

    setup_logging(_section(config, "observability"), run_id=run_id)
    try:
        try:
            run = asyncio.run(_execute(executor, definition, context))
        except ExecutorFault as exc:
            _write_report(args, exc.run, paths)
            raise
    finally:
        shutdown_logging()

    report_path = _write_report(args, run, paths)
    if emit_json:
        _emit_json(run_to_dict(run))
    else:
        renderer.run_summary(run)
        renderer.kv("  Report", report_path.as_posix())
    return 0 if run.outcome is RunOutcome.SUCCESS else 1


def _cmd_plan(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    definition = _load_definition(args, config, repo_root, StepDefaults.from_config(config))

    stages = list(definition.stages)
    if definition.cleanup is not None:
        stages.append(definition.cleanup)
    rows = [
        {
            "name": stage.name,
            "environment": stage.environment,
            "kind": "action" if stage.action is not None else "command",
            "policy": stage.policy.value,
            "timeout_seconds": stage.timeout_seconds,
            "timeout_policy": stage.effective_timeout_policy.value,
            "when": stage.precondition.description if stage.precondition is not None else None,
            "cleanup": stage is definition.cleanup,
        }
        for stage in stages
    ]

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "plan",
                "pipeline": definition.name,
                "source": definition.source.as_posix() if definition.source else None,
                "environments": sorted(definition.environments),
                "stages": rows,
            }
        )
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Pipeline", definition.name)
    renderer.kv("Environments", ", ".join(sorted(definition.environments)))
    renderer.table(
        ("STAGE", "ENV", "KIND", "POLICY", "TIMEOUT", "WHEN"),
        [
            (
                f"{row['name']} (cleanup)" if row["cleanup"] else str(row["name"]),
                str(row["environment"]),
                str(row["kind"]),
                str(row["policy"]),
                "-" if row["timeout_seconds"] is None else f"{row['timeout_seconds']:g}s/{row['timeout_policy']}",
                str(row["when"] or "-"),
            )
            for row in rows
        ],
        title="Stages:",
    )
    return 0


def _cmd_version(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    defaults = StepDefaults.from_config(config)
    strategy = args.strategy or defaults.version_strategy

    if strategy == STRATEGY_BUILD_COUNTER:
        latest = args.build_number
    elif args.tag is not None:
        latest = args.tag
    else:
        latest = _latest_git_tag(repo_root, defaults.tag_match)

    version = resolver_for_strategy(strategy, seed=defaults.seed).resolve(latest)

    written: Path | None = None
    if args.write is not None:
        target = Path(args.write) if args.write else Path(defaults.version_file)
        if not target.is_absolute():
            target = repo_root / target
        written = write_version_artifact(version, target)

    created_tag: str | None = None
    if args.create_tag:
        try:
            created_tag = GitTagSource(repo_root, match=defaults.tag_match).create_tag(
                version, push=bool(args.push)
            )
        except GitTagError as exc:
            raise CLIError(f"tagging failed: {exc}", exit_code=1) from exc

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "version",
                "strategy": strategy,
                "input": latest,
                "version": version.render(),
                "written": written.as_posix() if written is not None else None,
                "tag": created_tag,
            }
        )
        return 0

    print(version.render())
    if args.verbose:
        renderer = _get_renderer(args)
        renderer.kv("Strategy", strategy)
        renderer.kv("Input", latest if latest is not None else "(none)")
    if written is not None:
        print(f"wrote {written.as_posix()}", file=sys.stderr)
    if created_tag is not None:
        print(f"tagged {created_tag}", file=sys.stderr)
    return 0


def _cmd_config(args: argparse.Namespace) -> int:
    repo_root = _repo_root(args)
    config = _load_effective_config(args, repo_root)
    profile = _optional_str(getattr(args, "profile", None))
    redacted = effective_config(config)

    if _flag(args, "json"):
        _emit_json({"command": "config", "active_profile": profile, "config": redacted})
        return 0

    renderer = _get_renderer(args)
    renderer.kv("Active profile", profile or "(default)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def _execute(
    executor: PipelineExecutor,
    definition: PipelineDefinition,
    context: PipelineContext,
) -> PipelineRun:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    installed: list[int] = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops; the default handler then applies.
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, token.cancel, f"received {signal.Signals(signum).name}")
            installed.append(signum)
    try:
        return await executor.execute(definition.stages, context, cancel_token=token)
    finally:
        for signum in installed:
            loop.remove_signal_handler(signum)


def _write_report(args: argparse.Namespace, run: PipelineRun, paths: Mapping[str, object]) -> Path:
    if args.report:
        target = Path(args.report)
    else:
        target = Path(str(paths.get("reports_dir", "."))) / f"{run.run_id}.json"
    return write_run_report(run, target)


def _latest_git_tag(repo_root: Path, match: str) -> str | None:
    try:
        return GitTagSource(repo_root, match=match).latest_tag()
    except GitTagError as exc:
        raise CLIError(f"cannot read git tags: {exc}", exit_code=3) from exc


def _parse_context_values(raw_values: Sequence[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for raw in raw_values:
        key, sep, value = raw.partition("=")
        key = key.strip()
        if not sep or not key:
            raise CLIError(f"--set expects KEY=VALUE, got {raw!r}", exit_code=2)
        if key == CONTEXT_VERSION_KEY and not value.strip():
            raise CLIError("--set version requires a value", exit_code=2)
        values[key] = value
    return values


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _repo_root(args: argparse.Namespace) -> Path:
    raw = _optional_str(getattr(args, "repo_root", None)) or "."
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(args: argparse.Namespace, repo_root: Path) -> dict[str, object]:
    config_path = _optional_str(getattr(args, "config_path", None))
    profile = _optional_str(getattr(args, "profile", None))
    if config_path is not None and not Path(config_path).expanduser().is_absolute():
        config_path = (repo_root / config_path).as_posix()

    try:
        loaded = load_config(config_path, profile=profile, search_dir=repo_root)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc
    return dict(loaded)


def _load_definition(
    args: argparse.Namespace,
    config: Mapping[str, object],
    repo_root: Path,
    defaults: StepDefaults,
) -> PipelineDefinition:
    override = _optional_str(getattr(args, "pipeline", None))
    if override is not None:
        path = Path(override).expanduser()
        if not path.is_absolute():
            path = repo_root / path
    else:
        path = Path(str(_section(config, "pipeline").get("definition", repo_root / "shipline.yaml")))

    try:
        return load_pipeline_definition(path, defaults=defaults)
    except PipelineDefinitionError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _section(config: Mapping[str, object], key: str) -> Mapping[str, object]:
    value = config.get(key)
    return value if isinstance(value, Mapping) else {}


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "build_parser", "run_cli"]
