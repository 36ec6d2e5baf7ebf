"""
shipline — unit tests for the process entrypoint

File: tests/unit/test_main.py
Last updated: 2026-10-18

Purpose
- Validate the exit-code contract of ``cli_entrypoint``.

What this test file should cover
- Typed errors map to their documented exit codes, including chained causes.
- ``SystemExit`` and ``KeyboardInterrupt`` are normalized.
- Real commands that need no network or git succeed or fail with the right code.
"""

from __future__ import annotations

from pathlib import Path

import pytest

import shipline.ui.cli as cli_module
from shipline.config import ConfigValidationError, ConfigValidationIssue
from shipline.environments import EnvironmentFault
from shipline.main import ExitCode, cli_entrypoint
from shipline.pipeline.executor import ExecutorFault
from shipline.pipeline.models import PipelineContext, PipelineRun


def _raise(exc: BaseException):  # type: ignore[no-untyped-def]
    def run_cli(_argv: object) -> int:
        raise exc

    return run_cli


def _chained_environment_fault() -> RuntimeError:
    try:
        raise EnvironmentFault("docker daemon unreachable", environment_id="build")
    except EnvironmentFault as cause:
        wrapped = RuntimeError("stage setup failed")
        wrapped.__cause__ = cause
        return wrapped


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ConfigValidationError([ConfigValidationIssue(path="pipeline", message="bad")]), ExitCode.CONFIG_ERROR),
        (EnvironmentFault("no runtime"), ExitCode.ENVIRONMENT_ERROR),
        (_chained_environment_fault(), ExitCode.ENVIRONMENT_ERROR),
        (
            ExecutorFault("boom", run=PipelineRun(run_id="r", stages=(), context=PipelineContext())),
            ExitCode.INTERNAL_ERROR,
        ),
        (LookupError("surprise"), ExitCode.INTERNAL_ERROR),
    ],
)
def test_exceptions_route_to_exit_codes(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    exc: BaseException,
    expected: ExitCode,
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raise(exc))

    assert cli_entrypoint([]) == int(expected)
    assert capsys.readouterr().err


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (SystemExit(0), 0),
        (SystemExit(None), 0),
        (SystemExit(2), 2),
        (SystemExit(99), int(ExitCode.INTERNAL_ERROR)),
        (SystemExit("fatal"), int(ExitCode.INTERNAL_ERROR)),
        (KeyboardInterrupt(), int(ExitCode.PIPELINE_FAILED)),
    ],
)
def test_system_exit_and_interrupt_are_normalized(
    monkeypatch: pytest.MonkeyPatch, exc: BaseException, expected: int
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", _raise(exc))

    assert cli_entrypoint([]) == expected


def test_version_command_prints_next_version(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    code = cli_entrypoint(["version", "--repo-root", str(tmp_path), "--tag", "v2.9.9", "--write"])

    assert code == 0
    assert capsys.readouterr().out.strip() == "v2.9.10"
    assert (tmp_path / "VERSION").read_bytes() == b"v2.9.10"


def test_version_command_with_malformed_tag_uses_seed(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["version", "--repo-root", str(tmp_path), "--tag", "nightly", "--json"]) == 0

    assert '"version":"v1.0.1"' in capsys.readouterr().out


def test_missing_pipeline_file_is_a_config_error(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["plan", "--repo-root", str(tmp_path)]) == int(ExitCode.CONFIG_ERROR)

    assert "cannot read" in capsys.readouterr().err


def test_bad_context_value_is_a_usage_error(tmp_path: Path) -> None:
    (tmp_path / "shipline.yaml").write_text("stages:\n  - name: a\n    run: 'true'\n", encoding="utf-8")

    assert cli_entrypoint(["run", "--repo-root", str(tmp_path), "--set", "novalue"]) == 2


def test_unknown_subcommand_exits_with_usage_code() -> None:
    assert cli_entrypoint(["deploy-everything"]) == 2
