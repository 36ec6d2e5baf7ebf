"""
shipline — process entrypoint.

File: src/shipline/main.py
Last updated: 2026-10-18

Purpose
- Turn whatever the CLI returns or raises into one of the documented exit codes:
  0 success, 1 pipeline failed, 2 config/definition error, 3 environment error,
  4 internal error.
- Typed errors are recognized anywhere in the cause/context chain, so a wrapped
  ``EnvironmentFault`` still exits with 3.
"""

from __future__ import annotations

import sys
import traceback
from enum import IntEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ExitCode(IntEnum):
    SUCCESS = 0
    PIPELINE_FAILED = 1
    CONFIG_ERROR = 2
    ENVIRONMENT_ERROR = 3
    INTERNAL_ERROR = 4


_KNOWN_CODES = frozenset(int(code) for code in ExitCode)


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and return a process exit code; never raises."""
    try:
        from shipline.ui.cli import run_cli

        return _exit_code_of(run_cli(argv))
    except SystemExit as exc:
        return _exit_code_of(exc.code)
    except KeyboardInterrupt:
        _say("interrupted")
        return int(ExitCode.PIPELINE_FAILED)
    except Exception as exc:  # noqa: BLE001 - last-chance boundary for the process.
        code = classify_exception(exc)
        if code is ExitCode.INTERNAL_ERROR:
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=sys.stderr)
        else:
            _say(str(exc).strip() or type(exc).__name__)
        return int(code)


def classify_exception(exc: BaseException) -> ExitCode:
    """Exit code for ``exc``; the first recognized error in its chain decides."""
    from shipline.config import ConfigLoadError, ConfigValidationError
    from shipline.environments import EnvironmentFault
    from shipline.pipeline.definition import PipelineDefinitionError
    from shipline.pipeline.executor import ExecutorFault

    # ExecutorFault is checked first: it can wrap any of the others.
    routes: tuple[tuple[tuple[type[BaseException], ...], ExitCode], ...] = (
        ((ExecutorFault,), ExitCode.INTERNAL_ERROR),
        ((ConfigLoadError, ConfigValidationError, PipelineDefinitionError), ExitCode.CONFIG_ERROR),
        ((EnvironmentFault,), ExitCode.ENVIRONMENT_ERROR),
    )
    for link in _chain(exc):
        for types, code in routes:
            if isinstance(link, types):
                return code
    return ExitCode.INTERNAL_ERROR


def _chain(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None:
            link = link.__cause__
        elif not link.__suppress_context__:
            link = link.__context__
        else:
            link = None


def _exit_code_of(raw: object) -> int:
    if raw is None:
        return int(ExitCode.SUCCESS)
    if isinstance(raw, int) and raw in _KNOWN_CODES:
        return raw
    if isinstance(raw, str) and raw.strip():
        _say(raw.strip())
    return int(ExitCode.INTERNAL_ERROR)


def _say(message: str) -> None:
    print(message.rstrip("\n"), file=sys.stderr)


__all__ = ["ExitCode", "classify_exception", "cli_entrypoint"]
