"""
shipline — terminal output for the CLI.

File: src/shipline/ui/render.py
Last updated: 2026-10-18

Purpose
- Print stage progress lines, the run summary and small key/value blocks.
- ANSI color is an accent only; it is off when ``NO_COLOR`` is set, when
  ``--no-color`` is passed, or when stdout is not a terminal.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING, Final

from shipline.pipeline.models import StageStatus

if TYPE_CHECKING:
    from collections.abc import Sequence

    from shipline.pipeline.models import PipelineRun, StageResult

_ANSI: Final[dict[str, str]] = {
    "green": "\033[32m",
    "red": "\033[31m",
    "yellow": "\033[33m",
    "dim": "\033[2m",
    "reset": "\033[0m",
}


def _wants_color(disabled: bool) -> bool:
    if disabled or os.environ.get("NO_COLOR"):
        return False
    isatty = getattr(sys.stdout, "isatty", None)
    return bool(isatty and isatty())


class CLIRenderer:
    """Writes CLI output to stdout; every method prints whole lines."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _wants_color(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def text(self, line: str) -> None:
        print(line)

    def section(self, title: str) -> None:
        print(f"\n{title}")

    def warning(self, text: str) -> None:
        print(f"  Warning: {self._paint(text, 'yellow')}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Left-aligned columns separated by two spaces, with a dashed rule under the headers."""
        if not rows:
            return
        cells = [[str(value) for value in row[: len(headers)]] for row in rows]
        widths = [len(header) for header in headers]
        for row in cells:
            for index, value in enumerate(row):
                widths[index] = max(widths[index], len(value))
        if title:
            self.section(title)
        for line in (list(headers), ["-" * width for width in widths], *cells):
            padded = (value.ljust(widths[index]) for index, value in enumerate(line))
            print("  " + "  ".join(padded).rstrip())

    def stage(self, result: StageResult) -> None:
        """Print one line per finished stage as the run progresses."""

        label = _status_label(result)
        color = {"ok": "green", "skip": "dim", "warn": "yellow"}.get(label, "red")
        line = f"  [{self._paint(label.upper().ljust(4), color)}] {result.name} ({result.duration_ms} ms)"
        print(line)
        if result.detail and (self.verbose or label not in {"ok", "skip"}):
            for detail_line in result.detail.splitlines()[-5:]:
                print(f"         {detail_line}")

    def run_summary(self, run: PipelineRun) -> None:
        """Print the outcome block after a run finalizes."""

        outcome = run.outcome.value if run.outcome is not None else "unknown"
        version = run.version
        self.section("Summary:")
        self.kv("  Run ID", run.run_id)
        self.kv("  State", run.state.value)
        self.kv("  Outcome", self._paint(outcome, "green" if outcome == "success" else "red"))
        self.kv("  Version", version.render() if version is not None else "(unresolved)")
        self.kv("  Duration", f"{run.duration_ms} ms")
        if run.soft_failures:
            self.kv("  Soft failures", ", ".join(item.name for item in run.soft_failures))
        if run.not_attempted:
            self.kv("  Not attempted", ", ".join(run.not_attempted))
        if run.fault_detail:
            self.warning(f"run interrupted: {run.fault_detail}")
        if run.cleanup_error:
            self.warning(f"cleanup failed: {run.cleanup_error}")

    def _paint(self, text: str, color: str) -> str:
        if not self._color:
            return text
        return f"{_ANSI[color]}{text}{_ANSI['reset']}"


def _status_label(result: StageResult) -> str:
    if result.status is StageStatus.SUCCEEDED:
        return "ok"
    if result.status is StageStatus.SKIPPED:
        return "skip"
    return "fail" if result.blocking else "warn"


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
