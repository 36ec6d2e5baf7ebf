"""JSON run reports for CI consumption."""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING

from shipline.constants import RUN_REPORT_SCHEMA_VERSION
from shipline.utils.fs import atomic_write

if TYPE_CHECKING:
    from shipline.pipeline.models import PipelineRun, StageResult


def result_to_dict(result: StageResult) -> dict[str, object]:
    return {
        "name": result.name,
        "status": result.status.value,
        "policy": result.policy.value,
        "duration_ms": result.duration_ms,
        "exit_code": result.exit_code,
        "failure_kind": result.failure_kind.value if result.failure_kind is not None else None,
        "artifact": result.artifact.as_posix() if result.artifact is not None else None,
        "detail": result.detail,
    }


def run_to_dict(run: PipelineRun) -> dict[str, object]:
    """Render ``run`` as a JSON-safe mapping with results in execution order."""
    version = run.version
    return {
        "schema_version": RUN_REPORT_SCHEMA_VERSION,
        "run_id": run.run_id,
        "state": run.state.value,
        "state_history": [state.value for state in run.state_history],
        "outcome": run.outcome.value if run.outcome is not None else None,
        "version": version.render() if version is not None else None,
        "duration_ms": run.duration_ms,
        "stages": [result_to_dict(result) for result in run.results],
        "not_attempted": list(run.not_attempted),
        "cleanup": result_to_dict(run.cleanup_result) if run.cleanup_result is not None else None,
        "cleanup_error": run.cleanup_error,
        "fault": run.fault_detail,
    }


def write_run_report(run: PipelineRun, path: Path | str) -> Path:
    """Atomically write the JSON report for ``run`` to ``path``."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    payload = json.dumps(run_to_dict(run), indent=2, sort_keys=True, ensure_ascii=False)
    atomic_write(target, payload + "\n")
    return target


__all__ = ["result_to_dict", "run_to_dict", "write_run_report"]
