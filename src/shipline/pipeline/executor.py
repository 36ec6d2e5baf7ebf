"""
shipline — pipeline executor

File: src/shipline/pipeline/executor.py
Last updated: 2026-10-18

Purpose
- Execute an ordered list of stage descriptors, each in its own environment
  instance, apply per-stage failure policy and always run terminal cleanup.

Normative behavior
- Stages run strictly in declared order; there is no stage parallelism.
- An unmet precondition skips the stage without entering its environment.
- A hard failure aborts the run; later stages are never attempted. A soft
  failure is recorded and execution continues.
- Every stage is bounded by its own timeout or the executor default. Expiry is a
  failure evaluated with the stage's timeout policy, which falls back to its
  declared policy. Only quality-gate stages default to a soft timeout.
- Environment faults and cancellation are always hard.
- The environment is released after every stage, including on timeout,
  cancellation and faults.
- Cleanup runs exactly once per run after completion, abort, cancellation or an
  executor fault. Its failure is logged and recorded but never changes the outcome.
- Declared artifacts are copied into ``<artifacts_dir>/<run_id>/<stage>/`` when
  present; their contents are never interpreted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Iterable, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from shipline.environments.base import (
    CommandResult,
    CommandSpec,
    Environment,
    EnvironmentFault,
    EnvironmentRegistry,
)
from shipline.observability.logging import correlation_scope, redact_text
from shipline.pipeline.models import (
    FailureKind,
    FailurePolicy,
    PipelineContext,
    PipelineRun,
    RunState,
    StageActionError,
    StageDescriptor,
    StageInvocation,
    StageResult,
    StageStatus,
)
from shipline.utils.concurrency import CancellationToken, run_with_timeout
from shipline.utils.fs import collect_file

logger = logging.getLogger(__name__)

DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 3600.0
_DETAIL_MAX_CHARS: Final[int] = 2000

StageObserver = Callable[[StageResult], None]


class ExecutorFault(RuntimeError):
    """Raised after cleanup when the executor itself failed unexpectedly.

    ``run`` is the finalized record, with the in-flight stage marked as an
    executor fault.
    """

    def __init__(self, message: str, *, run: PipelineRun) -> None:
        self.run = run
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class _StageOutcome:
    exit_code: int
    detail: str | None = None


class PipelineExecutor:
    """Sequential pipeline executor with per-stage isolation and guaranteed cleanup."""

    def __init__(
        self,
        registry: EnvironmentRegistry,
        *,
        cleanup: StageDescriptor | None = None,
        default_stage_timeout_seconds: float = DEFAULT_STAGE_TIMEOUT_SECONDS,
        observer: StageObserver | None = None,
    ) -> None:
        if default_stage_timeout_seconds <= 0:
            raise ValueError("default_stage_timeout_seconds must be > 0")
        self._registry = registry
        self._cleanup = cleanup
        self._default_timeout_seconds = float(default_stage_timeout_seconds)
        self._observer = observer

    async def execute(
        self,
        stages: Iterable[StageDescriptor],
        shared_context: PipelineContext | MutableMapping[str, object],
        *,
        cancel_token: CancellationToken | None = None,
    ) -> PipelineRun:
        """Run ``stages`` against ``shared_context`` and return the finalized run.

        Raises ``ExecutorFault`` (after cleanup) on an unexpected internal error and
        re-raises ``asyncio.CancelledError`` (after cleanup) when the awaiting task
        itself is cancelled. Cancelling ``cancel_token`` is not an error: the run is
        aborted and returned. Duplicate stage names raise ``ValueError`` up front,
        before any stage or the cleanup runs.
        """
        context = (
            shared_context
            if isinstance(shared_context, PipelineContext)
            else PipelineContext(shared_context)
        )
        run = PipelineRun(run_id=context.run_id, stages=tuple(stages), context=context)
        token = cancel_token or CancellationToken()
        started = time.perf_counter()
        fault: Exception | None = None

        with correlation_scope(run_id=run.run_id):
            logger.info("pipeline started", extra={"stage_count": len(run.stages)})
            try:
                run.transition(RunState.RUNNING)
                await self._run_stages(run, token)
            except asyncio.CancelledError:
                self._interrupt(run, FailureKind.CANCELLED, "pipeline task cancelled", started)
                raise
            except Exception as exc:  # noqa: BLE001 - recorded, then re-raised as ExecutorFault.
                logger.exception("executor fault")
                self._interrupt(run, FailureKind.EXECUTOR_FAULT, f"{type(exc).__name__}: {exc}", started)
                fault = exc
            finally:
                try:
                    await self._run_cleanup(run)
                finally:
                    run.duration_ms = _duration_ms(started)
                    run.finalize()
                    logger.info(
                        "pipeline finished",
                        extra={
                            "state": run.state.value,
                            "outcome": run.outcome.value if run.outcome else None,
                            "duration_ms": run.duration_ms,
                        },
                    )

        if fault is not None:
            raise ExecutorFault(f"pipeline executor fault: {fault}", run=run) from fault
        return run

    async def _run_stages(self, run: PipelineRun, token: CancellationToken) -> None:
        for stage in run.stages:
            run.current_stage = stage.name
            if token.is_cancelled:
                result = _failed(
                    stage.name,
                    FailureKind.CANCELLED,
                    FailurePolicy.HARD,
                    0,
                    detail=token.reason or "cancelled before start",
                )
            else:
                result = await self._run_stage(run.context, stage, token)
            aborted = self._apply(run, result)
            run.current_stage = None
            if aborted:
                return
        run.transition(RunState.COMPLETED)

    def _apply(self, run: PipelineRun, result: StageResult) -> bool:
        run.record(result)
        self._log_result(result)
        if self._observer is not None:
            self._observer(result)
        if result.status is not StageStatus.FAILED:
            return False
        run.transition(RunState.STAGE_FAILED)
        if result.blocking:
            run.transition(RunState.ABORTED)
            return True
        run.transition(RunState.RUNNING)
        return False

    def _interrupt(self, run: PipelineRun, kind: FailureKind, detail: str, started: float) -> None:
        if run.is_terminal:
            return
        run.fault_detail = detail
        # Only a stage still in flight is charged; unstarted stages stay not attempted.
        pending = run.current_stage
        if pending is not None and run.result_for(pending) is None:
            result = _failed(pending, kind, FailurePolicy.HARD, _duration_ms(started), detail=detail)
            run.record(result)
            self._log_result(result)
        run.current_stage = None
        if run.state is RunState.RUNNING:
            run.transition(RunState.STAGE_FAILED)
        run.transition(RunState.ABORTED)

    async def _run_stage(
        self,
        context: PipelineContext,
        stage: StageDescriptor,
        token: CancellationToken,
    ) -> StageResult:
        start = time.perf_counter()
        with correlation_scope(stage=stage.name, environment=stage.environment):
            if stage.precondition is not None:
                try:
                    met = stage.precondition(context)
                except Exception as exc:  # noqa: BLE001
                    return _failed(
                        stage.name,
                        FailureKind.STAGE_FAILURE,
                        stage.policy,
                        _duration_ms(start),
                        detail=f"precondition error: {type(exc).__name__}: {exc}",
                    )
                if not met:
                    return StageResult(
                        name=stage.name,
                        status=StageStatus.SKIPPED,
                        duration_ms=_duration_ms(start),
                        policy=stage.policy,
                        detail=f"precondition not met: {stage.precondition.description}",
                    )

            try:
                environment = self._registry.create(stage.environment)
            except EnvironmentFault as exc:
                return _failed(
                    stage.name,
                    FailureKind.ENVIRONMENT_FAULT,
                    FailurePolicy.HARD,
                    _duration_ms(start),
                    detail=str(exc),
                )

            timeout = stage.timeout_seconds or self._default_timeout_seconds
            try:
                result = await self._attempt(context, stage, environment, token, timeout, start)
            finally:
                release_error = await _release(environment)

            if release_error is not None and result.status is not StageStatus.FAILED:
                result = _failed(
                    stage.name,
                    FailureKind.ENVIRONMENT_FAULT,
                    FailurePolicy.HARD,
                    _duration_ms(start),
                    detail=release_error,
                )
            return self._with_artifact(context, stage, result)

    async def _attempt(
        self,
        context: PipelineContext,
        stage: StageDescriptor,
        environment: Environment,
        token: CancellationToken,
        timeout: float,
        start: float,
    ) -> StageResult:
        try:
            outcome = await run_with_timeout(
                _enter_and_invoke(context, stage, environment),
                timeout,
                token,
            )
        except TimeoutError:
            return _failed(
                stage.name,
                FailureKind.TIMEOUT_EXCEEDED,
                stage.effective_timeout_policy,
                _duration_ms(start),
                detail=f"stage exceeded its {timeout:g}s bounded wait",
            )
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            return _failed(
                stage.name,
                FailureKind.CANCELLED,
                FailurePolicy.HARD,
                _duration_ms(start),
                detail=token.reason or "cancelled",
            )
        except EnvironmentFault as exc:
            return _failed(
                stage.name,
                FailureKind.ENVIRONMENT_FAULT,
                FailurePolicy.HARD,
                _duration_ms(start),
                detail=str(exc),
            )
        except StageActionError as exc:
            return _failed(
                stage.name,
                FailureKind.STAGE_FAILURE,
                stage.policy,
                _duration_ms(start),
                detail=str(exc),
            )

        if outcome.exit_code == 0:
            return StageResult(
                name=stage.name,
                status=StageStatus.SUCCEEDED,
                duration_ms=_duration_ms(start),
                policy=stage.policy,
                exit_code=0,
                detail=outcome.detail,
            )
        return _failed(
            stage.name,
            FailureKind.STAGE_FAILURE,
            stage.policy,
            _duration_ms(start),
            exit_code=outcome.exit_code,
            detail=outcome.detail or f"exit status {outcome.exit_code}",
        )

    def _with_artifact(
        self,
        context: PipelineContext,
        stage: StageDescriptor,
        result: StageResult,
    ) -> StageResult:
        if stage.artifact_path is None or result.status is StageStatus.SKIPPED:
            return result
        source = Path(context.workspace_root) / context.render(stage.workdir) / stage.artifact_path
        destination = Path(context.artifacts_dir) / context.run_id / stage.name
        try:
            collected = collect_file(source, destination)
        except OSError as exc:
            logger.warning(
                "artifact collection failed",
                extra={"artifact": source.as_posix(), "error": str(exc)},
            )
            return result
        if collected is None:
            return result
        return StageResult(
            name=result.name,
            status=result.status,
            duration_ms=result.duration_ms,
            policy=result.policy,
            artifact=collected,
            exit_code=result.exit_code,
            failure_kind=result.failure_kind,
            detail=result.detail,
        )

    async def _run_cleanup(self, run: PipelineRun) -> None:
        cleanup = self._cleanup
        if cleanup is None or run.cleanup_result is not None or run.cleanup_error is not None:
            return
        try:
            # A fresh token: cancelling the run must not cancel its cleanup.
            result = await self._run_stage(run.context, cleanup, CancellationToken())
        except Exception as exc:  # noqa: BLE001 - cleanup failure never changes the outcome.
            run.cleanup_error = f"{type(exc).__name__}: {exc}"
            logger.exception("cleanup raised", extra={"cleanup": cleanup.name})
            return

        run.cleanup_result = result
        if result.status is StageStatus.FAILED:
            run.cleanup_error = result.detail or str(result.failure_kind)
            logger.error(
                "cleanup failed",
                extra={
                    "cleanup": cleanup.name,
                    "failure_kind": str(result.failure_kind),
                    "detail": result.detail,
                },
            )
        else:
            logger.info("cleanup finished", extra={"cleanup": cleanup.name, "status": result.status.value})

    @staticmethod
    def _log_result(result: StageResult) -> None:
        fields = {
            "stage_name": result.name,
            "status": result.status.value,
            "policy": result.policy.value,
            "duration_ms": result.duration_ms,
            "exit_code": result.exit_code,
            "failure_kind": result.failure_kind.value if result.failure_kind else None,
            "artifact": result.artifact,
        }
        if result.blocking:
            logger.error("stage failed", extra=fields)
        elif result.status is StageStatus.FAILED:
            logger.warning("stage failed (soft)", extra=fields)
        else:
            logger.info("stage finished", extra=fields)


async def _enter_and_invoke(
    context: PipelineContext,
    stage: StageDescriptor,
    environment: Environment,
) -> _StageOutcome:
    try:
        await environment.enter()
    except EnvironmentFault:
        raise
    except Exception as exc:  # noqa: BLE001
        raise EnvironmentFault(
            f"enter failed: {type(exc).__name__}: {exc}",
            environment_id=stage.environment,
        ) from exc

    if stage.action is not None:
        try:
            raw = await stage.action(StageInvocation(stage=stage, environment=environment, context=context))
        except (EnvironmentFault, StageActionError, TimeoutError):
            raise
        except Exception as exc:  # noqa: BLE001
            raise StageActionError(f"{type(exc).__name__}: {exc}") from exc
        return _normalize_action_output(raw)

    try:
        spec = CommandSpec(
            argv=context.render_argv(stage.command),
            cwd=context.render(stage.workdir),
            env={**context.export_env(), **stage.env},
        )
    except ValueError as exc:
        raise StageActionError(f"invalid command: {exc}") from exc
    result = await environment.run(spec)
    return _StageOutcome(
        exit_code=result.exit_code,
        detail=None if result.succeeded else _tail(result.stderr or result.stdout),
    )


async def _release(environment: Environment) -> str | None:
    try:
        await environment.exit()
    except Exception as exc:  # noqa: BLE001
        logger.error("environment release failed", extra={"error": f"{type(exc).__name__}: {exc}"})
        return f"environment release failed: {exc}"
    return None


def _normalize_action_output(raw: object) -> _StageOutcome:
    if raw is None or raw is True:
        return _StageOutcome(exit_code=0)
    if raw is False:
        return _StageOutcome(exit_code=1, detail="action reported failure")
    if isinstance(raw, int):
        return _StageOutcome(exit_code=raw)
    if isinstance(raw, CommandResult):
        return _StageOutcome(
            exit_code=raw.exit_code,
            detail=None if raw.succeeded else _tail(raw.stderr or raw.stdout),
        )
    raise StageActionError(f"unsupported action result type {type(raw).__name__}")


def _failed(
    name: str,
    kind: FailureKind,
    policy: FailurePolicy,
    duration_ms: int,
    *,
    exit_code: int | None = None,
    detail: str | None = None,
) -> StageResult:
    return StageResult(
        name=name,
        status=StageStatus.FAILED,
        duration_ms=duration_ms,
        policy=policy,
        exit_code=exit_code,
        failure_kind=kind,
        detail=detail,
    )


def _tail(text: str) -> str | None:
    stripped = redact_text(text).strip()
    if not stripped:
        return None
    if len(stripped) <= _DETAIL_MAX_CHARS:
        return stripped
    return stripped[-_DETAIL_MAX_CHARS:]


def _duration_ms(start: float) -> int:
    elapsed_seconds = max(time.perf_counter() - start, 0.0)
    return int(round(elapsed_seconds * 1000))


__all__ = [
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "ExecutorFault",
    "PipelineExecutor",
    "StageObserver",
]
