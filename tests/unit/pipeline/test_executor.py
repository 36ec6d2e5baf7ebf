"""
shipline — unit tests for the pipeline executor

File: tests/unit/pipeline/test_executor.py
Last updated: 2026-10-18

Purpose
- Validate sequential stage execution, failure policies, timeouts, cancellation
  and the exactly-once cleanup guarantee.

What this test file should cover
- Declared order and one environment instance per stage.
- Hard failures abort; soft failures and skips never affect the outcome.
- Environment faults and cancellation are hard regardless of declared policy.
- Cleanup runs once after completion, abort, cancellation and executor faults.
- The shared context is mutated by reference and exported to commands.
- Artifacts are collected without interpretation.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from shipline.environments.local import LocalProcessEnvironment
from shipline.pipeline.executor import ExecutorFault, PipelineExecutor
from shipline.pipeline.models import (
    FailureKind,
    FailurePolicy,
    Precondition,
    RunOutcome,
    RunState,
    StageActionError,
    StageDescriptor,
    StageInvocation,
    StageStatus,
)
from shipline.utils.concurrency import CancellationToken

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import Harness

    from shipline.environments.base import Environment


def _stage(name: str, *command: str, **options: object) -> StageDescriptor:
    options.setdefault("environment", "box")
    return StageDescriptor(name=name, command=command, **options)  # type: ignore[arg-type]


CLEANUP = StageDescriptor(name="cleanup", environment="box", command=("ok", "cleanup"))


@pytest.mark.asyncio
async def test_stages_run_in_declared_order_each_in_fresh_environment(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [_stage("build", "ok", "build"), _stage("test", "ok", "test"), _stage("lint", "ok", "lint")]

    run = await executor.execute(stages, harness.context())

    assert [result.name for result in run.results] == ["build", "test", "lint"]
    assert all(result.status is StageStatus.SUCCEEDED for result in run.results)
    assert run.outcome is RunOutcome.SUCCESS
    assert run.state_history == [RunState.PENDING, RunState.RUNNING, RunState.COMPLETED]
    # enter/run/exit never interleave between stages.
    assert [event[0] for event in harness.events] == ["enter", "run", "exit"] * 3
    assert harness.commands() == [("ok", "build"), ("ok", "test"), ("ok", "lint")]


@pytest.mark.asyncio
async def test_hard_failure_aborts_and_leaves_later_stages_unattempted(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)
    stages = [_stage("build", "ok"), _stage("test", "fail", "2"), _stage("deploy", "ok", "deploy")]

    run = await executor.execute(stages, harness.context())

    failed = run.result_for("test")
    assert failed is not None
    assert failed.failure_kind is FailureKind.STAGE_FAILURE
    assert failed.exit_code == 2
    assert failed.detail == "boom"
    assert run.not_attempted == ("deploy",)
    assert ("ok", "deploy") not in harness.commands()
    assert run.state is RunState.ABORTED
    assert run.state_history[-2:] == [RunState.STAGE_FAILED, RunState.ABORTED]
    assert run.outcome is RunOutcome.FAILURE
    assert harness.commands().count(("ok", "cleanup")) == 1


@pytest.mark.asyncio
async def test_soft_failure_is_recorded_and_execution_continues(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [_stage("lint", "fail", policy=FailurePolicy.SOFT), _stage("test", "ok")]

    run = await executor.execute(stages, harness.context())

    assert [result.name for result in run.results] == ["lint", "test"]
    assert [result.name for result in run.soft_failures] == ["lint"]
    assert run.outcome is RunOutcome.SUCCESS
    assert run.state_history == [
        RunState.PENDING,
        RunState.RUNNING,
        RunState.STAGE_FAILED,
        RunState.RUNNING,
        RunState.COMPLETED,
    ]


@pytest.mark.asyncio
async def test_unmet_precondition_skips_without_entering_environment(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    gate = Precondition("image_ref is set", lambda context: "image_ref" in context)
    stages = [_stage("publish", "ok", "publish", precondition=gate)]

    run = await executor.execute(stages, harness.context())

    result = run.result_for("publish")
    assert result is not None
    assert result.status is StageStatus.SKIPPED
    assert result.detail == "precondition not met: image_ref is set"
    assert harness.events == []
    assert run.outcome is RunOutcome.SUCCESS


@pytest.mark.asyncio
async def test_precondition_error_fails_stage_under_its_policy(harness: Harness) -> None:
    def explode(_context: object) -> bool:
        raise KeyError("missing")

    executor = PipelineExecutor(harness.registry)
    stages = [
        _stage("gated", "ok", precondition=Precondition("gated", explode), policy=FailurePolicy.SOFT),
        _stage("next", "ok", "next"),
    ]

    run = await executor.execute(stages, harness.context())

    gated = run.result_for("gated")
    assert gated is not None
    assert gated.failure_kind is FailureKind.STAGE_FAILURE
    assert gated.policy is FailurePolicy.SOFT
    assert gated.detail is not None and gated.detail.startswith("precondition error: KeyError")
    assert run.outcome is RunOutcome.SUCCESS


@pytest.mark.asyncio
async def test_soft_timeout_policy_continues_and_releases_environment(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [
        _stage("quality", "sleep", "5", timeout_seconds=0.05, timeout_policy=FailurePolicy.SOFT),
        _stage("after", "ok", "after"),
    ]

    run = await executor.execute(stages, harness.context())

    timed_out = run.result_for("quality")
    assert timed_out is not None
    assert timed_out.failure_kind is FailureKind.TIMEOUT_EXCEEDED
    assert timed_out.policy is FailurePolicy.SOFT
    assert ("interrupted", "box") in harness.events
    assert harness.count("exit") == 2
    assert run.outcome is RunOutcome.SUCCESS


@pytest.mark.asyncio
async def test_timeout_with_hard_policy_aborts(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [
        _stage("quality", "sleep", "5", timeout_seconds=0.05, timeout_policy=FailurePolicy.HARD),
        _stage("after", "ok", "after"),
    ]

    run = await executor.execute(stages, harness.context())

    assert run.not_attempted == ("after",)
    assert run.outcome is RunOutcome.FAILURE


@pytest.mark.asyncio
async def test_hard_stage_hitting_default_timeout_aborts(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP, default_stage_timeout_seconds=0.05)
    stages = [_stage("build", "sleep", "5"), _stage("push", "ok", "push")]

    run = await executor.execute(stages, harness.context())

    build = run.result_for("build")
    assert build is not None
    assert build.failure_kind is FailureKind.TIMEOUT_EXCEEDED
    assert build.policy is FailurePolicy.HARD
    assert run.state is RunState.ABORTED
    assert run.outcome is RunOutcome.FAILURE
    assert run.not_attempted == ("push",)
    assert ("ok", "push") not in harness.commands()
    assert harness.commands()[-1] == ("ok", "cleanup")


@pytest.mark.asyncio
async def test_soft_stage_hitting_default_timeout_continues(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, default_stage_timeout_seconds=0.05)
    stages = [_stage("audit", "sleep", "5", policy=FailurePolicy.SOFT), _stage("push", "ok", "push")]

    run = await executor.execute(stages, harness.context())

    audit = run.result_for("audit")
    assert audit is not None
    assert audit.failure_kind is FailureKind.TIMEOUT_EXCEEDED
    assert audit.policy is FailurePolicy.SOFT
    assert run.outcome is RunOutcome.SUCCESS
    assert ("ok", "push") in harness.commands()


@pytest.mark.asyncio
async def test_soft_stage_with_missing_tool_does_not_abort(harness: Harness) -> None:
    harness.registry.register("host", lambda: LocalProcessEnvironment("host", workspace_root=harness.workspace))
    executor = PipelineExecutor(harness.registry)
    stages = [
        _stage("scan", "trivy-not-installed", "image", environment="host", policy=FailurePolicy.SOFT),
        _stage("publish", "ok", "publish"),
    ]

    run = await executor.execute(stages, harness.context())

    scan = run.result_for("scan")
    assert scan is not None
    assert scan.status is StageStatus.FAILED
    assert scan.policy is FailurePolicy.SOFT
    assert scan.failure_kind is FailureKind.STAGE_FAILURE
    assert scan.exit_code == 127
    assert run.state is RunState.COMPLETED
    assert run.outcome is RunOutcome.SUCCESS
    assert ("ok", "publish") in harness.commands()


@pytest.mark.asyncio
async def test_environment_fault_is_hard_even_for_soft_stage(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [_stage("deploy", "fault", policy=FailurePolicy.SOFT), _stage("after", "ok", "after")]

    run = await executor.execute(stages, harness.context())

    deploy = run.result_for("deploy")
    assert deploy is not None
    assert deploy.failure_kind is FailureKind.ENVIRONMENT_FAULT
    assert deploy.policy is FailurePolicy.HARD
    assert run.not_attempted == ("after",)
    assert run.outcome is RunOutcome.FAILURE


@pytest.mark.asyncio
async def test_enter_failure_is_an_environment_fault_and_still_releases(harness: Harness) -> None:
    harness.add("down", fail_enter=True)
    executor = PipelineExecutor(harness.registry)

    run = await executor.execute(
        [_stage("build", "ok", environment="down", policy=FailurePolicy.SOFT)],
        harness.context(),
    )

    result = run.result_for("build")
    assert result is not None
    assert result.failure_kind is FailureKind.ENVIRONMENT_FAULT
    assert "cannot provision" in (result.detail or "")
    assert harness.events == [("enter", "down"), ("exit", "down")]


@pytest.mark.asyncio
async def test_unregistered_environment_fails_hard_without_entering(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)

    run = await executor.execute([_stage("build", "ok", environment="nowhere")], harness.context())

    result = run.result_for("build")
    assert result is not None
    assert result.failure_kind is FailureKind.ENVIRONMENT_FAULT
    assert "not registered" in (result.detail or "")
    assert harness.events == []


@pytest.mark.asyncio
async def test_release_failure_turns_success_into_environment_fault(harness: Harness) -> None:
    harness.add("flaky", fail_exit=True)
    executor = PipelineExecutor(harness.registry)

    run = await executor.execute([_stage("build", "ok", environment="flaky")], harness.context())

    result = run.result_for("build")
    assert result is not None
    assert result.failure_kind is FailureKind.ENVIRONMENT_FAULT
    assert result.detail == "environment release failed: teardown broke"
    assert run.outcome is RunOutcome.FAILURE


@pytest.mark.asyncio
async def test_cleanup_runs_once_after_success(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)

    run = await executor.execute([_stage("build", "ok")], harness.context())

    assert harness.commands()[-1] == ("ok", "cleanup")
    assert harness.commands().count(("ok", "cleanup")) == 1
    assert run.cleanup_result is not None
    assert run.cleanup_result.status is StageStatus.SUCCEEDED
    assert run.cleanup_error is None


@pytest.mark.asyncio
async def test_cleanup_failure_is_recorded_but_never_changes_outcome(harness: Harness) -> None:
    cleanup = StageDescriptor(name="cleanup", environment="box", command=("fail",))
    executor = PipelineExecutor(harness.registry, cleanup=cleanup)

    run = await executor.execute([_stage("build", "ok")], harness.context())

    assert run.outcome is RunOutcome.SUCCESS
    assert run.cleanup_error == "boom"
    assert [result.name for result in run.results] == ["build"]


@pytest.mark.asyncio
async def test_token_cancellation_aborts_run_and_still_cleans_up(harness: Harness) -> None:
    token = CancellationToken()
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)
    stages = [_stage("test", "sleep", "5", policy=FailurePolicy.SOFT), _stage("deploy", "ok", "deploy")]

    asyncio.get_running_loop().call_later(0.05, token.cancel, "operator abort")
    run = await executor.execute(stages, harness.context(), cancel_token=token)

    cancelled = run.result_for("test")
    assert cancelled is not None
    assert cancelled.failure_kind is FailureKind.CANCELLED
    assert cancelled.policy is FailurePolicy.HARD
    assert cancelled.detail == "operator abort"
    assert run.state is RunState.ABORTED
    assert run.outcome is RunOutcome.FAILURE
    assert run.not_attempted == ("deploy",)
    assert ("interrupted", "box") in harness.events
    assert harness.commands().count(("ok", "cleanup")) == 1


@pytest.mark.asyncio
async def test_token_cancelled_before_start_attempts_nothing(harness: Harness) -> None:
    token = CancellationToken()
    token.cancel("shutdown")
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)

    run = await executor.execute([_stage("build", "ok", "build")], harness.context(), cancel_token=token)

    result = run.result_for("build")
    assert result is not None
    assert result.failure_kind is FailureKind.CANCELLED
    assert harness.commands() == [("ok", "cleanup")]


@pytest.mark.asyncio
async def test_task_cancellation_propagates_after_cleanup(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)
    task = asyncio.create_task(executor.execute([_stage("test", "sleep", "5")], harness.context()))

    while ("run", "box", "sleep", "5") not in harness.events:
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert ("interrupted", "box") in harness.events
    assert harness.commands().count(("ok", "cleanup")) == 1


@pytest.mark.asyncio
async def test_executor_fault_is_raised_after_cleanup_with_finalized_run(harness: Harness) -> None:
    def broken() -> Environment:
        raise RuntimeError("factory exploded")

    harness.registry.register("broken", broken)
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)

    with pytest.raises(ExecutorFault) as excinfo:
        await executor.execute(
            [_stage("build", "ok", environment="broken"), _stage("test", "ok")],
            harness.context(),
        )

    run = excinfo.value.run
    result = run.result_for("build")
    assert result is not None
    assert result.failure_kind is FailureKind.EXECUTOR_FAULT
    assert run.state is RunState.ABORTED
    assert run.outcome is RunOutcome.FAILURE
    assert run.not_attempted == ("test",)
    assert harness.commands() == [("ok", "cleanup")]


@pytest.mark.asyncio
async def test_fault_after_a_recorded_result_leaves_later_stages_unattempted(harness: Harness) -> None:
    def observer(result: object) -> None:
        raise RuntimeError("observer broke")

    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP, observer=observer)

    with pytest.raises(ExecutorFault) as excinfo:
        await executor.execute([_stage("build", "ok", "build"), _stage("test", "ok", "test")], harness.context())

    run = excinfo.value.run
    build = run.result_for("build")
    assert build is not None
    assert build.status is StageStatus.SUCCEEDED
    assert run.result_for("test") is None
    assert run.not_attempted == ("test",)
    assert run.fault_detail == "RuntimeError: observer broke"
    assert run.state is RunState.ABORTED
    assert run.outcome is RunOutcome.FAILURE
    assert harness.commands() == [("ok", "build"), ("ok", "cleanup")]


@pytest.mark.asyncio
async def test_duplicate_stage_names_are_rejected_before_anything_runs(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)

    with pytest.raises(ValueError, match="duplicate stage name 'build'"):
        await executor.execute([_stage("build", "ok"), _stage("build", "ok")], harness.context())

    assert harness.events == []


@pytest.mark.asyncio
async def test_shared_context_is_mutated_by_reference_and_exported(harness: Harness) -> None:
    async def tag_image(invocation: StageInvocation) -> None:
        invocation.context["image_ref"] = f"registry.local/app:{invocation.context['version']}"

    values: dict[str, object] = {"version": "v1.2.3"}
    executor = PipelineExecutor(harness.registry)
    stages = [
        StageDescriptor(name="image", environment="box", action=tag_image),
        _stage("deploy", "ok", "${image_ref}"),
    ]

    run = await executor.execute(stages, harness.context(values))

    assert run.outcome is RunOutcome.SUCCESS
    assert values["image_ref"] == "registry.local/app:v1.2.3"
    assert harness.commands() == [("ok", "registry.local/app:v1.2.3")]
    assert harness.specs[0].env["PIPELINE_VERSION"] == "v1.2.3"
    assert harness.specs[0].env["PIPELINE_IMAGE_REF"] == "registry.local/app:v1.2.3"


@pytest.mark.asyncio
async def test_plain_mapping_is_wrapped_and_shared(harness: Harness) -> None:
    async def mark(invocation: StageInvocation) -> None:
        invocation.context["marked"] = True

    values: dict[str, object] = {}
    executor = PipelineExecutor(harness.registry)

    await executor.execute([StageDescriptor(name="mark", environment="box", action=mark)], values)

    assert values == {"marked": True}


@pytest.mark.asyncio
async def test_action_errors_fail_the_stage_under_its_policy(harness: Harness) -> None:
    async def broken(_invocation: StageInvocation) -> None:
        raise ValueError("bad input")

    async def refuses(_invocation: StageInvocation) -> None:
        raise StageActionError("quality gate status ERROR")

    executor = PipelineExecutor(harness.registry)
    stages = [
        StageDescriptor(name="broken", environment="box", action=broken, policy=FailurePolicy.SOFT),
        StageDescriptor(name="gate", environment="box", action=refuses),
    ]

    run = await executor.execute(stages, harness.context())

    broken_result = run.result_for("broken")
    gate_result = run.result_for("gate")
    assert broken_result is not None and gate_result is not None
    assert broken_result.detail == "ValueError: bad input"
    assert broken_result.policy is FailurePolicy.SOFT
    assert gate_result.detail == "quality gate status ERROR"
    assert gate_result.blocking
    assert run.outcome is RunOutcome.FAILURE


@pytest.mark.asyncio
async def test_action_returning_false_or_exit_code_fails(harness: Harness) -> None:
    async def falsy(_invocation: StageInvocation) -> bool:
        return False

    async def exit_three(_invocation: StageInvocation) -> int:
        return 3

    executor = PipelineExecutor(harness.registry)
    stages = [
        StageDescriptor(name="falsy", environment="box", action=falsy, policy=FailurePolicy.SOFT),
        StageDescriptor(name="exit", environment="box", action=exit_three, policy=FailurePolicy.SOFT),
    ]

    run = await executor.execute(stages, harness.context())

    assert [result.exit_code for result in run.results] == [1, 3]
    assert run.outcome is RunOutcome.SUCCESS


@pytest.mark.asyncio
async def test_declared_artifact_is_collected_per_run_and_stage(harness: Harness) -> None:
    executor = PipelineExecutor(harness.registry)
    stages = [
        _stage("test", "write", "report.xml", "<testsuite/>", workdir="build", artifact_path="report.xml"),
        _stage("lint", "ok", artifact_path="missing.txt"),
    ]

    run = await executor.execute(stages, harness.context())

    test_result = run.result_for("test")
    lint_result = run.result_for("lint")
    assert test_result is not None and lint_result is not None
    expected = harness.workspace / ".shipline" / "artifacts" / "run-test" / "test" / "report.xml"
    assert test_result.artifact == expected
    assert expected.read_text(encoding="utf-8") == "<testsuite/>"
    assert lint_result.artifact is None
    assert lint_result.status is StageStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_observer_sees_each_result_in_order(harness: Harness) -> None:
    seen: list[str] = []
    executor = PipelineExecutor(harness.registry, observer=lambda result: seen.append(result.name))

    await executor.execute([_stage("a", "ok"), _stage("b", "ok")], harness.context())

    assert seen == ["a", "b"]


def test_default_timeout_must_be_positive(harness: Harness) -> None:
    with pytest.raises(ValueError, match="default_stage_timeout_seconds"):
        PipelineExecutor(harness.registry, default_stage_timeout_seconds=0)


_PLAN = st.lists(
    st.tuples(st.sampled_from([FailurePolicy.HARD, FailurePolicy.SOFT]), st.booleans()),
    min_size=1,
    max_size=6,
)


@settings(max_examples=40, deadline=None, suppress_health_check=[HealthCheck.function_scoped_fixture])
@given(plan=_PLAN)
def test_outcome_is_failure_iff_a_hard_stage_failed(
    harness_factory: Callable[[], Harness],
    plan: list[tuple[FailurePolicy, bool]],
) -> None:
    harness = harness_factory()
    stages = [
        _stage(f"s{index}", "ok" if succeeds else "fail", policy=policy)
        for index, (policy, succeeds) in enumerate(plan)
    ]
    executor = PipelineExecutor(harness.registry, cleanup=CLEANUP)

    run = asyncio.run(executor.execute(stages, harness.context()))

    first_hard = next(
        (index for index, (policy, ok) in enumerate(plan) if not ok and policy is FailurePolicy.HARD),
        None,
    )
    if first_hard is None:
        assert run.outcome is RunOutcome.SUCCESS
        assert len(run.results) == len(plan)
    else:
        assert run.outcome is RunOutcome.FAILURE
        assert len(run.results) == first_hard + 1
    assert harness.commands().count(("ok", "cleanup")) == 1
    assert harness.count("enter") == harness.count("exit")
