"""Pipeline model, executor, built-in steps and pipeline definitions."""

from shipline.pipeline.definition import (
    PipelineDefinition,
    PipelineDefinitionError,
    load_pipeline_definition,
    parse_pipeline_definition,
)
from shipline.pipeline.executor import ExecutorFault, PipelineExecutor
from shipline.pipeline.models import (
    FailureKind,
    FailurePolicy,
    InvalidTransitionError,
    PipelineContext,
    PipelineRun,
    Precondition,
    RunOutcome,
    RunState,
    StageActionError,
    StageDescriptor,
    StageInvocation,
    StageResult,
    StageStatus,
)
from shipline.pipeline.report import run_to_dict, write_run_report

__all__ = [
    "ExecutorFault",
    "FailureKind",
    "FailurePolicy",
    "InvalidTransitionError",
    "PipelineContext",
    "PipelineDefinition",
    "PipelineDefinitionError",
    "PipelineExecutor",
    "PipelineRun",
    "Precondition",
    "RunOutcome",
    "RunState",
    "StageActionError",
    "StageDescriptor",
    "StageInvocation",
    "StageResult",
    "StageStatus",
    "load_pipeline_definition",
    "parse_pipeline_definition",
    "run_to_dict",
    "write_run_report",
]
