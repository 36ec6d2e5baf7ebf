"""Stock stage preconditions evaluated against the shared context."""

from __future__ import annotations

from pathlib import Path

from shipline.environments.base import relative_workdir
from shipline.pipeline.models import PipelineContext, Precondition


def file_exists(path: str) -> Precondition:
    """Met when ``path`` (relative to the workspace root) exists."""
    relative = relative_workdir(path).as_posix()

    def check(context: PipelineContext) -> bool:
        return (Path(context.workspace_root) / context.render(relative)).exists()

    return Precondition(description=f"file_exists({relative})", check=check)


def variable_set(name: str) -> Precondition:
    """Met when ``name`` is present in the context with a non-empty value."""
    key = name.strip()
    if not key:
        raise ValueError("variable name must be non-empty")

    def check(context: PipelineContext) -> bool:
        value = context.get(key)
        if value is None:
            return False
        if isinstance(value, str):
            return bool(value.strip())
        return True

    return Precondition(description=f"variable_set({key})", check=check)


def all_of(*preconditions: Precondition) -> Precondition:
    """Met when every precondition is met; evaluation stops at the first unmet one."""
    if not preconditions:
        raise ValueError("all_of() requires at least one precondition")
    members = tuple(preconditions)

    def check(context: PipelineContext) -> bool:
        return all(member(context) for member in members)

    description = " and ".join(member.description for member in members)
    return Precondition(description=description, check=check)


__all__ = ["all_of", "file_exists", "variable_set"]
