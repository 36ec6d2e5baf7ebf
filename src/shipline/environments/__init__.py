"""Execution environments: the capability protocol and its implementations."""

from shipline.environments.base import (
    CommandResult,
    CommandSpec,
    Environment,
    EnvironmentFault,
    EnvironmentKind,
    EnvironmentRegistry,
    relative_workdir,
    run_host_command,
)
from shipline.environments.container import ContainerEnvironment, ContainerRuntime
from shipline.environments.local import LocalProcessEnvironment
from shipline.environments.ssh import SshEnvironment

__all__ = [
    "CommandResult",
    "CommandSpec",
    "ContainerEnvironment",
    "ContainerRuntime",
    "Environment",
    "EnvironmentFault",
    "EnvironmentKind",
    "EnvironmentRegistry",
    "LocalProcessEnvironment",
    "SshEnvironment",
    "relative_workdir",
    "run_host_command",
]
