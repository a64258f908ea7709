from taskorch.supervisor.base import (
    AgentLauncher,
    LaunchRequest,
    RunHandle,
    RunResult,
    SupervisedRun,
    Timeouts,
)
from taskorch.supervisor.http import HttpRun, StaticCredentialResolver
from taskorch.supervisor.output import OutputPipeline, SubtaskMarker, SubtaskMarkerParser
from taskorch.supervisor.process import CliRun, ProcessSupervisor
from taskorch.supervisor.providers import CLI_PROVIDERS, build_agent_command

__all__ = [
    "AgentLauncher",
    "CLI_PROVIDERS",
    "CliRun",
    "HttpRun",
    "LaunchRequest",
    "OutputPipeline",
    "ProcessSupervisor",
    "RunHandle",
    "RunResult",
    "StaticCredentialResolver",
    "SubtaskMarker",
    "SubtaskMarkerParser",
    "SupervisedRun",
    "Timeouts",
    "build_agent_command",
]
