from taskorch.config import OrchestratorConfig, load_config
from taskorch.coordinator import SweepReport, WorkflowCoordinator
from taskorch.errors import (
    InvalidTransitionError,
    OrchestratorError,
    TaskNotFoundError,
    TransientStorageError,
    WorkflowInterrupted,
)
from taskorch.workflow_store import WorkflowStore, WorkflowToken

__version__ = "0.1.0"

__all__ = [
    "InvalidTransitionError",
    "OrchestratorConfig",
    "OrchestratorError",
    "SweepReport",
    "TaskNotFoundError",
    "TransientStorageError",
    "WorkflowCoordinator",
    "WorkflowInterrupted",
    "WorkflowStore",
    "WorkflowToken",
    "__version__",
]
