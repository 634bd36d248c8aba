from importlib.metadata import version

from .assembly import CloudAssembly, DefaultSelection, ExtendedStackSelection
from .backend import Deployments, load_deployments
from .confirmation import ConfirmationGate
from .deploy_state_machine import DeployStateMachine
from .errors import (
    ConfirmationUnavailableError,
    InternalConsistencyError,
    RollbackError,
    StackDeploymentError,
    StackSelectionError,
    ToolkitError,
    UserAbortedError,
    WorkGraphError,
)
from .models import (
    AssetBuildNode,
    AssetBuildTime,
    AssetEntry,
    AssetManifestArtifact,
    AssetPublishNode,
    DeploymentState,
    DidDeployStack,
    Environment,
    FailPausedNeedRollbackFirst,
    HotswapMode,
    NodeType,
    ReplacementRequiresNoRollback,
    RequireApproval,
    RollbackStackResult,
    StackActivityProgress,
    StackArtifact,
    StackNode,
    StackSelector,
)
from .settings import ProjectConfig, RuntimeSettings
from .toolkit import CdkToolkit, DeployOptions, DestroyOptions, RollbackOptions, WatchOptions
from .watch import WatchLatch, WatchLoop
from .work_graph import Concurrency, WorkGraph, WorkGraphActions
from .work_graph_builder import WorkGraphBuilder


def get_version() -> str:
    try:
        return version("cdk-toolkit")
    except Exception:
        return "0.0.0"


__all__ = [
    "AssetBuildNode",
    "AssetBuildTime",
    "AssetEntry",
    "AssetManifestArtifact",
    "AssetPublishNode",
    "CdkToolkit",
    "CloudAssembly",
    "Concurrency",
    "ConfirmationGate",
    "ConfirmationUnavailableError",
    "DefaultSelection",
    "DeployOptions",
    "DeployStateMachine",
    "DeploymentState",
    "Deployments",
    "DestroyOptions",
    "DidDeployStack",
    "Environment",
    "ExtendedStackSelection",
    "FailPausedNeedRollbackFirst",
    "HotswapMode",
    "InternalConsistencyError",
    "NodeType",
    "ProjectConfig",
    "ReplacementRequiresNoRollback",
    "RequireApproval",
    "RollbackError",
    "RollbackOptions",
    "RollbackStackResult",
    "RuntimeSettings",
    "StackActivityProgress",
    "StackArtifact",
    "StackDeploymentError",
    "StackNode",
    "StackSelectionError",
    "StackSelector",
    "ToolkitError",
    "UserAbortedError",
    "WatchLatch",
    "WatchLoop",
    "WatchOptions",
    "WorkGraph",
    "WorkGraphActions",
    "WorkGraphBuilder",
    "WorkGraphError",
    "get_version",
    "load_deployments",
]
