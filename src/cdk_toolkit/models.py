from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

from .errors import InternalConsistencyError


class NodeType(str, Enum):
    STACK = "stack"
    ASSET_BUILD = "asset-build"
    ASSET_PUBLISH = "asset-publish"


class DeploymentState(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    DEPLOYING = "deploying"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RequireApproval(str, Enum):
    NEVER = "never"
    ANY_CHANGE = "any-change"
    BROADENING = "broadening"


class HotswapMode(str, Enum):
    FALL_BACK = "fall-back"
    HOTSWAP_ONLY = "hotswap-only"
    FULL_DEPLOYMENT = "full-deployment"


class AssetBuildTime(str, Enum):
    """When to build assets relative to stack deployments."""

    # Build everything before the first stack deploys, so an expensive failing
    # image build does not leave half the stacks deployed.
    ALL_BEFORE_DEPLOY = "all-before-deploy"
    JUST_IN_TIME = "just-in-time"


class StackActivityProgress(str, Enum):
    BAR = "bar"
    EVENTS = "events"


# ---------------------------------------------------------------------------
# Cloud assembly artifacts
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Environment:
    account: str
    region: str
    name: str = ""

    def __str__(self) -> str:
        return self.name or f"aws://{self.account}/{self.region}"


@dataclass(frozen=True)
class AssetEntry:
    """One (asset, destination) pair from an asset manifest."""

    asset_id: str
    destination_id: str = "current_account-current_region"
    display_name: str = ""
    source: dict[str, Any] = field(default_factory=dict)
    destination: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        return self.display_name or f"{self.asset_id}:{self.destination_id}"


@dataclass(frozen=True)
class AssetManifestArtifact:
    id: str
    entries: list[AssetEntry] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StackArtifact:
    id: str
    stack_name: str = ""
    display_name: str = ""
    hierarchical_id: str = ""
    environment: Environment | None = None
    template: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    asset_manifests: list[AssetManifestArtifact] = field(default_factory=list)
    tags: dict[str, str] = field(default_factory=dict)
    notification_arns: list[str] | None = None

    def __post_init__(self) -> None:
        if not self.id.strip():
            raise ValueError("stack id must be non-empty")
        # Frozen dataclass: fill derived names through object.__setattr__.
        if not self.stack_name:
            object.__setattr__(self, "stack_name", self.id)
        if not self.display_name:
            object.__setattr__(self, "display_name", self.id)
        if not self.hierarchical_id:
            object.__setattr__(self, "hierarchical_id", self.id)

    @property
    def resource_count(self) -> int:
        return len(self.template.get("Resources") or {})


@dataclass(frozen=True)
class StackSelector:
    patterns: list[str] = field(default_factory=list)
    all_stacks: bool = False


# ---------------------------------------------------------------------------
# Work graph nodes
# ---------------------------------------------------------------------------


@dataclass(eq=False, kw_only=True)
class _WorkNodeBase:
    type: ClassVar[NodeType]

    id: str
    dependencies: set[str] = field(default_factory=set)
    state: DeploymentState = DeploymentState.PENDING
    priority: int = 0
    note: str = ""


@dataclass(eq=False, kw_only=True)
class StackNode(_WorkNodeBase):
    type: ClassVar[NodeType] = NodeType.STACK

    stack: StackArtifact


@dataclass(eq=False, kw_only=True)
class AssetBuildNode(_WorkNodeBase):
    type: ClassVar[NodeType] = NodeType.ASSET_BUILD

    parent_stack: StackArtifact
    asset_manifest_artifact: AssetManifestArtifact
    asset: AssetEntry


@dataclass(eq=False, kw_only=True)
class AssetPublishNode(_WorkNodeBase):
    type: ClassVar[NodeType] = NodeType.ASSET_PUBLISH

    parent_stack: StackArtifact
    asset_manifest_artifact: AssetManifestArtifact
    asset: AssetEntry


WorkNode = Union[StackNode, AssetBuildNode, AssetPublishNode]


# ---------------------------------------------------------------------------
# Deployment backend results
# ---------------------------------------------------------------------------


class _BackendResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)


class DidDeployStack(_BackendResult):
    type: Literal["did-deploy-stack"] = "did-deploy-stack"
    no_op: bool = Field(default=False, alias="noOp")
    outputs: dict[str, str] = Field(default_factory=dict)
    stack_arn: str = Field(alias="stackArn")


class FailPausedNeedRollbackFirst(_BackendResult):
    type: Literal["failpaused-need-rollback-first"] = "failpaused-need-rollback-first"
    reason: Literal["replacement", "not-norollback"]


class ReplacementRequiresNoRollback(_BackendResult):
    type: Literal["replacement-requires-norollback"] = "replacement-requires-norollback"


DeployStackResult = Annotated[
    Union[DidDeployStack, FailPausedNeedRollbackFirst, ReplacementRequiresNoRollback],
    Field(discriminator="type"),
]

_DEPLOY_RESULT_ADAPTER: TypeAdapter[DeployStackResult] = TypeAdapter(DeployStackResult)


def parse_deploy_result(raw: Any) -> DidDeployStack | FailPausedNeedRollbackFirst | ReplacementRequiresNoRollback:
    """Normalize a backend result (model instance or wire dict) into a result variant."""
    if isinstance(raw, (DidDeployStack, FailPausedNeedRollbackFirst, ReplacementRequiresNoRollback)):
        return raw
    try:
        return _DEPLOY_RESULT_ADAPTER.validate_python(raw)
    except ValidationError as exc:
        raise InternalConsistencyError(f"Unexpected result type from deployStack: {raw!r}") from exc


class RollbackStackResult(_BackendResult):
    success: bool = True
    not_in_rollbackable_state: bool = Field(default=False, alias="notInRollbackableState")


# ---------------------------------------------------------------------------
# Backend requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeployStackRequest:
    stack: StackArtifact
    deploy_name: str
    rollback: bool
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    reuse_assets: list[str] = field(default_factory=list)
    notification_arns: list[str] | None = None
    tags: list[dict[str, str]] = field(default_factory=list)
    execute: bool = True
    change_set_name: str | None = None
    force: bool = False
    parameters: dict[str, str | None] = field(default_factory=dict)
    use_previous_parameters: bool = True
    progress: StackActivityProgress | None = None
    ci: bool = False
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    extra_user_agent: str | None = None
    asset_parallelism: bool = True


@dataclass(frozen=True)
class RollbackStackRequest:
    stack: StackArtifact
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    force: bool = False
    validate_bootstrap_stack_version: bool = True
    orphan_logical_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DestroyStackRequest:
    stack: StackArtifact
    deploy_name: str
    role_arn: str | None = None
    ci: bool = False


@dataclass(frozen=True)
class AssetOptions:
    stack: StackArtifact
    stack_name: str
    role_arn: str | None = None
