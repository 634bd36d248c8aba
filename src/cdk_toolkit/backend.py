from __future__ import annotations

import importlib
import logging
from typing import Any, Protocol

from .models import (
    AssetEntry,
    AssetManifestArtifact,
    AssetOptions,
    DeployStackRequest,
    DestroyStackRequest,
    DidDeployStack,
    FailPausedNeedRollbackFirst,
    ReplacementRequiresNoRollback,
    RollbackStackRequest,
    RollbackStackResult,
    StackArtifact,
)

logger = logging.getLogger(__name__)


class Deployments(Protocol):
    """Deployment backend performing the actual CloudFormation calls.

    ``deploy_stack`` may return a result model or its wire dict, e.g.
    ``{"type": "did-deploy-stack", "noOp": False, "outputs": {}, "stackArn": "arn:..."}``.
    """

    async def deploy_stack(
        self, request: DeployStackRequest
    ) -> DidDeployStack | FailPausedNeedRollbackFirst | ReplacementRequiresNoRollback | dict[str, Any]:
        ...

    async def rollback_stack(self, request: RollbackStackRequest) -> RollbackStackResult | dict[str, Any]:
        ...

    async def destroy_stack(self, request: DestroyStackRequest) -> None:
        ...

    async def build_single_asset(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> None:
        ...

    async def publish_single_asset(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> None:
        ...

    async def is_single_asset_published(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> bool:
        ...

    async def stack_exists(self, stack: StackArtifact) -> bool:
        ...

    async def read_current_template(self, stack: StackArtifact) -> dict[str, Any]:
        ...


def load_deployments(reference: str, **kwargs: Any) -> Deployments:
    """Instantiate a backend from a ``package.module:attribute`` reference.

    A class or factory attribute is called with ``kwargs``; any other object is
    returned as-is.
    """
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name.strip() or not attribute.strip():
        raise ValueError(f"Deployment backend must look like 'package.module:attribute', got: {reference!r}")
    module = importlib.import_module(module_name.strip())
    try:
        target = getattr(module, attribute.strip())
    except AttributeError as exc:
        raise ValueError(f"Module {module_name!r} has no attribute {attribute!r}") from exc
    backend = target(**kwargs) if callable(target) else target
    logger.debug("Loaded deployment backend %s from %s", type(backend).__name__, reference)
    return backend


def parse_rollback_result(raw: RollbackStackResult | dict[str, Any] | None) -> RollbackStackResult:
    if isinstance(raw, RollbackStackResult):
        return raw
    return RollbackStackResult.model_validate(raw or {})
