from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from cdk_toolkit.assembly import CloudAssembly
from cdk_toolkit.confirmation import ConfirmationGate
from cdk_toolkit.models import (
    AssetEntry,
    AssetManifestArtifact,
    AssetOptions,
    DeployStackRequest,
    DestroyStackRequest,
    Environment,
    RollbackStackRequest,
    StackArtifact,
)
from cdk_toolkit.settings import ProjectConfig, RuntimeSettings
from cdk_toolkit.toolkit import CdkToolkit

DEFAULT_ENV = Environment(account="123456789012", region="us-east-1")


class FakeDeployments:
    """In-memory backend recording every call in order."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.deploy_requests: list[DeployStackRequest] = []
        self.rollback_requests: list[RollbackStackRequest] = []
        self.destroy_requests: list[DestroyStackRequest] = []
        # stack id -> queued results (dicts, models or exceptions to raise)
        self.deploy_results: dict[str, list[Any]] = {}
        self.outputs: dict[str, dict[str, str]] = {}
        self.rollback_results: dict[str, Any] = {}
        self.published: set[str] = set()
        self.existing: set[str] = set()
        self.current_templates: dict[str, dict[str, Any]] = {}
        self.delays: dict[str, float] = {}

    async def deploy_stack(self, request: DeployStackRequest) -> Any:
        self.calls.append(("deploy", request.stack.id))
        self.deploy_requests.append(request)
        await asyncio.sleep(self.delays.get(request.stack.id, 0))
        queue = self.deploy_results.get(request.stack.id)
        if queue:
            result = queue.pop(0)
            if isinstance(result, BaseException):
                raise result
            return result
        return {
            "type": "did-deploy-stack",
            "noOp": False,
            "outputs": dict(self.outputs.get(request.stack.id, {})),
            "stackArn": f"arn:aws:cloudformation:us-east-1:123456789012:stack/{request.deploy_name}/1",
        }

    async def rollback_stack(self, request: RollbackStackRequest) -> Any:
        self.calls.append(("rollback", request.stack.id))
        self.rollback_requests.append(request)
        result = self.rollback_results.get(request.stack.id, {"success": True})
        if isinstance(result, BaseException):
            raise result
        return result

    async def destroy_stack(self, request: DestroyStackRequest) -> None:
        self.calls.append(("destroy", request.stack.id))
        self.destroy_requests.append(request)

    async def build_single_asset(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> None:
        self.calls.append(("build", asset.asset_id))

    async def publish_single_asset(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> None:
        self.calls.append(("publish", asset.asset_id))

    async def is_single_asset_published(
        self, manifest: AssetManifestArtifact, asset: AssetEntry, options: AssetOptions
    ) -> bool:
        self.calls.append(("check", asset.asset_id))
        return asset.asset_id in self.published

    async def stack_exists(self, stack: StackArtifact) -> bool:
        return stack.id in self.existing

    async def read_current_template(self, stack: StackArtifact) -> dict[str, Any]:
        return self.current_templates.get(stack.id, {})

    def actions(self, kind: str) -> list[str]:
        return [name for action, name in self.calls if action == kind]


def build_stack(
    stack_id: str,
    *,
    dependencies: list[str] | None = None,
    assets: list[str] | None = None,
    resources: dict[str, Any] | None = None,
    environment: Environment | None = DEFAULT_ENV,
    **kwargs: Any,
) -> StackArtifact:
    if resources is None:
        resources = {"Topic": {"Type": "AWS::SNS::Topic"}}
    manifests = []
    if assets:
        manifests.append(
            AssetManifestArtifact(
                id=f"{stack_id}.assets",
                entries=[
                    AssetEntry(
                        asset_id=asset_id,
                        source={"path": f"asset.{asset_id}"},
                        destination={"bucketName": "cdk-assets", "objectKey": f"{asset_id}.zip"},
                    )
                    for asset_id in assets
                ],
            )
        )
    return StackArtifact(
        id=stack_id,
        environment=environment,
        template={"Resources": resources},
        dependencies=list(dependencies or []),
        asset_manifests=manifests,
        **kwargs,
    )


@pytest.fixture
def make_stack() -> Callable[..., StackArtifact]:
    return build_stack


@pytest.fixture
def deployments() -> FakeDeployments:
    return FakeDeployments()


@pytest.fixture
def prompts() -> list[str]:
    return []


@pytest.fixture
def answers() -> list[bool]:
    """Scripted prompt answers; an empty list answers yes."""
    return []


@pytest.fixture
def gate(prompts: list[str], answers: list[bool]) -> ConfirmationGate:
    def prompt(text: str) -> bool:
        prompts.append(text)
        return answers.pop(0) if answers else True

    return ConfirmationGate(test_mode=True, prompt=prompt)


@pytest.fixture
def make_toolkit(
    tmp_path: Path,
    deployments: FakeDeployments,
    gate: ConfirmationGate,
) -> Callable[..., CdkToolkit]:
    def factory(stacks: list[StackArtifact], **kwargs: Any) -> CdkToolkit:
        kwargs.setdefault("settings", RuntimeSettings())
        kwargs.setdefault("project_config", ProjectConfig(path=tmp_path / "cdk.json"))
        kwargs.setdefault("gate", gate)
        return CdkToolkit(assembly=CloudAssembly(stacks), deployments=deployments, **kwargs)

    return factory
