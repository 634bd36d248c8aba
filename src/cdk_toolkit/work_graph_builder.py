from __future__ import annotations

import logging
from collections.abc import Iterable

from .canonical import content_hash
from .errors import WorkGraphError
from .models import (
    AssetBuildNode,
    AssetEntry,
    AssetManifestArtifact,
    AssetPublishNode,
    NodeType,
    StackArtifact,
    StackNode,
)
from .work_graph import WorkGraph

logger = logging.getLogger(__name__)


class WorkGraphBuilder:
    """Translate an ordered stack list and its asset manifests into a WorkGraph."""

    # Higher priority starts first when several nodes are ready at once.
    PRIORITIES = {
        NodeType.ASSET_BUILD: 10,
        NodeType.ASSET_PUBLISH: 0,
        NodeType.STACK: 5,
    }

    def __init__(self, prebuild_assets: bool = True, id_prefix: str = "") -> None:
        self.prebuild_assets = prebuild_assets
        self.id_prefix = id_prefix
        self.graph = WorkGraph()

    def _stack_node_id(self, stack_id: str) -> str:
        return f"{self.id_prefix}{stack_id}"

    def _stack_node_ids(self, stack_ids: Iterable[str]) -> list[str]:
        return [self._stack_node_id(stack_id) for stack_id in stack_ids]

    def add_stack(self, stack: StackArtifact) -> None:
        self.graph.add_nodes(
            StackNode(
                id=self._stack_node_id(stack.id),
                dependencies=set(self._stack_node_ids(stack.dependencies)),
                stack=stack,
                priority=self.PRIORITIES[NodeType.STACK],
                note=stack.display_name,
            )
        )

    def add_asset(self, parent_stack: StackArtifact, manifest: AssetManifestArtifact, asset: AssetEntry) -> None:
        asset_id = asset.asset_id
        build_id = f"{self.id_prefix}build-{asset_id}-{content_hash([asset_id, asset.source])[:10]}"
        publish_id = f"{self.id_prefix}publish-{asset_id}-{content_hash([asset_id, asset.destination])[:10]}"

        # Identical sources build once no matter how many stacks use them.
        if self.graph.try_get_node(build_id) is None:
            dependencies = set(self._stack_node_ids(manifest.dependencies))
            if not self.prebuild_assets:
                # Just-in-time builds wait for the stacks the parent stack waits for.
                dependencies.update(self._stack_node_ids(parent_stack.dependencies))
            self.graph.add_nodes(
                AssetBuildNode(
                    id=build_id,
                    dependencies=dependencies,
                    parent_stack=parent_stack,
                    asset_manifest_artifact=manifest,
                    asset=asset,
                    priority=self.PRIORITIES[NodeType.ASSET_BUILD],
                    note=asset_id,
                )
            )

        if self.graph.try_get_node(publish_id) is None:
            self.graph.add_nodes(
                AssetPublishNode(
                    id=publish_id,
                    dependencies={build_id},
                    parent_stack=parent_stack,
                    asset_manifest_artifact=manifest,
                    asset=asset,
                    priority=self.PRIORITIES[NodeType.ASSET_PUBLISH],
                    note=asset.label,
                )
            )

        # Publishing also waits for the parent's stack dependencies so publish
        # progress does not interleave with their deployments. This can close a
        # cycle; remove_stack_publish_cycles breaks those after all nodes exist.
        for inherited in self._stack_node_ids(parent_stack.dependencies):
            self.graph.add_dependency(publish_id, inherited)

        self.graph.add_dependency(self._stack_node_id(parent_stack.id), publish_id)

    def build(self, stacks: Iterable[StackArtifact]) -> WorkGraph:
        for stack in stacks:
            self.add_stack(stack)
            for manifest in stack.asset_manifests:
                for entry in manifest.entries:
                    self.add_asset(stack, manifest, entry)

        self.graph.remove_unavailable_dependencies()
        self.remove_stack_publish_cycles()

        cycle = self.graph.find_cycle()
        if cycle is not None:
            raise WorkGraphError(f"Cycle in graph: {' -> '.join(cycle)}")
        logger.debug("Built work graph with %d nodes", len(self.graph.nodes))
        return self.graph

    def remove_stack_publish_cycles(self) -> None:
        for publish in self.graph.nodes_of_type(NodeType.ASSET_PUBLISH):
            for dep_id in list(publish.dependencies):
                dep = self.graph.try_get_node(dep_id)
                if dep is None or dep.type is not NodeType.STACK:
                    continue
                if publish.id in self.graph.deep_dependencies(dep):
                    logger.debug("Removing cyclic dependency %s -> %s", publish.id, dep_id)
                    self.graph.remove_dependency(publish.id, dep_id)
