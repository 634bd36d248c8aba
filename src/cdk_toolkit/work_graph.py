from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from .errors import WorkGraphError
from .models import (
    AssetBuildNode,
    AssetPublishNode,
    DeploymentState,
    NodeType,
    StackNode,
    WorkNode,
)

logger = logging.getLogger(__name__)

# Upper bound on concurrent "is this asset already published?" checks.
ASSET_CHECK_PARALLELISM = 8


@dataclass(frozen=True)
class Concurrency:
    """Maximum number of in-flight callbacks per node category."""

    stack: int = 1
    asset_build: int = 1
    asset_publish: int = 8

    def __post_init__(self) -> None:
        for name in ("stack", "asset_build", "asset_publish"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"concurrency.{name} must be >= 1, got: {value}")

    @classmethod
    def uniform(cls, limit: int) -> "Concurrency":
        return cls(stack=limit, asset_build=limit, asset_publish=limit)

    def limit_for(self, node_type: NodeType) -> int:
        if node_type is NodeType.STACK:
            return self.stack
        if node_type is NodeType.ASSET_BUILD:
            return self.asset_build
        return self.asset_publish


@dataclass(frozen=True)
class WorkGraphActions:
    deploy_stack: Callable[[StackNode], Awaitable[None]]
    build_asset: Callable[[AssetBuildNode], Awaitable[None]]
    publish_asset: Callable[[AssetPublishNode], Awaitable[None]]

    async def run(self, node: WorkNode) -> None:
        if isinstance(node, StackNode):
            await self.deploy_stack(node)
        elif isinstance(node, AssetBuildNode):
            await self.build_asset(node)
        else:
            await self.publish_asset(node)


class WorkGraph:
    """Dependency graph of stack deployments and asset build/publish steps."""

    def __init__(self, nodes: Iterable[WorkNode] = ()) -> None:
        self.nodes: dict[str, WorkNode] = {}
        self._ready_pool: list[WorkNode] = []
        self.add_nodes(*nodes)

    # -- construction -------------------------------------------------------

    def add_nodes(self, *nodes: WorkNode) -> None:
        for node in nodes:
            if node.id in self.nodes:
                raise WorkGraphError(f"Duplicate use of node id: {node.id}")
            self.nodes[node.id] = node

    def remove_node(self, node: WorkNode | str) -> None:
        node_id = node if isinstance(node, str) else node.id
        self.node(node_id)
        del self.nodes[node_id]
        for other in self.nodes.values():
            other.dependencies.discard(node_id)

    def add_dependency(self, from_id: str, to_id: str) -> None:
        """Make ``from_id`` wait for ``to_id``. The target may be added later."""
        self.node(from_id).dependencies.add(to_id)

    def remove_dependency(self, from_id: str, to_id: str) -> None:
        self.node(from_id).dependencies.discard(to_id)

    def try_get_node(self, node_id: str) -> WorkNode | None:
        return self.nodes.get(node_id)

    def node(self, node_id: str) -> WorkNode:
        found = self.nodes.get(node_id)
        if found is None:
            raise WorkGraphError(f"No node with id {node_id} among {sorted(self.nodes)}")
        return found

    def nodes_of_type(self, node_type: NodeType) -> list[WorkNode]:
        return [node for node in self.nodes.values() if node.type is node_type]

    def dependees(self, node: WorkNode) -> list[WorkNode]:
        return [other for other in self.nodes.values() if node.id in other.dependencies]

    def deep_dependencies(self, node: WorkNode) -> set[str]:
        """Return the ids of every node ``node`` transitively depends on."""
        seen: set[str] = set()
        frontier = list(node.dependencies)
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            found = self.nodes.get(current)
            if found is not None:
                frontier.extend(found.dependencies)
        return seen

    def remove_unavailable_dependencies(self) -> None:
        for node in self.nodes.values():
            missing = {dep for dep in node.dependencies if dep not in self.nodes}
            if missing:
                logger.debug("Dropping dependencies of %s outside the selection: %s", node.id, sorted(missing))
                node.dependencies.difference_update(missing)

    def find_cycle(self) -> list[str] | None:
        """Return one dependency cycle as ``[a, b, ..., a]``, or ``None``."""
        visited: set[str] = set()
        path: list[str] = []
        on_path: set[str] = set()

        def visit(node_id: str) -> list[str] | None:
            if node_id in on_path:
                return path[path.index(node_id):] + [node_id]
            if node_id in visited or node_id not in self.nodes:
                return None
            on_path.add(node_id)
            path.append(node_id)
            for dep in sorted(self.nodes[node_id].dependencies):
                cycle = visit(dep)
                if cycle is not None:
                    return cycle
            on_path.remove(node_id)
            path.pop()
            visited.add(node_id)
            return None

        for node_id in sorted(self.nodes):
            cycle = visit(node_id)
            if cycle is not None:
                return cycle
        return None

    # -- pruning -------------------------------------------------------------

    async def remove_unnecessary_assets(
        self,
        is_unnecessary: Callable[[AssetPublishNode], Awaitable[bool]],
    ) -> None:
        """Drop publish steps for assets already in place, then builds nobody needs."""
        logger.debug("Checking for previously published assets")
        publishes = [node for node in self.nodes_of_type(NodeType.ASSET_PUBLISH) if isinstance(node, AssetPublishNode)]
        semaphore = asyncio.Semaphore(ASSET_CHECK_PARALLELISM)

        async def classify(node: AssetPublishNode) -> tuple[AssetPublishNode, bool]:
            async with semaphore:
                return node, await is_unnecessary(node)

        classified = await asyncio.gather(*(classify(node) for node in publishes))
        already_published = [node for node, unnecessary in classified if unnecessary]
        for node in already_published:
            self.remove_node(node)
        logger.debug(
            "%d total assets, %d still need to be published",
            len(publishes),
            len(publishes) - len(already_published),
        )

        unused_builds = [build for build in self.nodes_of_type(NodeType.ASSET_BUILD) if not self.dependees(build)]
        for build in unused_builds:
            self.remove_node(build)
        logger.debug("%d assets need to be built", len(self.nodes_of_type(NodeType.ASSET_BUILD)))

    # -- execution -----------------------------------------------------------

    async def do_parallel(self, concurrency: Concurrency, actions: WorkGraphActions) -> None:
        """Run every node's callback in dependency order within the category limits.

        A failing callback marks its node failed and skips everything that
        transitively depends on it; unrelated branches keep running. Once no
        more work can start, the first failure is re-raised.
        """
        active = {node_type: 0 for node_type in NodeType}
        running: dict[asyncio.Task[None], WorkNode] = {}
        failures: list[BaseException] = []
        self._ready_pool = []

        while True:
            self._update_ready_pool(active_count=len(running))
            for node in list(self._ready_pool):
                if active[node.type] >= concurrency.limit_for(node.type):
                    continue
                self._ready_pool.remove(node)
                node.state = DeploymentState.DEPLOYING
                active[node.type] += 1
                running[asyncio.create_task(actions.run(node), name=node.id)] = node

            if not running:
                break

            done, _ = await asyncio.wait(set(running), return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                node = running.pop(task)
                active[node.type] -= 1
                error = task.exception()
                if error is None:
                    node.state = DeploymentState.COMPLETED
                    continue
                node.state = DeploymentState.FAILED
                failures.append(error)
                self._skip_dependents(node)

        if failures:
            raise failures[0]

    def _update_ready_pool(self, *, active_count: int) -> None:
        newly_ready = [
            node
            for node in self.nodes.values()
            if node.state is DeploymentState.PENDING
            and all(self.node(dep).state is DeploymentState.COMPLETED for dep in node.dependencies)
        ]
        for node in newly_ready:
            node.state = DeploymentState.QUEUED
            self._ready_pool.append(node)

        self._ready_pool = [node for node in self._ready_pool if node.state is DeploymentState.QUEUED]
        self._ready_pool.sort(key=lambda node: node.priority, reverse=True)

        pending = any(node.state is DeploymentState.PENDING for node in self.nodes.values())
        if not self._ready_pool and active_count == 0 and pending:
            cycle = self.find_cycle() or ["No cycle found!"]
            logger.debug("Cycle %s in graph %s", " -> ".join(cycle), self)
            raise WorkGraphError(
                "Unable to make progress anymore, dependency cycle between remaining artifacts: "
                + " -> ".join(cycle)
            )

    def _skip_dependents(self, failed: WorkNode) -> None:
        frontier = [failed.id]
        while frontier:
            current = frontier.pop()
            for node in self.nodes.values():
                if current in node.dependencies and node.state in (DeploymentState.PENDING, DeploymentState.QUEUED):
                    node.state = DeploymentState.SKIPPED
                    logger.debug("Skipping %s because %s did not complete", node.id, failed.id)
                    frontier.append(node.id)

    def __str__(self) -> str:
        lines = ["digraph D {"]
        for node_id in sorted(self.nodes):
            node = self.nodes[node_id]
            shape = "box" if node.type is NodeType.STACK else "ellipse"
            lines.append(f'  "{node_id}" [shape={shape}, label="{node.note or node_id} ({node.state.value})"];')
            for dep in sorted(node.dependencies):
                lines.append(f'  "{node_id}" -> "{dep}";')
        lines.append("}")
        return "\n".join(lines)
