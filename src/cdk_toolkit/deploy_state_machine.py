from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypedDict

from langgraph.graph import END, START, StateGraph
from langgraph.types import Command

from .backend import Deployments
from .confirmation import ConfirmationGate
from .errors import InternalConsistencyError
from .models import (
    DeployStackRequest,
    DidDeployStack,
    FailPausedNeedRollbackFirst,
    ReplacementRequiresNoRollback,
    StackArtifact,
    parse_deploy_result,
)

logger = logging.getLogger(__name__)

PAUSED_REPLACEMENT_MOTIVATION = (
    "Stack is in a paused fail state and change includes a replacement which cannot be deployed with "
    '"--no-rollback"'
)
PAUSED_ROLLBACK_MOTIVATION = (
    'Stack is in a paused fail state and command line arguments do not include "--no-rollback"'
)
REPLACEMENT_MOTIVATION = 'Change includes a replacement which cannot be deployed with "--no-rollback"'


class DeployAttemptState(TypedDict, total=False):
    rollback: bool
    iteration: int
    result: DidDeployStack | FailPausedNeedRollbackFirst | ReplacementRequiresNoRollback
    deploy_result: DidDeployStack


class DeployStateMachine:
    """Per-stack deploy loop: call -> route -> rollback-first / flip-rollback -> call -> done.

    Only the two "stuck" result variants retry, each time with rollback
    enabled. Backend exceptions and declined confirmations propagate.
    """

    MAX_ITERATIONS = 2

    def __init__(
        self,
        *,
        stack: StackArtifact,
        deployments: Deployments,
        request_for: Callable[[bool], DeployStackRequest],
        gate: ConfirmationGate,
        concurrency: int,
        force: bool,
        rollback_first: Callable[[StackArtifact], Awaitable[None]],
    ) -> None:
        self.stack = stack
        self.deployments = deployments
        self.request_for = request_for
        self.gate = gate
        self.concurrency = concurrency
        self.force = force
        self.rollback_first = rollback_first
        self.graph = self._build_graph().compile()

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(DeployAttemptState)
        graph.add_node("call_backend", self._call_backend)
        graph.add_node("route", self._route)
        graph.add_node("rollback_first", self._rollback_first)
        graph.add_node("retry_with_rollback", self._retry_with_rollback)
        graph.add_node("done", self._done)

        graph.add_edge(START, "call_backend")
        graph.add_edge("call_backend", "route")
        graph.add_edge("rollback_first", "call_backend")
        graph.add_edge("retry_with_rollback", "call_backend")
        graph.add_edge("done", END)
        return graph

    async def _call_backend(self, state: DeployAttemptState) -> dict[str, Any]:
        iteration = int(state.get("iteration", 0)) + 1
        if iteration > self.MAX_ITERATIONS:
            raise InternalConsistencyError(
                f"This loop should have stabilized in {self.MAX_ITERATIONS} iterations, but didn't"
            )
        rollback = bool(state.get("rollback", True))
        raw = await self.deployments.deploy_stack(self.request_for(rollback))
        result = parse_deploy_result(raw)
        logger.debug("%s: attempt %d (rollback=%s) returned %s", self.stack.display_name, iteration, rollback, result.type)
        return {"iteration": iteration, "result": result}

    async def _route(self, state: DeployAttemptState) -> Command[str]:
        result = state["result"]
        if isinstance(result, DidDeployStack):
            return Command(goto="done")
        if isinstance(result, FailPausedNeedRollbackFirst):
            return Command(goto="rollback_first")
        if isinstance(result, ReplacementRequiresNoRollback):
            return Command(goto="retry_with_rollback")
        raise InternalConsistencyError(f"Unexpected result type from deployStack: {result!r}")

    async def _rollback_first(self, state: DeployAttemptState) -> dict[str, Any]:
        result = state["result"]
        if not isinstance(result, FailPausedNeedRollbackFirst):
            raise InternalConsistencyError(f"rollback_first reached with result {result!r}")
        motivation = PAUSED_REPLACEMENT_MOTIVATION if result.reason == "replacement" else PAUSED_ROLLBACK_MOTIVATION
        if self.force:
            logger.warning("%s. Rolling back first (--force).", motivation)
        else:
            await self.gate.ask_user_confirmation(
                self.concurrency,
                motivation,
                f"{motivation}. Roll back first and then proceed with deployment",
            )
        await self.rollback_first(self.stack)
        return {"rollback": True}

    async def _retry_with_rollback(self, state: DeployAttemptState) -> dict[str, Any]:
        if self.force:
            logger.warning("%s. Proceeding with regular deployment (--force).", REPLACEMENT_MOTIVATION)
        else:
            await self.gate.ask_user_confirmation(
                self.concurrency,
                REPLACEMENT_MOTIVATION,
                f"{REPLACEMENT_MOTIVATION}. Perform a regular deployment",
            )
        return {"rollback": True}

    async def _done(self, state: DeployAttemptState) -> dict[str, Any]:
        return {"deploy_result": state["result"]}

    async def run(self, *, rollback: bool) -> DidDeployStack:
        final = await self.graph.ainvoke({"rollback": rollback, "iteration": 0})
        return final["deploy_result"]
