from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import click
from watchfiles import awatch

from .assembly import CloudAssembly, DefaultSelection, ExtendedStackSelection
from .backend import Deployments, parse_rollback_result
from .confirmation import ConfirmationGate
from .deploy_state_machine import DeployStateMachine
from .diff import print_security_diff
from .errors import RollbackError, StackDeploymentError, ToolkitError
from .models import (
    AssetBuildNode,
    AssetBuildTime,
    AssetOptions,
    AssetPublishNode,
    DeployStackRequest,
    DestroyStackRequest,
    HotswapMode,
    RequireApproval,
    RollbackStackRequest,
    StackActivityProgress,
    StackArtifact,
    StackNode,
    StackSelector,
)
from .settings import ProjectConfig, RuntimeSettings
from .utils import (
    atomic_write_text,
    build_parameter_map,
    format_time,
    parameters_for_stack,
    tags_for_stack,
    validate_sns_topic_arn,
)
from .watch import AwatchFn, WatchLoop
from .work_graph import Concurrency, WorkGraph, WorkGraphActions
from .work_graph_builder import WorkGraphBuilder

logger = logging.getLogger(__name__)

SecurityDiff = Callable[[dict[str, Any], StackArtifact, RequireApproval], bool]

APPROVAL_MOTIVATION = '"--require-approval" is enabled and stack includes security-sensitive updates'
DEFAULT_WATCH_EXCLUDES = ("**/.*", "**/.*/**", "**/node_modules/**")


@dataclass(frozen=True)
class DeployOptions:
    selector: StackSelector = field(default_factory=StackSelector)
    exclusively: bool = False
    concurrency: int | None = None
    asset_build_concurrency: int | None = None
    asset_publish_concurrency: int | None = None
    asset_parallelism: bool = True
    asset_build_time: AssetBuildTime = AssetBuildTime.ALL_BEFORE_DEPLOY
    rollback: bool = True
    force: bool = False
    require_approval: RequireApproval | None = None
    hotswap: HotswapMode = HotswapMode.FULL_DEPLOYMENT
    outputs_file: Path | None = None
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    notification_arns: list[str] | None = None
    tags: list[dict[str, str]] | None = None
    parameters: dict[str, str | None] = field(default_factory=dict)
    execute: bool = True
    change_set_name: str | None = None
    reuse_assets: list[str] = field(default_factory=list)
    use_previous_parameters: bool = True
    progress: StackActivityProgress | None = None
    ci: bool = False
    extra_user_agent: str | None = None
    ignore_no_stacks: bool = False
    watch: bool = False


@dataclass(frozen=True)
class WatchOptions(DeployOptions):
    """Deploy options plus include/exclude globs overriding the ``watch`` key of cdk.json."""

    include: list[str] | None = None
    exclude: list[str] | None = None

    @classmethod
    def from_deploy_options(cls, options: DeployOptions) -> "WatchOptions":
        if isinstance(options, WatchOptions):
            return options
        return cls(**{item.name: getattr(options, item.name) for item in fields(DeployOptions)})


@dataclass(frozen=True)
class RollbackOptions:
    selector: StackSelector = field(default_factory=StackSelector)
    role_arn: str | None = None
    toolkit_stack_name: str | None = None
    force: bool = False
    validate_bootstrap_stack_version: bool = True
    orphan_logical_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DestroyOptions:
    selector: StackSelector = field(default_factory=StackSelector)
    exclusively: bool = False
    force: bool = False
    role_arn: str | None = None
    from_deploy: bool = False
    ci: bool = False


@dataclass
class _DeployRun:
    """Values shared by every stack callback of one ``deploy`` call."""

    stacks: list[StackArtifact]
    options: DeployOptions
    concurrency: int
    progress: StackActivityProgress | None
    require_approval: RequireApproval
    parameter_map: dict[str, dict[str, str | None]]
    elapsed_synth: float
    stack_outputs: dict[str, dict[str, str]] = field(default_factory=dict)

    def index_of(self, stack: StackArtifact) -> int:
        return next(idx for idx, candidate in enumerate(self.stacks, start=1) if candidate.id == stack.id)


class CdkToolkit:
    """Deploys, rolls back, destroys and watches the stacks of a cloud assembly."""

    def __init__(
        self,
        *,
        assembly: CloudAssembly,
        deployments: Deployments,
        settings: RuntimeSettings | None = None,
        project_config: ProjectConfig | None = None,
        gate: ConfirmationGate | None = None,
        security_diff: SecurityDiff = print_security_diff,
        awatch_fn: AwatchFn = awatch,
    ) -> None:
        self.assembly = assembly
        self.deployments = deployments
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.project_config = (
            project_config
            if project_config is not None
            else ProjectConfig.load(Path(self.settings.project_config), default_output=self.settings.output_dir)
        )
        self.gate = gate if gate is not None else ConfirmationGate()
        self.security_diff = security_diff
        self._awatch = awatch_fn

    # -- selection -----------------------------------------------------------

    def select_stacks_for_deploy(
        self,
        selector: StackSelector,
        *,
        exclusively: bool = False,
        ignore_no_stacks: bool = False,
    ) -> list[StackArtifact]:
        return self.assembly.select_stacks(
            selector,
            extend=ExtendedStackSelection.NONE if exclusively else ExtendedStackSelection.UPSTREAM,
            default_behavior=DefaultSelection.ONLY_SINGLE,
            ignore_no_stacks=ignore_no_stacks,
        )

    def select_stacks_for_destroy(self, selector: StackSelector, *, exclusively: bool = False) -> list[StackArtifact]:
        return self.assembly.select_stacks(
            selector,
            extend=ExtendedStackSelection.NONE if exclusively else ExtendedStackSelection.DOWNSTREAM,
            default_behavior=DefaultSelection.ONLY_SINGLE,
        )

    # -- deploy --------------------------------------------------------------

    async def deploy(self, options: DeployOptions) -> None:
        if options.watch:
            await self.watch(WatchOptions.from_deploy_options(options))
            return

        start_synth = time.monotonic()
        stacks = self.select_stacks_for_deploy(
            options.selector,
            exclusively=options.exclusively,
            ignore_no_stacks=options.ignore_no_stacks,
        )
        elapsed_synth = time.monotonic() - start_synth
        logger.info("✨  Synthesis time: %ss", format_time(elapsed_synth))
        if not stacks:
            logger.error("This app contains no stacks")
            return

        if options.hotswap is not HotswapMode.FULL_DEPLOYMENT:
            logger.warning(
                "⚠️ The --hotswap and --hotswap-fallback flags deliberately introduce CloudFormation drift "
                "to speed up deployments"
            )
            logger.warning("⚠️ They should only be used for development - never use them for your production Stacks!")

        concurrency = options.concurrency or self.settings.concurrency
        progress = options.progress
        if concurrency > 1:
            if progress is not None and progress is not StackActivityProgress.EVENTS:
                logger.warning('⚠️ The --concurrency flag only supports --progress "events". Switching to "events".')
            progress = StackActivityProgress.EVENTS

        run = _DeployRun(
            stacks=stacks,
            options=options,
            concurrency=concurrency,
            progress=progress,
            require_approval=options.require_approval or self.settings.require_approval,
            parameter_map=build_parameter_map(options.parameters),
            elapsed_synth=elapsed_synth,
        )

        prebuild_assets = options.asset_build_time is AssetBuildTime.ALL_BEFORE_DEPLOY
        graph = WorkGraphBuilder(prebuild_assets=prebuild_assets).build(stacks)

        # Unless forced, skip assets that are already published
        if not options.force:
            await self.remove_published_assets(graph, options)

        publish_default = self.settings.asset_publish_concurrency if options.asset_parallelism else 1
        graph_concurrency = Concurrency(
            stack=concurrency,
            asset_build=options.asset_build_concurrency or self.settings.asset_build_concurrency,
            asset_publish=options.asset_publish_concurrency or publish_default,
        )
        await graph.do_parallel(
            graph_concurrency,
            WorkGraphActions(
                deploy_stack=lambda node: self._deploy_stack(node, run),
                build_asset=lambda node: self._build_asset(node, options),
                publish_asset=lambda node: self._publish_asset(node, options),
            ),
        )

    async def _build_asset(self, node: AssetBuildNode, options: DeployOptions) -> None:
        await self.deployments.build_single_asset(
            node.asset_manifest_artifact,
            node.asset,
            _asset_options(node.parent_stack, options.role_arn),
        )

    async def _publish_asset(self, node: AssetPublishNode, options: DeployOptions) -> None:
        await self.deployments.publish_single_asset(
            node.asset_manifest_artifact,
            node.asset,
            _asset_options(node.parent_stack, options.role_arn),
        )

    async def remove_published_assets(self, graph: WorkGraph, options: DeployOptions) -> None:
        """Remove publishing and building of assets that are already in place."""
        await graph.remove_unnecessary_assets(
            lambda node: self.deployments.is_single_asset_published(
                node.asset_manifest_artifact,
                node.asset,
                _asset_options(node.parent_stack, options.role_arn),
            )
        )

    async def _deploy_stack(self, node: StackNode, run: _DeployRun) -> None:
        stack = node.stack
        options = run.options
        name = click.style(stack.display_name, bold=True)
        if len(run.stacks) != 1:
            logger.info("%s", name)

        if stack.environment is None:
            raise ToolkitError(
                f"Stack {stack.display_name} does not define an environment, and AWS credentials could not be "
                "obtained from standard locations or no region was configured."
            )

        if stack.resource_count == 0:
            if not await self.deployments.stack_exists(stack):
                logger.warning("%s: stack has no resources, skipping deployment.", name)
            else:
                logger.warning("%s: stack has no resources, deleting existing stack.", name)
                await self.destroy(
                    DestroyOptions(
                        selector=StackSelector(patterns=[stack.hierarchical_id]),
                        exclusively=True,
                        force=True,
                        role_arn=options.role_arn,
                        from_deploy=True,
                        ci=options.ci,
                    )
                )
            return

        if run.require_approval is not RequireApproval.NEVER:
            current_template = await self.deployments.read_current_template(stack)
            if self.security_diff(current_template, stack, run.require_approval):
                await self.gate.ask_user_confirmation(
                    run.concurrency,
                    APPROVAL_MOTIVATION,
                    "Do you wish to deploy these changes",
                )

        notification_arns = _notification_arns(options, stack)
        logger.info("%s: deploying... [%s/%s]", name, run.index_of(stack), len(run.stacks))
        start_deploy = time.monotonic()
        elapsed_deploy = 0.0
        tags = options.tags or tags_for_stack(stack)

        def request_for(rollback: bool) -> DeployStackRequest:
            return DeployStackRequest(
                stack=stack,
                deploy_name=stack.stack_name,
                rollback=rollback,
                role_arn=options.role_arn,
                toolkit_stack_name=options.toolkit_stack_name or self.settings.toolkit_stack_name,
                reuse_assets=list(options.reuse_assets),
                notification_arns=notification_arns,
                tags=list(tags),
                execute=options.execute,
                change_set_name=options.change_set_name,
                force=options.force,
                parameters=parameters_for_stack(run.parameter_map, stack.stack_name),
                use_previous_parameters=options.use_previous_parameters,
                progress=run.progress,
                ci=options.ci,
                hotswap=options.hotswap,
                extra_user_agent=options.extra_user_agent,
                asset_parallelism=options.asset_parallelism,
            )

        async def rollback_first(target: StackArtifact) -> None:
            await self.rollback(
                RollbackOptions(
                    selector=StackSelector(patterns=[target.hierarchical_id]),
                    role_arn=options.role_arn,
                    toolkit_stack_name=options.toolkit_stack_name,
                    force=options.force,
                )
            )

        try:
            machine = DeployStateMachine(
                stack=stack,
                deployments=self.deployments,
                request_for=request_for,
                gate=self.gate,
                concurrency=run.concurrency,
                force=options.force,
                rollback_first=rollback_first,
            )
            result = await machine.run(rollback=options.rollback)

            logger.info(" ✅  %s%s", stack.display_name, " (no changes)" if result.no_op else "")
            elapsed_deploy = time.monotonic() - start_deploy
            logger.info("✨  Deployment time: %ss", format_time(elapsed_deploy))

            run.stack_outputs[stack.stack_name] = dict(result.outputs)
            if result.outputs:
                logger.info("Outputs:")
            for output_name in sorted(result.outputs):
                logger.info("%s.%s = %s", stack.id, output_name, result.outputs[output_name])
            logger.info("Stack ARN:")
            logger.info("%s", result.stack_arn)
        except Exception as exc:
            raise StackDeploymentError(stack.stack_name, exc) from exc
        finally:
            # Rewritten after every stack so outputs of stacks deployed before
            # a failure stay on disk.
            if options.outputs_file is not None:
                self._write_outputs(Path(options.outputs_file), run.stack_outputs)

        logger.info("✨  Total time: %ss", format_time(run.elapsed_synth + elapsed_deploy))

    @staticmethod
    def _write_outputs(path: Path, stack_outputs: dict[str, dict[str, str]]) -> None:
        atomic_write_text(path, json.dumps(stack_outputs, indent=2, ensure_ascii=False) + "\n")

    # -- rollback / destroy --------------------------------------------------

    async def rollback(self, options: RollbackOptions) -> None:
        start_synth = time.monotonic()
        stacks = self.select_stacks_for_deploy(options.selector, exclusively=True)
        logger.info("✨  Synthesis time: %ss", format_time(time.monotonic() - start_synth))
        if not stacks:
            logger.error("No stacks selected")
            return

        any_rollbackable = False
        for stack in stacks:
            name = click.style(stack.display_name, bold=True)
            logger.info("Rolling back %s", name)
            start_rollback = time.monotonic()
            try:
                result = parse_rollback_result(
                    await self.deployments.rollback_stack(
                        RollbackStackRequest(
                            stack=stack,
                            role_arn=options.role_arn,
                            toolkit_stack_name=options.toolkit_stack_name or self.settings.toolkit_stack_name,
                            force=options.force,
                            validate_bootstrap_stack_version=options.validate_bootstrap_stack_version,
                            orphan_logical_ids=list(options.orphan_logical_ids),
                        )
                    )
                )
            except Exception as exc:
                logger.error(" ❌  %s failed: %s", name, exc)
                raise RollbackError("Rollback failed (use --force to orphan failing resources)") from exc
            if not result.not_in_rollbackable_state:
                any_rollbackable = True
            logger.info("✨  Rollback time: %ss", format_time(time.monotonic() - start_rollback))

        if not any_rollbackable:
            raise RollbackError("No stacks were in a state that could be rolled back")

    async def destroy(self, options: DestroyOptions) -> None:
        # Stacks come ordered for deployment; delete in reverse.
        stacks = list(reversed(self.select_stacks_for_destroy(options.selector, exclusively=options.exclusively)))
        if not stacks:
            return

        if not options.force:
            names = ", ".join(stack.hierarchical_id for stack in stacks)
            if not await self.gate.confirm(f"Are you sure you want to delete: {names}"):
                return

        action = "deploy" if options.from_deploy else "destroy"
        for index, stack in enumerate(stacks, start=1):
            name = click.style(stack.display_name, fg="blue")
            logger.info("%s: destroying... [%s/%s]", name, index, len(stacks))
            try:
                await self.deployments.destroy_stack(
                    DestroyStackRequest(
                        stack=stack,
                        deploy_name=stack.stack_name,
                        role_arn=options.role_arn,
                        ci=options.ci,
                    )
                )
            except Exception as exc:
                logger.error(" ❌  %s: %s failed: %s", name, action, exc)
                raise
            logger.info(" ✅  %s: %sed", name, action)

    # -- watch ---------------------------------------------------------------

    async def watch(self, options: WatchOptions) -> None:
        root_dir = self.project_config.root_dir
        logger.debug("root directory used for 'watch' is: %s", root_dir)
        watch_settings = self.project_config.watch
        if watch_settings is None and options.include is None:
            raise ToolkitError(
                "Cannot use the 'watch' command without specifying at least one directory to monitor. "
                'Make sure to add a "watch" key to your cdk.json'
            )

        # A "watch" key without (or with an empty) "include" observes the whole project.
        includes = options.include if options.include is not None else watch_settings.include
        includes = list(includes) or ["**"]
        logger.debug("'include' patterns for 'watch': %s", includes)

        if options.exclude is not None:
            user_excludes = options.exclude
        else:
            user_excludes = watch_settings.exclude if watch_settings is not None else []
        excludes = [*user_excludes, f"{self.project_config.output}/**", *DEFAULT_WATCH_EXCLUDES]
        logger.debug("'exclude' patterns for 'watch': %s", excludes)

        loop = WatchLoop(
            lambda: self.invoke_deploy_from_watch(options),
            root_dir=root_dir,
            includes=includes,
            excludes=excludes,
            awatch_fn=self._awatch,
        )
        await loop.run()

    async def invoke_deploy_from_watch(self, options: DeployOptions) -> None:
        hotswap_state = "on" if options.hotswap is not HotswapMode.FALL_BACK else "off"
        deploy_options = replace(
            options,
            require_approval=RequireApproval.NEVER,
            # 'deploy --watch' must not re-enter watch from inside the loop
            watch=False,
            extra_user_agent=f"cdk-watch/hotswap-{hotswap_state}",
        )
        try:
            await self.deploy(deploy_options)
        except Exception as exc:  # noqa: BLE001
            logger.error("%s", exc)


def _asset_options(parent_stack: StackArtifact, role_arn: str | None) -> AssetOptions:
    return AssetOptions(stack=parent_stack, stack_name=parent_stack.stack_name, role_arn=role_arn)


def _notification_arns(options: DeployOptions, stack: StackArtifact) -> list[str] | None:
    """Combine option and stack ARNs.

    ``None`` leaves notifications unmanaged, ``[]`` clears them, anything else
    replaces them.
    """
    if options.notification_arns is None and stack.notification_arns is None:
        return None
    arns = [*(options.notification_arns or []), *(stack.notification_arns or [])]
    for arn in arns:
        if not validate_sns_topic_arn(arn):
            raise ToolkitError(f"Notification arn {arn} is not a valid arn for an SNS topic")
    return arns
