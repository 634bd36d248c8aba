"""Entry point for `python -m cdk_toolkit` and the `cdk-toolkit` CLI script."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

from cdk_toolkit.assembly import CloudAssembly
from cdk_toolkit.backend import load_deployments
from cdk_toolkit.confirmation import ConfirmationGate
from cdk_toolkit.errors import StackDeploymentError
from cdk_toolkit.models import AssetBuildTime, HotswapMode, RequireApproval, StackActivityProgress, StackSelector
from cdk_toolkit.settings import ProjectConfig, RuntimeSettings
from cdk_toolkit.toolkit import CdkToolkit, DeployOptions, DestroyOptions, RollbackOptions, WatchOptions


def _add_selection_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("stacks", nargs="*", help="Stack ids or display names (wildcards are supported)")
    parser.add_argument("--all", action="store_true", help="Select every stack in the app")


def _add_deploy_args(parser: argparse.ArgumentParser) -> None:
    _add_selection_args(parser)
    parser.add_argument("-e", "--exclusively", action="store_true", help="Only deploy the requested stacks")
    parser.add_argument("--concurrency", type=int, default=None, help="Maximum number of simultaneous stack deployments")
    parser.add_argument("--asset-build-concurrency", type=int, default=None, help="Maximum simultaneous asset builds")
    parser.add_argument("--asset-publish-concurrency", type=int, default=None, help="Maximum simultaneous asset publishes")
    parser.add_argument(
        "--asset-parallelism",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Publish assets in parallel",
    )
    parser.add_argument(
        "--asset-prebuild",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Build all assets before deploying the first stack",
    )
    parser.add_argument("--rollback", action=argparse.BooleanOptionalAction, default=True, help="Roll back on failure")
    parser.add_argument("-f", "--force", action="store_true", help="Always deploy, even if templates are identical")
    parser.add_argument(
        "--require-approval",
        type=lambda value: RequireApproval(value.lower()),
        default=None,
        choices=list(RequireApproval),
        help="What security-sensitive changes need manual approval",
    )
    hotswap = parser.add_mutually_exclusive_group()
    hotswap.add_argument("--hotswap", action="store_true", help="Only hotswap, never fall back to CloudFormation")
    hotswap.add_argument("--hotswap-fallback", action="store_true", help="Hotswap, falling back to CloudFormation")
    parser.add_argument("-O", "--outputs-file", type=Path, default=None, help="Write stack outputs to this JSON file")
    parser.add_argument("-r", "--role-arn", default=None, help="IAM role passed to CloudFormation")
    parser.add_argument("--toolkit-stack-name", default=None, help="Name of the bootstrap stack")
    parser.add_argument("--notification-arns", nargs="*", default=None, help="SNS topics notified of stack events")
    parser.add_argument("-t", "--tags", action="append", default=[], help="Stack tag as KEY=VALUE (repeatable)")
    parser.add_argument(
        "--parameters",
        action="append",
        default=[],
        help="Template parameter as [STACK:]KEY=VALUE (repeatable)",
    )
    parser.add_argument("--execute", action=argparse.BooleanOptionalAction, default=True, help="Execute the change set")
    parser.add_argument("--change-set-name", default=None, help="Name of the change set to create")
    parser.add_argument(
        "--previous-parameters",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Reuse previous values for parameters not passed on the command line",
    )
    parser.add_argument(
        "--progress",
        type=lambda value: StackActivityProgress(value.lower()),
        default=None,
        choices=list(StackActivityProgress),
        help="How stack activity is reported",
    )
    parser.add_argument("--ci", action="store_true", default=os.getenv("CI") is not None, help="CI mode")
    parser.add_argument("--ignore-no-stacks", action="store_true", help="Succeed when no stacks are selected")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deploy the stacks of a synthesized cloud assembly")
    parser.add_argument(
        "--app",
        type=Path,
        default=Path(os.getenv("CDK_APP_MANIFEST", "cdk.out/manifest.json")),
        help="Path to the cloud assembly manifest JSON",
    )
    parser.add_argument(
        "--deployments",
        default=os.getenv("CDK_DEPLOYMENTS"),
        help="Deployment backend as 'package.module:attribute'",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    deploy = commands.add_parser("deploy", help="Deploy stacks")
    _add_deploy_args(deploy)
    deploy.add_argument("--watch", action="store_true", help="Keep watching the project and redeploy on change")

    watch = commands.add_parser("watch", help="Redeploy stacks whenever project files change")
    _add_deploy_args(watch)
    watch.add_argument("--include", action="append", default=None, help="Glob of files to watch (repeatable)")
    watch.add_argument("--exclude", action="append", default=None, help="Glob of files to ignore (repeatable)")

    rollback = commands.add_parser("rollback", help="Roll back stacks stuck in a failed state")
    _add_selection_args(rollback)
    rollback.add_argument("-f", "--force", action="store_true", help="Orphan resources that fail to roll back")
    rollback.add_argument("-r", "--role-arn", default=None, help="IAM role passed to CloudFormation")
    rollback.add_argument("--toolkit-stack-name", default=None, help="Name of the bootstrap stack")
    rollback.add_argument("--orphan", action="append", default=[], help="Logical id to orphan (repeatable)")
    rollback.add_argument(
        "--validate-bootstrap-version",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Check the bootstrap stack version first",
    )

    destroy = commands.add_parser("destroy", help="Destroy stacks")
    _add_selection_args(destroy)
    destroy.add_argument("-e", "--exclusively", action="store_true", help="Only destroy the requested stacks")
    destroy.add_argument("-f", "--force", action="store_true", help="Do not ask for confirmation")
    destroy.add_argument("-r", "--role-arn", default=None, help="IAM role passed to CloudFormation")
    destroy.add_argument("--ci", action="store_true", default=os.getenv("CI") is not None, help="CI mode")

    return parser.parse_args(argv)


def _selector(args: argparse.Namespace) -> StackSelector:
    return StackSelector(patterns=list(args.stacks), all_stacks=args.all)


def _parse_key_values(values: list[str], *, flag: str) -> dict[str, str]:
    parsed: dict[str, str] = {}
    for item in values:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"{flag} must look like KEY=VALUE, got: {item!r}")
        parsed[key] = value
    return parsed


def deploy_options_from_args(args: argparse.Namespace) -> DeployOptions:
    if args.hotswap:
        hotswap = HotswapMode.HOTSWAP_ONLY
    elif args.hotswap_fallback:
        hotswap = HotswapMode.FALL_BACK
    else:
        hotswap = HotswapMode.FULL_DEPLOYMENT
    tags = [{"Key": key, "Value": value} for key, value in _parse_key_values(args.tags, flag="--tags").items()]
    options = dict(
        selector=_selector(args),
        exclusively=args.exclusively,
        concurrency=args.concurrency,
        asset_build_concurrency=args.asset_build_concurrency,
        asset_publish_concurrency=args.asset_publish_concurrency,
        asset_parallelism=args.asset_parallelism,
        asset_build_time=AssetBuildTime.ALL_BEFORE_DEPLOY if args.asset_prebuild else AssetBuildTime.JUST_IN_TIME,
        rollback=args.rollback,
        force=args.force,
        require_approval=args.require_approval,
        hotswap=hotswap,
        outputs_file=args.outputs_file,
        role_arn=args.role_arn,
        toolkit_stack_name=args.toolkit_stack_name,
        notification_arns=args.notification_arns,
        tags=tags or None,
        parameters=dict(_parse_key_values(args.parameters, flag="--parameters")),
        execute=args.execute,
        change_set_name=args.change_set_name,
        use_previous_parameters=args.previous_parameters,
        progress=args.progress,
        ci=args.ci,
        ignore_no_stacks=args.ignore_no_stacks,
    )
    if args.command == "watch":
        return WatchOptions(**options, include=args.include, exclude=args.exclude, watch=True)
    return DeployOptions(**options, watch=args.watch)


async def run_command(args: argparse.Namespace, toolkit: CdkToolkit) -> None:
    if args.command in ("deploy", "watch"):
        options = deploy_options_from_args(args)
        if isinstance(options, WatchOptions):
            await toolkit.watch(options)
        else:
            await toolkit.deploy(options)
    elif args.command == "rollback":
        await toolkit.rollback(
            RollbackOptions(
                selector=_selector(args),
                role_arn=args.role_arn,
                toolkit_stack_name=args.toolkit_stack_name,
                force=args.force,
                validate_bootstrap_stack_version=args.validate_bootstrap_version,
                orphan_logical_ids=list(args.orphan),
            )
        )
    elif args.command == "destroy":
        await toolkit.destroy(
            DestroyOptions(
                selector=_selector(args),
                exclusively=args.exclusively,
                force=args.force,
                role_arn=args.role_arn,
                ci=args.ci,
            )
        )
    else:
        raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = RuntimeSettings.from_env()
        project_config = ProjectConfig.load(Path(settings.project_config), default_output=settings.output_dir)
        assembly = CloudAssembly.from_file(args.app)
        if not args.deployments:
            raise ValueError("A deployment backend is required: pass --deployments or set CDK_DEPLOYMENTS")
        deployments = load_deployments(args.deployments)
    except (OSError, ValueError, ImportError) as exc:
        logging.error("Unable to load deployment inputs: %s", exc)
        return 1

    toolkit = CdkToolkit(
        assembly=assembly,
        deployments=deployments,
        settings=settings,
        project_config=project_config,
        gate=ConfirmationGate(),
    )
    try:
        asyncio.run(run_command(args, toolkit))
    except StackDeploymentError as exc:
        if exc.is_internal:
            logging.exception("%s", exc)
        else:
            logging.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # noqa: BLE001
        logging.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
