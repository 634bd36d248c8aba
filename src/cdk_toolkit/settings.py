from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from .models import RequireApproval


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    concurrency: int = 1
    asset_build_concurrency: int = 1
    asset_publish_concurrency: int = 8
    require_approval: RequireApproval = RequireApproval.BROADENING
    output_dir: str = "cdk.out"
    toolkit_stack_name: str = "CDKToolkit"
    project_config: str = "cdk.json"

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            concurrency=_get_env_int("CDK_DEPLOY_CONCURRENCY", default=1, minimum=1),
            asset_build_concurrency=_get_env_int("CDK_ASSET_BUILD_CONCURRENCY", default=1, minimum=1),
            asset_publish_concurrency=_get_env_int("CDK_ASSET_PUBLISH_CONCURRENCY", default=8, minimum=1),
            require_approval=_get_env_require_approval("CDK_REQUIRE_APPROVAL", default=RequireApproval.BROADENING),
            output_dir=os.getenv("CDK_OUTPUT_DIR", "cdk.out"),
            toolkit_stack_name=os.getenv("CDK_TOOLKIT_STACK_NAME", "CDKToolkit"),
            project_config=os.getenv("CDK_PROJECT_CONFIG", "cdk.json"),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        output_dir = self.output_dir.strip()
        if not output_dir:
            raise ValueError("CDK_OUTPUT_DIR must be non-empty")
        toolkit_stack_name = self.toolkit_stack_name.strip()
        if not toolkit_stack_name:
            raise ValueError("CDK_TOOLKIT_STACK_NAME must be non-empty")
        project_config = self.project_config.strip()
        if not project_config:
            raise ValueError("CDK_PROJECT_CONFIG must be non-empty")
        return RuntimeSettings(
            concurrency=self.concurrency,
            asset_build_concurrency=self.asset_build_concurrency,
            asset_publish_concurrency=self.asset_publish_concurrency,
            require_approval=self.require_approval,
            output_dir=output_dir,
            toolkit_stack_name=toolkit_stack_name,
            project_config=project_config,
        )


@dataclass(frozen=True)
class WatchSettings:
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ProjectConfig:
    """The subset of ``cdk.json`` the toolkit reads."""

    path: Path
    output: str = "cdk.out"
    watch: WatchSettings | None = None

    @property
    def root_dir(self) -> Path:
        return self.path.resolve().parent

    @classmethod
    def load(cls, path: Path, *, default_output: str = "cdk.out") -> "ProjectConfig":
        if not path.is_file():
            return cls(path=path, output=default_output)
        try:
            raw = json.loads(path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError as exc:
            raise ValueError(f"Project config {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise ValueError(f"Project config {path} must contain a JSON object")

        watch_raw = raw.get("watch")
        watch: WatchSettings | None = None
        if watch_raw is not None:
            if not isinstance(watch_raw, dict):
                raise ValueError(f"'watch' in {path} must be an object")
            watch = WatchSettings(
                include=_as_pattern_list(watch_raw.get("include"), key="watch.include"),
                exclude=_as_pattern_list(watch_raw.get("exclude"), key="watch.exclude"),
            )
        output = str(raw.get("output") or default_output)
        return cls(path=path, output=output, watch=watch)


def _as_pattern_list(value: object, *, key: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return list(value)
    raise ValueError(f"{key} must be a string or a list of strings")


def _get_env_require_approval(name: str, default: RequireApproval) -> RequireApproval:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return RequireApproval(raw.strip().lower())
    except ValueError as exc:
        allowed = ", ".join(level.value for level in RequireApproval)
        raise ValueError(f"{name} must be one of: {allowed}, got: {raw!r}") from exc


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000) -> int:
    """Read a bounded integer knob such as ``CDK_DEPLOY_CONCURRENCY``; unset means *default*."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got: {raw!r}") from exc
    if not minimum <= value <= maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}, got: {value}")
    return value
