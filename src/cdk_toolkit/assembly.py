from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import StackSelectionError, ToolkitError
from .models import AssetEntry, AssetManifestArtifact, Environment, StackArtifact, StackSelector

logger = logging.getLogger(__name__)


class ExtendedStackSelection(str, Enum):
    NONE = "none"
    UPSTREAM = "upstream"
    DOWNSTREAM = "downstream"


class DefaultSelection(str, Enum):
    NONE = "none"
    ONLY_SINGLE = "only-single"
    ALL_STACKS = "all-stacks"


# ---------------------------------------------------------------------------
# Manifest file schema
# ---------------------------------------------------------------------------


class _ManifestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class _EnvironmentDoc(_ManifestModel):
    account: str
    region: str
    name: str = ""


class _AssetEntryDoc(_ManifestModel):
    asset_id: str = Field(alias="assetId")
    destination_id: str = Field(default="current_account-current_region", alias="destinationId")
    display_name: str = Field(default="", alias="displayName")
    source: dict[str, Any] = Field(default_factory=dict)
    destination: dict[str, Any] = Field(default_factory=dict)


class _AssetManifestDoc(_ManifestModel):
    id: str
    entries: list[_AssetEntryDoc] = Field(default_factory=list)
    dependencies: list[str] = Field(default_factory=list)


class _StackDoc(_ManifestModel):
    id: str
    stack_name: str = Field(default="", alias="stackName")
    display_name: str = Field(default="", alias="displayName")
    hierarchical_id: str = Field(default="", alias="hierarchicalId")
    environment: _EnvironmentDoc | None = None
    template: dict[str, Any] | None = None
    template_file: str | None = Field(default=None, alias="templateFile")
    dependencies: list[str] = Field(default_factory=list)
    asset_manifests: list[_AssetManifestDoc] = Field(default_factory=list, alias="assetManifests")
    tags: dict[str, str] = Field(default_factory=dict)
    notification_arns: list[str] | None = Field(default=None, alias="notificationArns")


class _AssemblyDoc(_ManifestModel):
    stacks: list[_StackDoc] = Field(default_factory=list)


def _stack_from_doc(doc: _StackDoc, base_dir: Path) -> StackArtifact:
    template = doc.template
    if template is None and doc.template_file:
        template_path = base_dir / doc.template_file
        if not template_path.is_file():
            raise FileNotFoundError(f"Template for stack {doc.id} does not exist: {template_path}")
        template = json.loads(template_path.read_text(encoding="utf-8"))
    return StackArtifact(
        id=doc.id,
        stack_name=doc.stack_name,
        display_name=doc.display_name,
        hierarchical_id=doc.hierarchical_id,
        environment=(
            Environment(account=doc.environment.account, region=doc.environment.region, name=doc.environment.name)
            if doc.environment is not None
            else None
        ),
        template=template or {},
        dependencies=list(doc.dependencies),
        asset_manifests=[
            AssetManifestArtifact(
                id=manifest.id,
                dependencies=list(manifest.dependencies),
                entries=[
                    AssetEntry(
                        asset_id=entry.asset_id,
                        destination_id=entry.destination_id,
                        display_name=entry.display_name,
                        source=dict(entry.source),
                        destination=dict(entry.destination),
                    )
                    for entry in manifest.entries
                ],
            )
            for manifest in doc.asset_manifests
        ],
        tags=dict(doc.tags),
        notification_arns=list(doc.notification_arns) if doc.notification_arns is not None else None,
    )


class CloudAssembly:
    """Synthesized stacks in deployment order, with pattern-based selection."""

    def __init__(self, stacks: Iterable[StackArtifact]) -> None:
        self.stacks = _deployment_order(list(stacks))
        self._by_id = {stack.id: stack for stack in self.stacks}

    @classmethod
    def from_file(cls, path: Path) -> "CloudAssembly":
        if not path.is_file():
            raise FileNotFoundError(f"Cloud assembly manifest does not exist: {path}")
        try:
            doc = _AssemblyDoc.model_validate_json(path.read_text(encoding="utf-8"))
        except ValidationError as exc:
            raise ValueError(f"Invalid cloud assembly manifest {path}: {exc}") from exc
        return cls(_stack_from_doc(stack, path.parent) for stack in doc.stacks)

    def stack_by_id(self, stack_id: str) -> StackArtifact:
        try:
            return self._by_id[stack_id]
        except KeyError as exc:
            raise StackSelectionError(f"No stack with id {stack_id}") from exc

    def select_stacks(
        self,
        selector: StackSelector,
        *,
        extend: ExtendedStackSelection = ExtendedStackSelection.NONE,
        default_behavior: DefaultSelection = DefaultSelection.ONLY_SINGLE,
        ignore_no_stacks: bool = False,
    ) -> list[StackArtifact]:
        if not self.stacks:
            return []

        if selector.all_stacks:
            selected = list(self.stacks)
        elif not selector.patterns:
            selected = self._default_selection(default_behavior)
        else:
            selected = [
                stack
                for stack in self.stacks
                if any(
                    fnmatch(stack.hierarchical_id, pattern) or fnmatch(stack.display_name, pattern)
                    for pattern in selector.patterns
                )
            ]
            if not selected:
                if ignore_no_stacks:
                    return []
                raise StackSelectionError(f"No stacks match the name(s) {', '.join(selector.patterns)}")

        selected_ids = {stack.id for stack in selected}
        if extend is ExtendedStackSelection.UPSTREAM:
            selected_ids |= self._upstream(selected_ids)
        elif extend is ExtendedStackSelection.DOWNSTREAM:
            selected_ids |= self._downstream(selected_ids)
        return [stack for stack in self.stacks if stack.id in selected_ids]

    def _default_selection(self, default_behavior: DefaultSelection) -> list[StackArtifact]:
        if default_behavior is DefaultSelection.ALL_STACKS:
            return list(self.stacks)
        if default_behavior is DefaultSelection.NONE:
            return []
        if len(self.stacks) == 1:
            return list(self.stacks)
        names = ", ".join(stack.hierarchical_id for stack in self.stacks)
        raise StackSelectionError(
            "Since this app includes more than a single stack, specify which stacks to use "
            f"(wildcards are supported) or specify `--all`\nStacks: {names}"
        )

    def _upstream(self, ids: set[str]) -> set[str]:
        found: set[str] = set()
        frontier = list(ids)
        while frontier:
            stack = self._by_id.get(frontier.pop())
            if stack is None:
                continue
            for dep in stack.dependencies:
                if dep in self._by_id and dep not in found and dep not in ids:
                    found.add(dep)
                    frontier.append(dep)
        return found

    def _downstream(self, ids: set[str]) -> set[str]:
        found: set[str] = set()
        frontier = list(ids)
        while frontier:
            current = frontier.pop()
            for stack in self.stacks:
                if current in stack.dependencies and stack.id not in found and stack.id not in ids:
                    found.add(stack.id)
                    frontier.append(stack.id)
        return found


def _deployment_order(stacks: list[StackArtifact]) -> list[StackArtifact]:
    """Stable topological sort: dependencies first, otherwise manifest order."""
    by_id = {stack.id: stack for stack in stacks}
    if len(by_id) != len(stacks):
        raise ToolkitError("Cloud assembly contains duplicate stack ids")

    ordered: list[StackArtifact] = []
    placed: set[str] = set()
    remaining = list(stacks)
    while remaining:
        progress = False
        for stack in list(remaining):
            if all(dep in placed or dep not in by_id for dep in stack.dependencies):
                ordered.append(stack)
                placed.add(stack.id)
                remaining.remove(stack)
                progress = True
        if not progress:
            names = ", ".join(stack.id for stack in remaining)
            raise ToolkitError(f"Unable to order stacks, dependency cycle between: {names}")
    return ordered
