import json
from pathlib import Path

import pytest

from cdk_toolkit.assembly import CloudAssembly, DefaultSelection, ExtendedStackSelection
from cdk_toolkit.errors import StackSelectionError, ToolkitError
from cdk_toolkit.models import StackSelector


def _ids(stacks) -> list[str]:
    return [stack.id for stack in stacks]


def test_stacks_are_kept_in_dependency_order(make_stack) -> None:
    assembly = CloudAssembly([make_stack("C", dependencies=["B"]), make_stack("B", dependencies=["A"]), make_stack("A")])

    assert _ids(assembly.stacks) == ["A", "B", "C"]


def test_dependency_cycle_between_stacks_is_rejected(make_stack) -> None:
    with pytest.raises(ToolkitError, match="dependency cycle between: A, B"):
        CloudAssembly([make_stack("A", dependencies=["B"]), make_stack("B", dependencies=["A"])])


def test_patterns_match_with_wildcards(make_stack) -> None:
    assembly = CloudAssembly([make_stack("Prod/Api"), make_stack("Prod/Web"), make_stack("Dev/Api")])

    selected = assembly.select_stacks(StackSelector(patterns=["Prod/*"]))

    assert _ids(selected) == ["Prod/Api", "Prod/Web"]


def test_upstream_and_downstream_extension(make_stack) -> None:
    assembly = CloudAssembly(
        [make_stack("Net"), make_stack("Db", dependencies=["Net"]), make_stack("App", dependencies=["Db"])]
    )

    upstream = assembly.select_stacks(StackSelector(patterns=["Db"]), extend=ExtendedStackSelection.UPSTREAM)
    downstream = assembly.select_stacks(StackSelector(patterns=["Db"]), extend=ExtendedStackSelection.DOWNSTREAM)

    assert _ids(upstream) == ["Net", "Db"]
    assert _ids(downstream) == ["Db", "App"]


def test_unmatched_pattern_raises_unless_ignored(make_stack) -> None:
    assembly = CloudAssembly([make_stack("A")])

    with pytest.raises(StackSelectionError, match="No stacks match the name\\(s\\) Missing"):
        assembly.select_stacks(StackSelector(patterns=["Missing"]))
    assert assembly.select_stacks(StackSelector(patterns=["Missing"]), ignore_no_stacks=True) == []


def test_multiple_stacks_need_an_explicit_selection(make_stack) -> None:
    assembly = CloudAssembly([make_stack("A"), make_stack("B")])

    with pytest.raises(StackSelectionError, match="specify `--all`\nStacks: A, B"):
        assembly.select_stacks(StackSelector())
    assert _ids(assembly.select_stacks(StackSelector(), default_behavior=DefaultSelection.ALL_STACKS)) == ["A", "B"]


def test_manifest_file_is_loaded_with_template_files(tmp_path: Path) -> None:
    (tmp_path / "Api.template.json").write_text(
        json.dumps({"Resources": {"Fn": {"Type": "AWS::Lambda::Function"}}}), encoding="utf-8"
    )
    manifest = {
        "stacks": [
            {
                "id": "Api",
                "stackName": "prod-api",
                "environment": {"account": "123456789012", "region": "eu-west-1"},
                "templateFile": "Api.template.json",
                "dependencies": ["Net"],
                "assetManifests": [
                    {
                        "id": "Api.assets",
                        "entries": [{"assetId": "abc", "source": {"path": "asset.abc"}, "destination": {}}],
                    }
                ],
                "notificationArns": ["arn:aws:sns:eu-west-1:123456789012:events"],
            },
            {"id": "Net", "environment": {"account": "123456789012", "region": "eu-west-1"}},
        ]
    }
    path = tmp_path / "manifest.json"
    path.write_text(json.dumps(manifest), encoding="utf-8")

    assembly = CloudAssembly.from_file(path)

    assert _ids(assembly.stacks) == ["Net", "Api"]
    api = assembly.stack_by_id("Api")
    assert api.stack_name == "prod-api"
    assert api.display_name == "Api"
    assert api.resource_count == 1
    assert api.asset_manifests[0].entries[0].asset_id == "abc"
    assert api.notification_arns == ["arn:aws:sns:eu-west-1:123456789012:events"]
    assert str(api.environment) == "aws://123456789012/eu-west-1"


def test_missing_manifest_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError, match="Cloud assembly manifest does not exist"):
        CloudAssembly.from_file(tmp_path / "missing.json")
