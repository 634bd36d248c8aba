import json
from pathlib import Path

import pytest

from cdk_toolkit.models import RequireApproval
from cdk_toolkit.settings import ProjectConfig, RuntimeSettings
from cdk_toolkit.utils import build_parameter_map, format_time, parameters_for_stack, validate_sns_topic_arn


def test_runtime_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "CDK_DEPLOY_CONCURRENCY",
        "CDK_ASSET_BUILD_CONCURRENCY",
        "CDK_ASSET_PUBLISH_CONCURRENCY",
        "CDK_REQUIRE_APPROVAL",
        "CDK_OUTPUT_DIR",
        "CDK_TOOLKIT_STACK_NAME",
        "CDK_PROJECT_CONFIG",
    ):
        monkeypatch.delenv(name, raising=False)

    settings = RuntimeSettings.from_env()

    assert settings == RuntimeSettings()
    assert settings.asset_publish_concurrency == 8
    assert settings.require_approval is RequireApproval.BROADENING


def test_runtime_settings_from_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CDK_DEPLOY_CONCURRENCY", "4")
    monkeypatch.setenv("CDK_REQUIRE_APPROVAL", "Never")
    monkeypatch.setenv("CDK_OUTPUT_DIR", " build/cdk.out ")

    settings = RuntimeSettings.from_env()

    assert settings.concurrency == 4
    assert settings.require_approval is RequireApproval.NEVER
    assert settings.output_dir == "build/cdk.out"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("CDK_DEPLOY_CONCURRENCY", "0", "CDK_DEPLOY_CONCURRENCY must be between 1 and 10000"),
        ("CDK_ASSET_BUILD_CONCURRENCY", "10001", "CDK_ASSET_BUILD_CONCURRENCY must be between 1 and 10000"),
        ("CDK_ASSET_PUBLISH_CONCURRENCY", "many", "CDK_ASSET_PUBLISH_CONCURRENCY must be an integer"),
        ("CDK_REQUIRE_APPROVAL", "sometimes", "CDK_REQUIRE_APPROVAL must be one of"),
        ("CDK_TOOLKIT_STACK_NAME", "  ", "CDK_TOOLKIT_STACK_NAME must be non-empty"),
    ],
)
def test_runtime_settings_invalid_env_raises(
    monkeypatch: pytest.MonkeyPatch, name: str, value: str, message: str
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        RuntimeSettings.from_env()


def test_project_config_reads_watch_and_output(tmp_path: Path) -> None:
    path = tmp_path / "cdk.json"
    path.write_text(
        json.dumps({"app": "python app.py", "output": "dist", "watch": {"include": "src/**", "exclude": ["tests/**"]}}),
        encoding="utf-8",
    )

    config = ProjectConfig.load(path)

    assert config.output == "dist"
    assert config.watch is not None
    assert config.watch.include == ["src/**"]
    assert config.watch.exclude == ["tests/**"]
    assert config.root_dir == tmp_path.resolve()


def test_project_config_missing_file_has_no_watch(tmp_path: Path) -> None:
    config = ProjectConfig.load(tmp_path / "cdk.json", default_output="out")

    assert config.watch is None
    assert config.output == "out"


def test_project_config_rejects_bad_watch_patterns(tmp_path: Path) -> None:
    path = tmp_path / "cdk.json"
    path.write_text(json.dumps({"watch": {"include": [1, 2]}}), encoding="utf-8")

    with pytest.raises(ValueError, match="watch.include must be a string or a list of strings"):
        ProjectConfig.load(path)


def test_parameter_map_splits_stack_scoped_keys() -> None:
    parameter_map = build_parameter_map({"Env": "prod", "Api:Stage": "v1", "Api:Env": "dev", "Unset": None})

    assert parameter_map == {"*": {"Env": "prod", "Unset": None}, "Api": {"Stage": "v1", "Env": "dev"}}
    assert parameters_for_stack(parameter_map, "Api") == {"Env": "dev", "Unset": None, "Stage": "v1"}
    assert parameters_for_stack(parameter_map, "Web") == {"Env": "prod", "Unset": None}


def test_sns_topic_arn_validation() -> None:
    assert validate_sns_topic_arn("arn:aws:sns:eu-west-1:123456789012:alerts_topic")
    assert not validate_sns_topic_arn("arn:aws:sqs:eu-west-1:123456789012:queue")
    assert not validate_sns_topic_arn("topic")


def test_format_time_rounds_to_hundredths() -> None:
    assert format_time(1.23456) == 1.23
    assert format_time(0.005) in (0.0, 0.01)
