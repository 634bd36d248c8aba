import asyncio
import json
from pathlib import Path

import pytest
from watchfiles import Change

from cdk_toolkit.errors import ToolkitError
from cdk_toolkit.settings import ProjectConfig
from cdk_toolkit.toolkit import DeployOptions, WatchOptions
from cdk_toolkit.watch import LatchAction, LatchState, WatchLatch, WatchLoop, glob_match

DEFAULT_EXCLUDES = ["cdk.out/**", "**/.*", "**/.*/**", "**/node_modules/**"]


def _fake_awatch(batches: list[set[tuple[Change, str]]], seen_roots: list[Path] | None = None):
    async def fake(root, *, watch_filter):
        if seen_roots is not None:
            seen_roots.append(root)
        for batch in batches:
            yield {(change, path) for change, path in batch if watch_filter(change, path)}

    return fake


def test_latch_transitions() -> None:
    latch = WatchLatch()

    assert latch.on_change() is LatchAction.OBSERVE
    latch.ready()
    assert latch.state is LatchState.OPEN
    assert latch.on_change() is LatchAction.DEPLOY
    assert latch.on_change() is LatchAction.QUEUE
    assert latch.on_change() is LatchAction.QUEUE
    assert latch.finish_cycle() is True
    assert latch.state is LatchState.DEPLOYING
    assert latch.finish_cycle() is False
    assert latch.state is LatchState.OPEN


def test_latch_refuses_to_start_twice() -> None:
    latch = WatchLatch()
    latch.ready()
    latch.start_deploy()

    with pytest.raises(RuntimeError, match="watch latch is deploying"):
        latch.start_deploy()


def test_changes_during_a_deploy_coalesce_into_one_redeploy(tmp_path: Path) -> None:
    calls = 0

    async def scenario() -> None:
        release = asyncio.Event()

        async def deploy() -> None:
            nonlocal calls
            calls += 1
            if calls == 1:
                await release.wait()

        loop = WatchLoop(deploy, root_dir=tmp_path, includes=["**"], excludes=[])
        loop.handle_ready()
        await asyncio.sleep(0)
        for index in range(3):
            loop.handle_change("modified", f"file{index}.py")
        release.set()
        await loop.wait_idle()

    asyncio.run(scenario())

    assert calls == 2


def test_changes_before_ready_do_not_deploy(tmp_path: Path) -> None:
    calls = 0

    async def deploy() -> None:
        nonlocal calls
        calls += 1

    async def scenario() -> None:
        loop = WatchLoop(deploy, root_dir=tmp_path, includes=["**"], excludes=[])
        loop.handle_change("add", "app.py")
        loop.handle_change("add", "lib/stack.py")
        await loop.wait_idle()

    asyncio.run(scenario())

    assert calls == 0


def test_failed_deploy_keeps_the_loop_alive(tmp_path: Path) -> None:
    calls = 0

    async def deploy() -> None:
        nonlocal calls
        calls += 1
        raise RuntimeError("deploy failed")

    async def scenario() -> LatchState:
        loop = WatchLoop(deploy, root_dir=tmp_path, includes=["**"], excludes=[])
        loop.handle_ready()
        await loop.wait_idle()
        loop.handle_change("modified", "app.py")
        await loop.wait_idle()
        return loop.latch.state

    assert asyncio.run(scenario()) is LatchState.OPEN
    assert calls == 2


@pytest.mark.parametrize(
    ("path", "expected"),
    [
        ("app.py", True),
        ("lib/stack.py", True),
        ("cdk.out/manifest.json", False),
        (".env", False),
        ("lib/.cache", False),
        (".git/config", False),
        ("node_modules/pkg/index.js", False),
        ("lib/node_modules/pkg/index.js", False),
    ],
)
def test_default_excludes_filter_paths(tmp_path: Path, path: str, expected: bool) -> None:
    async def deploy() -> None:
        return None

    loop = WatchLoop(deploy, root_dir=tmp_path, includes=["**"], excludes=DEFAULT_EXCLUDES)

    assert loop.matches(tmp_path.resolve() / path) is expected


def test_glob_match_handles_leading_double_star_and_dot_slash() -> None:
    assert glob_match("app.py", "**/*.py")
    assert glob_match("lib/stack.py", "**/*.py")
    assert glob_match("lib/stack.py", "./lib/*")
    assert not glob_match("lib/stack.ts", "**/*.py")


def test_paths_outside_the_root_never_match(tmp_path: Path) -> None:
    async def deploy() -> None:
        return None

    loop = WatchLoop(deploy, root_dir=tmp_path / "project", includes=["**"], excludes=[])

    assert loop.matches(tmp_path / "elsewhere" / "app.py") is False


def test_run_observes_existing_files_then_redeploys_on_change(tmp_path: Path) -> None:
    (tmp_path / "app.py").write_text("app", encoding="utf-8")
    (tmp_path / "cdk.out").mkdir()
    (tmp_path / "cdk.out" / "manifest.json").write_text("{}", encoding="utf-8")
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref", encoding="utf-8")
    root = tmp_path.resolve()
    calls = 0

    async def deploy() -> None:
        nonlocal calls
        calls += 1

    batches = [
        {(Change.modified, str(root / "app.py")), (Change.added, str(root / "cdk.out" / "template.json"))},
    ]
    loop = WatchLoop(
        deploy,
        root_dir=tmp_path,
        includes=["**"],
        excludes=DEFAULT_EXCLUDES,
        awatch_fn=_fake_awatch(batches),
    )

    assert [path.relative_to(root).as_posix() for path in loop.existing_files()] == ["app.py"]

    asyncio.run(loop.run())

    # initial deploy plus one redrive for the batch that arrived meanwhile
    assert calls == 2
    assert loop.latch.state is LatchState.OPEN


def test_toolkit_watch_requires_a_watch_key(make_toolkit, make_stack, tmp_path: Path) -> None:
    toolkit = make_toolkit([make_stack("A")], project_config=ProjectConfig(path=tmp_path / "cdk.json"))

    with pytest.raises(ToolkitError, match="Make sure to add a \"watch\" key to your cdk.json"):
        asyncio.run(toolkit.watch(WatchOptions()))


def test_toolkit_watch_deploys_with_project_settings(make_toolkit, make_stack, deployments, tmp_path: Path) -> None:
    config_path = tmp_path / "cdk.json"
    config_path.write_text(json.dumps({"app": "python app.py", "watch": {"include": ["**"]}}), encoding="utf-8")
    (tmp_path / "app.py").write_text("app", encoding="utf-8")
    seen_roots: list[Path] = []
    toolkit = make_toolkit(
        [make_stack("A")],
        project_config=ProjectConfig.load(config_path),
        awatch_fn=_fake_awatch([], seen_roots),
    )

    asyncio.run(toolkit.watch(WatchOptions()))

    assert seen_roots == [tmp_path.resolve()]
    assert deployments.actions("deploy") == ["A"]
    assert deployments.deploy_requests[0].extra_user_agent == "cdk-watch/hotswap-on"


def test_deploy_with_watch_flag_enters_the_watch_loop(make_toolkit, make_stack, deployments, tmp_path: Path) -> None:
    config_path = tmp_path / "cdk.json"
    config_path.write_text(json.dumps({"watch": {}}), encoding="utf-8")
    toolkit = make_toolkit(
        [make_stack("A")],
        project_config=ProjectConfig.load(config_path),
        awatch_fn=_fake_awatch([]),
    )

    asyncio.run(toolkit.deploy(DeployOptions(watch=True)))

    assert deployments.actions("deploy") == ["A"]


def test_single_star_stays_within_one_path_segment() -> None:
    assert not glob_match("lib/a.py", "*.py")
    assert not glob_match("lib/x/y.py", "lib/*")
    assert glob_match("lib/x/y.py", "lib/**")
    assert glob_match("lib/x/y.py", "lib/**/*.py")
    assert not glob_match("lib/x/y.py", "lib/?/*.ts")
    assert glob_match("lib/b.py", "lib/[ab].py")
    assert not glob_match("lib/a.py", "lib/[!a].py")
