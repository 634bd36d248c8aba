from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Any

from watchfiles import awatch

logger = logging.getLogger(__name__)


class LatchState(str, Enum):
    PRE_READY = "pre-ready"
    OPEN = "open"
    DEPLOYING = "deploying"
    QUEUED = "queued"


class LatchAction(str, Enum):
    OBSERVE = "observe"
    DEPLOY = "deploy"
    QUEUE = "queue"


class WatchLatch:
    """Serializes watch-triggered deploys.

    pre-ready --ready--> open --change--> deploying --change--> queued
    deploying --done--> open, queued --done--> deploying (one redrive)

    Every transition happens in one synchronous call on the event loop.
    """

    def __init__(self) -> None:
        self.state = LatchState.PRE_READY

    def ready(self) -> None:
        if self.state is LatchState.PRE_READY:
            self.state = LatchState.OPEN

    def start_deploy(self) -> None:
        if self.state is not LatchState.OPEN:
            raise RuntimeError(f"Cannot start a deploy while the watch latch is {self.state.value}")
        self.state = LatchState.DEPLOYING

    def on_change(self) -> LatchAction:
        if self.state is LatchState.PRE_READY:
            return LatchAction.OBSERVE
        if self.state is LatchState.OPEN:
            self.start_deploy()
            return LatchAction.DEPLOY
        self.state = LatchState.QUEUED
        return LatchAction.QUEUE

    def finish_cycle(self) -> bool:
        """Close a deploy; return True when queued changes need one more deploy."""
        if self.state is LatchState.QUEUED:
            self.state = LatchState.DEPLOYING
            return True
        self.state = LatchState.OPEN
        return False


@lru_cache(maxsize=256)
def _glob_regex(pattern: str) -> re.Pattern[str]:
    """Compile a path glob: ``*`` and ``?`` stay within one segment, ``**`` spans any number."""
    if pattern.startswith("./"):
        pattern = pattern[2:]
    parts: list[str] = []
    segments = pattern.split("/")
    for index, segment in enumerate(segments):
        last = index == len(segments) - 1
        if segment == "**":
            parts.append(".*" if last else "(?:.*/)?")
            continue
        parts.append(_segment_regex(segment))
        if not last:
            parts.append("/")
    return re.compile("".join(parts))


def _segment_regex(segment: str) -> str:
    out: list[str] = []
    i = 0
    while i < len(segment):
        char = segment[i]
        i += 1
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[" and (end := segment.find("]", i + 1)) != -1:
            body = segment[i:end].replace("\\", "\\\\")
            if body.startswith("!"):
                body = "^/" + body[1:]
            out.append(f"[{body}]")
            i = end + 1
        else:
            out.append(re.escape(char))
    return "".join(out)


def glob_match(relative_path: str, pattern: str) -> bool:
    return _glob_regex(pattern).fullmatch(relative_path) is not None


AwatchFn = Callable[..., AsyncIterator[Any]]


class WatchLoop:
    def __init__(
        self,
        deploy: Callable[[], Awaitable[None]],
        *,
        root_dir: Path,
        includes: list[str],
        excludes: list[str],
        awatch_fn: AwatchFn = awatch,
    ) -> None:
        self._deploy = deploy
        self.root_dir = root_dir.resolve()
        self.includes = includes or ["**"]
        self.excludes = excludes
        self._awatch = awatch_fn
        self.latch = WatchLatch()
        self._cycle: asyncio.Task[None] | None = None

    def _relative(self, path: str | Path) -> str | None:
        candidate = Path(path)
        if not candidate.is_absolute():
            return candidate.as_posix()
        try:
            return candidate.relative_to(self.root_dir).as_posix()
        except ValueError:
            return None

    def _excluded(self, relative_path: str) -> bool:
        return any(glob_match(relative_path, pattern) for pattern in self.excludes)

    def matches(self, path: str | Path) -> bool:
        relative_path = self._relative(path)
        if relative_path is None:
            return False
        included = any(glob_match(relative_path, pattern) for pattern in self.includes)
        return included and not self._excluded(relative_path)

    def existing_files(self) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(self.root_dir):
            base = Path(dirpath)
            rel_dir = base.relative_to(self.root_dir).as_posix()
            prefix = "" if rel_dir == "." else f"{rel_dir}/"
            dirnames[:] = sorted(name for name in dirnames if not self._excluded(f"{prefix}{name}/_"))
            for name in sorted(filenames):
                if self.matches(base / name):
                    yield base / name

    # -- latch-driven event handlers ------------------------------------------

    def handle_ready(self) -> None:
        self.latch.ready()
        logger.debug("'watch' received the 'ready' event. From now on, all file changes will trigger a deployment")
        logger.info("Triggering initial 'cdk deploy'")
        self.latch.start_deploy()
        self._spawn_cycle()

    def handle_change(self, change: str, path: str) -> None:
        action = self.latch.on_change()
        if action is LatchAction.OBSERVE:
            logger.info("'watch' is observing the file '%s' for changes", path)
        elif action is LatchAction.DEPLOY:
            logger.info("Detected change to '%s' (type: %s). Triggering 'cdk deploy'", path, change)
            self._spawn_cycle()
        else:
            logger.info(
                "Detected change to '%s' (type: %s) while 'cdk deploy' is still running. "
                "Will queue for another deployment after this one finishes",
                path,
                change,
            )

    def _spawn_cycle(self) -> None:
        self._cycle = asyncio.create_task(self._deploy_cycle(), name="cdk-watch-deploy")

    async def _deploy_cycle(self) -> None:
        await self._run_deploy()
        while self.latch.finish_cycle():
            logger.info("Detected file changes during deployment. Invoking 'cdk deploy' again")
            await self._run_deploy()

    async def _run_deploy(self) -> None:
        try:
            await self._deploy()
        except Exception:  # noqa: BLE001
            logger.exception("'cdk deploy' triggered by 'watch' failed")

    async def wait_idle(self) -> None:
        while self._cycle is not None and not self._cycle.done():
            await self._cycle

    async def run(self) -> None:
        """Observe existing files, deploy once, then redeploy on every change batch."""
        for path in self.existing_files():
            self.handle_change("add", str(path))
        self.handle_ready()
        async for changes in self._awatch(self.root_dir, watch_filter=lambda _change, path: self.matches(path)):
            for change, path in sorted(changes, key=lambda item: item[1]):
                self.handle_change(getattr(change, "name", str(change)), path)
        await self.wait_idle()
