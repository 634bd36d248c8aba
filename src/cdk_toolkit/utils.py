from __future__ import annotations

import contextlib
import os
import re
import tempfile
from pathlib import Path

from .models import StackArtifact


SNS_TOPIC_ARN_RE = re.compile(r"^arn:aws:sns:[a-z0-9\-]+:[0-9]+:[a-z0-9\-_]+$", re.IGNORECASE)


def validate_sns_topic_arn(arn: str) -> bool:
    return bool(SNS_TOPIC_ARN_RE.match(arn))


def build_parameter_map(parameters: dict[str, str | None] | None) -> dict[str, dict[str, str | None]]:
    """Split ``Stack:Param`` keys into per-stack maps; bare keys go under ``*``."""
    parameter_map: dict[str, dict[str, str | None]] = {"*": {}}
    for key, value in (parameters or {}).items():
        stack, sep, parameter = key.partition(":")
        if not sep or not parameter:
            parameter_map["*"][stack] = value
        else:
            parameter_map.setdefault(stack, {})[parameter] = value
    return parameter_map


def parameters_for_stack(parameter_map: dict[str, dict[str, str | None]], stack_name: str) -> dict[str, str | None]:
    return {**parameter_map.get("*", {}), **parameter_map.get(stack_name, {})}


def tags_for_stack(stack: StackArtifact) -> list[dict[str, str]]:
    return [{"Key": key, "Value": value} for key, value in stack.tags.items()]


def format_time(seconds: float) -> float:
    """Round a duration in seconds to two decimals for display."""
    return round(seconds * 100) / 100


def atomic_write_text(path: Path, content: str) -> None:
    """Stage *content* next to *path* and rename it over; an interrupted write keeps the old file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, staging_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    staging = Path(staging_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        staging.replace(path)
    except BaseException:
        with contextlib.suppress(OSError):
            staging.unlink()
        raise
