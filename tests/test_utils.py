from pathlib import Path

import pytest

from cdk_toolkit import utils
from cdk_toolkit.utils import atomic_write_text


def test_atomic_write_creates_parent_directories(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "outputs.json"

    atomic_write_text(target, '{"A": {}}\n')

    assert target.read_text(encoding="utf-8") == '{"A": {}}\n'
    assert [p.name for p in target.parent.iterdir()] == ["outputs.json"]


def test_interrupted_write_keeps_previous_content(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    target = tmp_path / "outputs.json"
    target.write_text("previous\n", encoding="utf-8")

    def failing_fsync(fd: int) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(utils.os, "fsync", failing_fsync)

    with pytest.raises(OSError, match="disk full"):
        atomic_write_text(target, "next\n")

    assert target.read_text(encoding="utf-8") == "previous\n"
    assert [p.name for p in tmp_path.iterdir()] == ["outputs.json"]
