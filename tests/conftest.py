from __future__ import annotations

from pathlib import Path
from typing import Mapping, Sequence

import pytest

from dodot.errors import CommandError
from dodot.executor import CommandRunner
from dodot.filesystem import MemoryFileSystem
from dodot.paths import Paths, RootSource


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def dotfiles(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "dotfiles"
    root.mkdir()
    monkeypatch.setenv("DOTFILES_ROOT", str(root))
    return root


@pytest.fixture
def data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    data = tmp_path / "data"
    monkeypatch.setenv("DODOT_DATA_DIR", str(data))
    return data


@pytest.fixture
def memfs() -> MemoryFileSystem:
    fs = MemoryFileSystem()
    for directory in ("/dotfiles", "/data", "/home/user"):
        fs.mkdir(Path(directory), parents=True)
    return fs


@pytest.fixture
def mem_paths() -> Paths:
    return Paths(
        dotfiles_root=Path("/dotfiles"),
        root_source=RootSource.EXPLICIT,
        data_dir=Path("/data"),
        home=Path("/home/user"),
    )


class RecordingRunner(CommandRunner):
    """Records commands instead of running them."""

    def __init__(self, fail: bool = False) -> None:
        super().__init__()
        self.calls: list[tuple[tuple[str, ...], Path | None]] = []
        self.fail = fail

    def run(self, command: Sequence[str], *, cwd: Path | None = None, env: Mapping[str, str] | None = None) -> str:
        self.calls.append((tuple(command), cwd))
        if self.fail:
            raise CommandError("boom", details={"command": list(command), "returncode": 1})
        return ""


@pytest.fixture
def recording_runner() -> RecordingRunner:
    return RecordingRunner()
