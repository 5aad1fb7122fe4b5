from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path

import pytest

from dodot.datastore import DataStore, LinkRecord, format_sentinel, parse_sentinel
from dodot.errors import ConsistencyError
from dodot.filesystem import MemoryFileSystem
from dodot.models import StatusState
from dodot.paths import Paths

FIXED = datetime(2024, 5, 1, 12, 30, 45, tzinfo=timezone.utc)


@pytest.fixture
def store(memfs: MemoryFileSystem, mem_paths: Paths) -> DataStore:
    memfs.mkdir(Path("/dotfiles/vim"))
    memfs.write_file(Path("/dotfiles/vim/vimrc"), b"set nocompatible\n")
    memfs.mkdir(Path("/dotfiles/dev"))
    memfs.write_file(Path("/dotfiles/dev/install.sh"), b"echo hi\n")
    return DataStore(memfs, mem_paths, clock=lambda: FIXED)


def _snapshot(fs: MemoryFileSystem, root: Path) -> dict[str, object]:
    state: dict[str, object] = {}

    def walk(path: Path) -> None:
        for name in fs.read_dir(path):
            child = path / name
            if fs.is_symlink(child):
                state[str(child)] = ("link", str(fs.readlink(child)))
            elif fs.is_dir(child):
                state[str(child)] = "dir"
                walk(child)
            else:
                state[str(child)] = fs.read_file(child)

    if fs.is_dir(root):
        walk(root)
    return state


VIMRC = Path("/dotfiles/vim/vimrc")
INTERMEDIATE = Path("/data/packs/vim/symlinks/vimrc")
USER = Path("/home/user/.vimrc")


def test_link_data_is_idempotent(store: DataStore, memfs: MemoryFileSystem) -> None:
    first = store.link_data("vim", "symlink", VIMRC)
    before = _snapshot(memfs, Path("/data"))

    for _ in range(3):
        assert store.link_data("vim", "symlink", VIMRC) == first

    assert first == INTERMEDIATE
    assert memfs.readlink(INTERMEDIATE) == VIMRC
    assert _snapshot(memfs, Path("/data")) == before


def test_link_data_replaces_stale_intermediate(store: DataStore, memfs: MemoryFileSystem) -> None:
    memfs.mkdir(INTERMEDIATE.parent, parents=True)
    memfs.symlink(Path("/dotfiles/vim/old"), INTERMEDIATE)

    store.link_data("vim", "symlink", VIMRC)

    assert memfs.readlink(INTERMEDIATE) == VIMRC


def test_link_user_creates_and_reuses(store: DataStore, memfs: MemoryFileSystem) -> None:
    intermediate = store.link_data("vim", "symlink", VIMRC)

    assert store.link_user(intermediate, USER) is True
    assert store.link_user(intermediate, USER) is False
    assert memfs.readlink(USER) == intermediate
    assert memfs.read_file(USER) == b"set nocompatible\n"


@pytest.mark.parametrize("kind", ["foreign-link", "file", "directory"])
def test_link_user_never_touches_foreign_paths(store: DataStore, memfs: MemoryFileSystem, kind: str) -> None:
    intermediate = store.link_data("vim", "symlink", VIMRC)
    if kind == "foreign-link":
        memfs.symlink(Path("/tmp/other"), USER)
    elif kind == "file":
        memfs.write_file(USER, b"mine")
    else:
        memfs.mkdir(USER)
    before = _snapshot(memfs, Path("/home/user"))

    with pytest.raises(ConsistencyError) as excinfo:
        store.link_user(intermediate, USER)

    assert excinfo.value.details["path"] == str(USER)
    assert _snapshot(memfs, Path("/home/user")) == before


def test_unlink_user_only_removes_owned_links(store: DataStore, memfs: MemoryFileSystem) -> None:
    intermediate = store.link_data("vim", "symlink", VIMRC)
    memfs.symlink(Path("/tmp/other"), USER)

    assert store.unlink_user(USER, intermediate) is False
    assert memfs.readlink(USER) == Path("/tmp/other")

    memfs.remove(USER)
    store.link_user(intermediate, USER)
    assert store.unlink_user(USER, intermediate) is True
    assert not memfs.lexists(USER)
    assert store.unlink_user(USER, intermediate) is False


def test_link_user_records_link_and_created_directories(store: DataStore, memfs: MemoryFileSystem) -> None:
    intermediate = store.link_data("vim", "symlink", VIMRC)
    nested = Path("/home/user/.config/vim/vimrc")

    store.link_user(intermediate, nested)

    record = store.read_link_record(intermediate)
    assert record == LinkRecord(
        user_link=nested,
        created_dirs=(Path("/home/user/.config/vim"), Path("/home/user/.config")),
    )
    assert memfs.lexists(Path("/data/packs/vim/symlinks/.vimrc.link.toml"))
    assert store.data_links("vim", "symlink") == [INTERMEDIATE]


def test_unreadable_link_record_is_ignored(store: DataStore, memfs: MemoryFileSystem) -> None:
    store.link_data("vim", "symlink", VIMRC)
    memfs.write_file(Path("/data/packs/vim/symlinks/.vimrc.link.toml"), b"user_link = [")

    assert store.read_link_record(INTERMEDIATE) is None


def test_prune_created_dirs_only_removes_empty_directories(store: DataStore, memfs: MemoryFileSystem) -> None:
    memfs.mkdir(Path("/home/user/.config/kitty"), parents=True)
    memfs.mkdir(Path("/home/user/.config/busy"))
    memfs.write_file(Path("/home/user/.config/busy/file"), b"")

    removed = store.prune_created_dirs(
        [
            Path("/home/user"),
            Path("/home/user/.config"),
            Path("/home/user/.config/kitty"),
            Path("/home/user/.config/busy"),
        ]
    )

    assert removed == [Path("/home/user/.config/kitty")]
    assert memfs.is_dir(Path("/home/user/.config/busy"))
    assert memfs.is_dir(Path("/home/user"))


def test_remove_intermediate_drops_sidecars(store: DataStore, memfs: MemoryFileSystem) -> None:
    intermediate = store.link_data("vim", "symlink", VIMRC)
    store.link_user(intermediate, USER)
    store.record_placement("vim", "symlink", VIMRC, "login")

    assert store.remove_intermediate(intermediate) is True

    assert memfs.read_dir(INTERMEDIATE.parent) == []


def test_record_placement_reports_changes(store: DataStore) -> None:
    store.link_data("vim", "shell", VIMRC)

    assert store.read_placement("vim", "shell", VIMRC) is None
    assert store.record_placement("vim", "shell", VIMRC, "aliases") is True
    assert store.record_placement("vim", "shell", VIMRC, "aliases") is False
    assert store.read_placement("vim", "shell", VIMRC) == "aliases"
    assert store.shell_status("vim", VIMRC, placement="aliases").state is StatusState.READY
    assert store.shell_status("vim", VIMRC, placement="login").state is StatusState.PENDING


def test_unlink_data_is_a_noop_when_absent(store: DataStore, memfs: MemoryFileSystem) -> None:
    store.link_data("vim", "symlink", VIMRC)

    assert store.unlink_data("vim", "symlink", VIMRC) is True
    assert store.unlink_data("vim", "symlink", VIMRC) is False
    assert not memfs.lexists(INTERMEDIATE)


def test_sentinel_round_trip(store: DataStore, memfs: MemoryFileSystem) -> None:
    assert store.needs_run("dev", "install", "install.sh.sentinel", "sha256:c1")
    assert not store.has_sentinel("dev", "install", "install.sh.sentinel")

    path = store.record_run("dev", "install", "install.sh.sentinel", "sha256:c1")

    assert memfs.read_file(path) == b"sha256:c1|2024-05-01T12:30:45Z\n"
    assert store.has_sentinel("dev", "install", "install.sh.sentinel")
    assert not store.needs_run("dev", "install", "install.sh.sentinel", "sha256:c1")
    assert store.needs_run("dev", "install", "install.sh.sentinel", "sha256:c2")
    assert memfs.read_dir(path.parent) == ["install.sh.sentinel"]


def test_remove_state_is_scoped(store: DataStore, memfs: MemoryFileSystem) -> None:
    store.record_run("dev", "install", "install.sh.sentinel", "sha256:c1")
    store.record_run("dev", "homebrew", "Brewfile.sentinel", "sha256:b1")
    store.link_data("vim", "symlink", VIMRC)
    outside = _snapshot(memfs, Path("/data/packs/vim"))

    assert store.remove_state("dev", "install") is True
    assert store.remove_state("dev", "install") is False

    assert not memfs.lexists(Path("/data/packs/dev/install"))
    assert memfs.lexists(Path("/data/packs/dev/homebrew/Brewfile.sentinel"))
    assert _snapshot(memfs, Path("/data/packs/vim")) == outside
    assert memfs.read_file(VIMRC) == b"set nocompatible\n"


@pytest.mark.parametrize(
    ("text", "checksum", "timestamp"),
    [
        ("sha256:abc|2024-05-01T12:30:45Z\n", "sha256:abc", FIXED),
        ("sha256:abc|2024-05-01T12:30:45Z", "sha256:abc", FIXED),
        ("sha256:abc", "sha256:abc", None),
        ("sha256:abc|yesterday", "sha256:abc", None),
    ],
)
def test_parse_sentinel_tolerates_damage(text: str, checksum: str, timestamp: datetime | None) -> None:
    record = parse_sentinel(text)

    assert record.checksum == checksum
    assert record.timestamp == timestamp


def test_format_sentinel_is_utc_seconds() -> None:
    assert format_sentinel("c", FIXED.replace(microsecond=999)) == "c|2024-05-01T12:30:45Z\n"


def test_symlink_status_classification(store: DataStore, memfs: MemoryFileSystem) -> None:
    assert store.symlink_status("vim", VIMRC, USER).state is StatusState.MISSING

    intermediate = store.link_data("vim", "symlink", VIMRC)
    assert store.symlink_status("vim", VIMRC, USER).state is StatusState.PENDING

    store.link_user(intermediate, USER)
    assert store.symlink_status("vim", VIMRC, USER).state is StatusState.READY

    memfs.remove(USER)
    memfs.symlink(Path("/tmp/other"), USER)
    conflict = store.symlink_status("vim", VIMRC, USER)
    assert conflict.state is StatusState.ERROR
    assert conflict.error_type == "conflict"


def test_link_status_errors(store: DataStore, memfs: MemoryFileSystem) -> None:
    memfs.mkdir(INTERMEDIATE.parent, parents=True)
    memfs.symlink(Path("/dotfiles/vim/elsewhere"), INTERMEDIATE)
    wrong = store.path_status("vim", VIMRC, handler="symlink")
    assert (wrong.state, wrong.error_type) == (StatusState.ERROR, "wrong-target")

    store.link_data("vim", "symlink", VIMRC)
    memfs.remove(VIMRC)
    missing = store.shell_status("vim", VIMRC, handler="symlink")
    assert (missing.state, missing.error_type) == (StatusState.ERROR, "missing-source")

    memfs.remove(INTERMEDIATE)
    memfs.write_file(INTERMEDIATE, b"")
    not_link = store.path_status("vim", VIMRC, handler="symlink")
    assert (not_link.state, not_link.error_type) == (StatusState.ERROR, "not-a-symlink")


def test_provision_status_classification(store: DataStore) -> None:
    assert store.provision_status("dev", "install.sh.sentinel", "sha256:c1").state is StatusState.MISSING

    store.record_run("dev", "install", "install.sh.sentinel", "sha256:c1")
    ready = store.provision_status("dev", "install.sh.sentinel", "sha256:c1")
    stale = store.provision_status("dev", "install.sh.sentinel", "sha256:c2")

    assert ready.state is StatusState.READY
    assert ready.timestamp == FIXED
    assert stale.state is StatusState.PENDING
    assert store.homebrew_status("dev", "Brewfile.sentinel", "sha256:c1").state is StatusState.MISSING


def test_prune_pack_only_removes_empty_directory(store: DataStore, memfs: MemoryFileSystem) -> None:
    store.record_run("dev", "install", "install.sh.sentinel", "sha256:c1")

    assert store.prune_pack("dev") is False
    store.remove_state("dev", "install")
    assert store.prune_pack("dev") is True
    assert not memfs.lexists(Path("/data/packs/dev"))
