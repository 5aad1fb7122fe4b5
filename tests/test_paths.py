from __future__ import annotations

from pathlib import Path

import pytest

from dodot.paths import Paths, RootSource, dotted_name, sentinel_name


def test_explicit_root_wins_over_environment(tmp_path: Path) -> None:
    explicit = tmp_path / "explicit"
    env_root = tmp_path / "env"

    paths = Paths.resolve(explicit, environ={"DOTFILES_ROOT": str(env_root)}, home=tmp_path / "home")

    assert paths.dotfiles_root == explicit
    assert paths.root_source is RootSource.EXPLICIT
    assert not paths.used_fallback


def test_environment_root_and_tilde_expansion(tmp_path: Path) -> None:
    home = tmp_path / "home"

    paths = Paths.resolve(environ={"DOTFILES_ROOT": "~/dots"}, home=home)

    assert paths.dotfiles_root == home / "dots"
    assert paths.root_source is RootSource.ENV


def test_git_root_then_cwd_fallback(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    repo = tmp_path / "repo"
    monkeypatch.setattr("dodot.paths._find_git_root", lambda cwd: repo)

    paths = Paths.resolve(environ={}, cwd=tmp_path, home=tmp_path)
    assert paths.dotfiles_root == repo
    assert paths.root_source is RootSource.GIT

    monkeypatch.setattr("dodot.paths._find_git_root", lambda cwd: None)
    fallback = Paths.resolve(environ={}, cwd=tmp_path, home=tmp_path)
    assert fallback.dotfiles_root == tmp_path
    assert fallback.used_fallback


def test_data_dir_resolution_order(tmp_path: Path) -> None:
    home = tmp_path / "home"
    root = tmp_path / "dots"

    default = Paths.resolve(root, environ={}, home=home)
    xdg = Paths.resolve(root, environ={"XDG_DATA_HOME": str(tmp_path / "xdg")}, home=home)
    override = Paths.resolve(
        root,
        environ={"XDG_DATA_HOME": str(tmp_path / "xdg"), "DODOT_DATA_DIR": "$HOME/state", "HOME": str(home)},
        home=home,
    )

    assert default.data_dir == home / ".local" / "share" / "dodot"
    assert xdg.data_dir == tmp_path / "xdg" / "dodot"
    assert override.data_dir == home / "state"


def test_data_dir_variable_expansion_uses_given_environment(tmp_path: Path) -> None:
    paths = Paths.resolve(
        tmp_path,
        environ={"DODOT_DATA_DIR": "${BASE}/dodot", "BASE": str(tmp_path / "base")},
        home=tmp_path,
    )

    assert paths.data_dir == tmp_path / "base" / "dodot"


def test_state_layout(tmp_path: Path) -> None:
    paths = Paths(
        dotfiles_root=tmp_path / "dots", root_source=RootSource.EXPLICIT, data_dir=tmp_path / "data", home=tmp_path
    )
    source = tmp_path / "dots" / "vim" / "vimrc"

    assert paths.pack_handler_dir("vim", "symlink") == tmp_path / "data" / "packs" / "vim" / "symlinks"
    assert paths.pack_handler_dir("tools", "path") == tmp_path / "data" / "packs" / "tools" / "path"
    assert paths.intermediate_path("vim", "symlink", source) == paths.pack_handler_dir("vim", "symlink") / "vimrc"
    assert paths.sentinel_path("dev", "install", "install.sh.sentinel") == (
        tmp_path / "data" / "packs" / "dev" / "install" / "install.sh.sentinel"
    )
    assert paths.pack_config_path("vim") == tmp_path / "dots" / "vim" / ".dodot.toml"


def test_user_link_path(tmp_path: Path) -> None:
    paths = Paths(
        dotfiles_root=tmp_path, root_source=RootSource.EXPLICIT, data_dir=tmp_path / "data", home=tmp_path / "h"
    )

    assert paths.user_link_path("vimrc") == tmp_path / "h" / ".vimrc"
    assert paths.user_link_path(".zshrc") == tmp_path / "h" / ".zshrc"
    assert paths.user_link_path("init.lua", "~/.config/nvim") == tmp_path / "h" / ".config" / "nvim" / "init.lua"
    assert paths.user_link_path("x", ".config") == tmp_path / "h" / ".config" / "x"
    assert paths.is_in_home(tmp_path / "h" / ".vimrc")
    assert not paths.is_in_home(tmp_path / "elsewhere")


def test_name_helpers() -> None:
    assert dotted_name("bashrc") == ".bashrc"
    assert dotted_name(".bashrc") == ".bashrc"
    assert sentinel_name(Path("/d/dev/install.sh")) == "install.sh.sentinel"
