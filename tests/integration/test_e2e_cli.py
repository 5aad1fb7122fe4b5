from __future__ import annotations

import os
import stat
from pathlib import Path

from typer.testing import CliRunner

from dodot.cli import app

runner = CliRunner()


def _make_dotfiles(root: Path) -> None:
    vim = root / "vim"
    vim.mkdir(parents=True)
    (vim / "vimrc").write_text("set nocompatible\n")

    tools = root / "tools"
    (tools / "bin").mkdir(parents=True)
    (tools / "bin" / "hello").write_text("#!/bin/sh\necho hello\n")
    (tools / "aliases.sh").write_text("alias ll='ls -l'\n")

    dev = root / "dev"
    dev.mkdir()
    script = dev / "install.sh"
    script.write_text('#!/bin/sh\necho ran >> "$HOME/install.log"\n')
    script.chmod(script.stat().st_mode | stat.S_IXUSR)


def test_cli_full_cycle(dotfiles: Path, fake_home: Path, data_dir: Path) -> None:
    _make_dotfiles(dotfiles)

    deploy_result = runner.invoke(app, ["deploy"])
    assert deploy_result.exit_code == 0, deploy_result.stdout

    assert os.readlink(fake_home / ".vimrc") == str(data_dir / "packs" / "vim" / "symlinks" / "vimrc")
    assert (data_dir / "packs" / "tools" / "path" / "bin" / "hello").exists()
    assert (data_dir / "packs" / "tools" / "shell" / "aliases.sh").is_symlink()
    assert (fake_home / "install.log").read_text() == "ran\n"
    assert (data_dir / "packs" / "dev" / "install" / "install.sh.sentinel").exists()

    again = runner.invoke(app, ["deploy"])
    assert again.exit_code == 0
    assert "skipped" in again.stdout
    assert (fake_home / "install.log").read_text() == "ran\n"

    status_result = runner.invoke(app, ["status"])
    assert status_result.exit_code == 0
    assert "missing" not in status_result.stdout

    unlink_result = runner.invoke(app, ["unlink"])
    assert unlink_result.exit_code == 0
    assert not os.path.lexists(fake_home / ".vimrc")
    assert not (data_dir / "packs" / "tools").exists()
    assert (data_dir / "packs" / "dev" / "install" / "install.sh.sentinel").exists()

    deprovision_result = runner.invoke(app, ["deprovision", "dev"])
    assert deprovision_result.exit_code == 0
    assert not (data_dir / "packs" / "dev").exists()


def test_cli_force_reruns_provisioning(dotfiles: Path, fake_home: Path, data_dir: Path) -> None:
    _make_dotfiles(dotfiles)

    assert runner.invoke(app, ["provision", "dev"]).exit_code == 0
    assert runner.invoke(app, ["provision", "dev"]).exit_code == 0
    assert (fake_home / "install.log").read_text() == "ran\n"

    assert runner.invoke(app, ["provision", "dev", "--force"]).exit_code == 0
    assert (fake_home / "install.log").read_text() == "ran\nran\n"


def test_cli_failed_script_is_retried(dotfiles: Path, fake_home: Path, data_dir: Path) -> None:
    dev = dotfiles / "dev"
    dev.mkdir()
    (dev / "install.sh").write_text("exit 4\n")

    failed = runner.invoke(app, ["provision"])
    assert failed.exit_code == 1
    assert not (data_dir / "packs" / "dev" / "install" / "install.sh.sentinel").exists()

    (dev / "install.sh").write_text("exit 0\n")
    fixed = runner.invoke(app, ["provision"])
    assert fixed.exit_code == 0
    assert (data_dir / "packs" / "dev" / "install" / "install.sh.sentinel").exists()


def test_cli_no_home_symlinks(dotfiles: Path, fake_home: Path, data_dir: Path) -> None:
    _make_dotfiles(dotfiles)

    result = runner.invoke(app, ["--no-enable-home-symlinks", "link", "vim"])

    assert result.exit_code == 0
    assert (data_dir / "packs" / "vim" / "symlinks" / "vimrc").is_symlink()
    assert not os.path.lexists(fake_home / ".vimrc")
