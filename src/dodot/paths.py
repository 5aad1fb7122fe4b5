"""Canonical locations used by dodot."""

from __future__ import annotations

import logging
import os
import re
import subprocess
from enum import Enum
from pathlib import Path
from typing import Mapping

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

ENV_DOTFILES_ROOT = "DOTFILES_ROOT"
ENV_DATA_DIR = "DODOT_DATA_DIR"
ENV_XDG_DATA_HOME = "XDG_DATA_HOME"

APP_DIR_NAME = "dodot"
PACKS_DIR_NAME = "packs"
PACK_CONFIG_FILENAME = ".dodot.toml"
PACK_IGNORE_FILENAME = ".dodotignore"
SENTINEL_SUFFIX = ".sentinel"
LINK_RECORD_SUFFIX = ".link.toml"
PLACEMENT_SUFFIX = ".placement"

_ENV_VAR = re.compile(r"\$\{(\w+)\}|\$(\w+)")

# Handler name -> directory name under <data>/packs/<pack>/.
STATE_DIR_NAMES: dict[str, str] = {"symlink": "symlinks"}


class RootSource(str, Enum):
    """Where the dotfiles root was found."""

    EXPLICIT = "explicit"
    ENV = "env"
    GIT = "git"
    CWD_FALLBACK = "cwd-fallback"


def _expand_user(raw: str | os.PathLike[str], *, home: Path, environ: Mapping[str, str]) -> Path:
    """Expand ``~`` against ``home`` and ``$VARS`` against ``environ``."""

    text = _ENV_VAR.sub(lambda m: environ.get(m.group(1) or m.group(2), m.group(0)), str(raw))
    if text == "~":
        return home
    if text.startswith("~/"):
        return home / text[2:]
    return Path(text)


def _find_git_root(cwd: Path) -> Path | None:
    try:
        completed = subprocess.run(
            ["git", "rev-parse", "--show-toplevel"],
            cwd=cwd,
            capture_output=True,
            text=True,
            check=False,
        )
    except (FileNotFoundError, NotADirectoryError):
        return None
    root = completed.stdout.strip()
    if completed.returncode != 0 or not root:
        return None
    return Path(root)


def dotted_name(name: str) -> str:
    """Return ``name`` with a leading dot."""

    return name if name.startswith(".") else f".{name}"


class Paths(BaseModel):
    """Resolved locations for one dodot invocation."""

    model_config = ConfigDict(frozen=True)

    dotfiles_root: Path
    root_source: RootSource
    data_dir: Path
    home: Path

    @classmethod
    def resolve(
        cls,
        dotfiles_root: Path | str | None = None,
        *,
        environ: Mapping[str, str] | None = None,
        cwd: Path | None = None,
        home: Path | None = None,
        data_dir: Path | None = None,
    ) -> "Paths":
        """Resolve every location once, reading the environment a single time.

        The dotfiles root comes from, in order: ``dotfiles_root``, ``$DOTFILES_ROOT``,
        the enclosing git repository of ``cwd``, and finally ``cwd`` itself.
        """

        env = dict(os.environ if environ is None else environ)
        cwd = Path(cwd or os.getcwd())
        home_dir = Path(home or env.get("HOME") or Path.home())

        if dotfiles_root is not None:
            root, source = _expand_user(dotfiles_root, home=home_dir, environ=env), RootSource.EXPLICIT
        elif env.get(ENV_DOTFILES_ROOT):
            root, source = _expand_user(env[ENV_DOTFILES_ROOT], home=home_dir, environ=env), RootSource.ENV
        else:
            git_root = _find_git_root(cwd)
            if git_root is not None:
                root, source = git_root, RootSource.GIT
            else:
                logger.warning("No DOTFILES_ROOT and no git repository; using '%s'", cwd)
                root, source = cwd, RootSource.CWD_FALLBACK

        if not root.is_absolute():
            root = cwd / root

        if data_dir is not None:
            data = Path(data_dir)
        elif env.get(ENV_DATA_DIR):
            data = _expand_user(env[ENV_DATA_DIR], home=home_dir, environ=env)
        elif env.get(ENV_XDG_DATA_HOME):
            data = Path(env[ENV_XDG_DATA_HOME]) / APP_DIR_NAME
        else:
            data = home_dir / ".local" / "share" / APP_DIR_NAME

        return cls(
            dotfiles_root=Path(os.path.normpath(root)),
            root_source=source,
            data_dir=Path(os.path.normpath(data)),
            home=Path(os.path.normpath(home_dir)),
        )

    @property
    def used_fallback(self) -> bool:
        return self.root_source is RootSource.CWD_FALLBACK

    def pack_path(self, pack: str) -> Path:
        return self.dotfiles_root / pack

    def pack_config_path(self, pack: str) -> Path:
        return self.pack_path(pack) / PACK_CONFIG_FILENAME

    @property
    def packs_dir(self) -> Path:
        return self.data_dir / PACKS_DIR_NAME

    def pack_dir(self, pack: str) -> Path:
        return self.packs_dir / pack

    def pack_handler_dir(self, pack: str, handler: str) -> Path:
        return self.pack_dir(pack) / STATE_DIR_NAMES.get(handler, handler)

    def intermediate_path(self, pack: str, handler: str, source: Path) -> Path:
        return self.pack_handler_dir(pack, handler) / source.name

    def sentinel_path(self, pack: str, handler: str, sentinel: str) -> Path:
        return self.pack_handler_dir(pack, handler) / sentinel

    def expand(self, raw: str | os.PathLike[str]) -> Path:
        """Expand ``~`` and environment variables; relative results hang off home."""

        expanded = _expand_user(raw, home=self.home, environ=os.environ)
        return expanded if expanded.is_absolute() else self.home / expanded

    def user_link_path(self, name: str, target_dir: str | os.PathLike[str] | None = None) -> Path:
        """Where the user-visible link for a pack entry called ``name`` goes."""

        if target_dir is None:
            return self.home / dotted_name(name)
        return self.expand(target_dir) / name

    def is_in_home(self, path: Path) -> bool:
        try:
            Path(os.path.normpath(path)).relative_to(self.home)
        except ValueError:
            return False
        return True


def sentinel_name(source: Path) -> str:
    """Sentinel file name for a provisioning input."""

    return f"{source.name}{SENTINEL_SUFFIX}"


def sidecar_path(intermediate: Path, suffix: str) -> Path:
    """Hidden file kept next to an intermediate link, e.g. ``.vimrc.link.toml``."""

    return intermediate.parent / f".{intermediate.name}{suffix}"
