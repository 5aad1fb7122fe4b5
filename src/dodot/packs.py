"""Pack discovery under the dotfiles root."""

from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from typing import Sequence

from .config import DEFAULT_PACK_IGNORE, load_pack_config
from .errors import ConfigurationError, PackNotFoundError
from .filesystem import FileSystem
from .models import Pack
from .paths import PACK_IGNORE_FILENAME, Paths

logger = logging.getLogger(__name__)


def _ignored(name: str) -> bool:
    return name.startswith(".") or any(fnmatchcase(name, pattern) for pattern in DEFAULT_PACK_IGNORE)


def _pack_names(fs: FileSystem, paths: Paths) -> list[str]:
    root = paths.dotfiles_root
    try:
        names = fs.read_dir(root)
    except OSError as exc:
        raise ConfigurationError(
            f"Cannot read dotfiles root '{root}': {exc}",
            details={"dotfiles_root": str(root), "root_source": paths.root_source.value},
        ) from exc

    result: list[str] = []
    for name in names:
        if _ignored(name):
            continue
        path = root / name
        if not fs.is_dir(path):
            continue
        if fs.lexists(path / PACK_IGNORE_FILENAME):
            logger.info("Skipping pack '%s' (%s present)", name, PACK_IGNORE_FILENAME)
            continue
        result.append(name)
    return sorted(result)


def load_pack(fs: FileSystem, paths: Paths, name: str) -> Pack:
    return Pack(name=name, path=paths.pack_path(name), config=load_pack_config(fs, paths.pack_config_path(name)))


def discover_packs(fs: FileSystem, paths: Paths) -> list[Pack]:
    """All packs under the dotfiles root, sorted by name."""

    return [load_pack(fs, paths, name) for name in _pack_names(fs, paths)]


def select_packs(fs: FileSystem, paths: Paths, names: Sequence[str] | None = None) -> list[Pack]:
    """Resolve a pack-name filter; every requested name must exist."""

    available = _pack_names(fs, paths)
    if not names:
        return [load_pack(fs, paths, name) for name in available]

    wanted: list[str] = []
    for raw in names:
        name = raw.rstrip("/")
        if name not in wanted:
            wanted.append(name)

    missing = [name for name in wanted if name not in available]
    if missing:
        raise PackNotFoundError(
            f"Pack(s) not found: {', '.join(missing)}",
            details={
                "missing": missing,
                "dotfiles_root": str(paths.dotfiles_root),
                "root_source": paths.root_source.value,
            },
        )
    return [load_pack(fs, paths, name) for name in sorted(wanted)]
