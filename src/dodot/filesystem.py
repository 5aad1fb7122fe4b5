"""Filesystem abstraction for dodot.

Everything that touches disk goes through a :class:`FileSystem`. Two
implementations exist: :class:`OSFileSystem` for real work and
:class:`MemoryFileSystem`, an in-process tree with full symlink semantics used
by the test-suite. Both raise the builtin ``OSError`` subclasses so callers can
handle them uniformly.
"""

from __future__ import annotations

import errno
import os
import posixpath
import shutil
import stat as stat_module
from abc import ABC, abstractmethod
from dataclasses import dataclass
from hashlib import sha256
from pathlib import Path

from .models import EntryType, FileInfo

_MAX_LINK_DEPTH = 40


class FileSystem(ABC):
    """Small synchronous filesystem interface."""

    @abstractmethod
    def stat(self, path: Path) -> FileInfo:
        """Return information about ``path``, following symlinks."""

    @abstractmethod
    def lstat(self, path: Path) -> FileInfo:
        """Return information about ``path`` itself."""

    @abstractmethod
    def readlink(self, path: Path) -> Path:
        """Return the raw target stored in the symlink at ``path``."""

    @abstractmethod
    def symlink(self, target: Path, link: Path) -> None:
        """Create ``link`` pointing at ``target``."""

    @abstractmethod
    def read_file(self, path: Path) -> bytes: ...

    @abstractmethod
    def write_file(self, path: Path, data: bytes, *, mode: int = 0o644) -> None: ...

    @abstractmethod
    def mkdir(self, path: Path, *, parents: bool = False, exist_ok: bool = False) -> None: ...

    @abstractmethod
    def remove(self, path: Path) -> None:
        """Remove a file, a symlink or an empty directory."""

    @abstractmethod
    def remove_all(self, path: Path) -> None:
        """Remove ``path`` and everything below it without following symlinks."""

    @abstractmethod
    def rename(self, source: Path, destination: Path) -> None:
        """Atomically move ``source`` over ``destination``."""

    @abstractmethod
    def read_dir(self, path: Path) -> list[str]:
        """Return the sorted entry names of a directory."""

    # ------------------------------------------------------------------
    # Derived helpers

    def exists(self, path: Path) -> bool:
        try:
            self.stat(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    def lexists(self, path: Path) -> bool:
        try:
            self.lstat(path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    def is_dir(self, path: Path) -> bool:
        try:
            return self.stat(path).is_dir
        except (FileNotFoundError, NotADirectoryError):
            return False

    def is_symlink(self, path: Path) -> bool:
        try:
            return self.lstat(path).is_symlink
        except (FileNotFoundError, NotADirectoryError):
            return False


def _info_from_stat(result: os.stat_result) -> FileInfo:
    if stat_module.S_ISLNK(result.st_mode):
        kind = EntryType.SYMLINK
    elif stat_module.S_ISDIR(result.st_mode):
        kind = EntryType.DIRECTORY
    else:
        kind = EntryType.FILE
    return FileInfo(
        kind=kind,
        size=result.st_size if kind is EntryType.FILE else 0,
        mode=result.st_mode & 0o7777,
        mtime_ns=result.st_mtime_ns,
    )


class OSFileSystem(FileSystem):
    """Filesystem backed by the host operating system."""

    def stat(self, path: Path) -> FileInfo:
        return _info_from_stat(os.stat(path))

    def lstat(self, path: Path) -> FileInfo:
        return _info_from_stat(os.lstat(path))

    def readlink(self, path: Path) -> Path:
        return Path(os.readlink(path))

    def symlink(self, target: Path, link: Path) -> None:
        os.symlink(target, link)

    def read_file(self, path: Path) -> bytes:
        return Path(path).read_bytes()

    def write_file(self, path: Path, data: bytes, *, mode: int = 0o644) -> None:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)

    def mkdir(self, path: Path, *, parents: bool = False, exist_ok: bool = False) -> None:
        Path(path).mkdir(mode=0o755, parents=parents, exist_ok=exist_ok)

    def remove(self, path: Path) -> None:
        if self.lstat(path).is_dir:
            os.rmdir(path)
        else:
            os.unlink(path)

    def remove_all(self, path: Path) -> None:
        if self.lstat(path).is_dir:
            shutil.rmtree(path)
        else:
            os.unlink(path)

    def rename(self, source: Path, destination: Path) -> None:
        os.replace(source, destination)

    def read_dir(self, path: Path) -> list[str]:
        return sorted(os.listdir(path))


@dataclass
class _Node:
    kind: EntryType
    content: bytes = b""
    mode: int = 0o644
    target: str = ""
    mtime_ns: int = 0


class MemoryFileSystem(FileSystem):
    """In-memory filesystem keyed by absolute POSIX path."""

    def __init__(self) -> None:
        self._nodes: dict[str, _Node] = {"/": _Node(EntryType.DIRECTORY, mode=0o755)}
        self._clock = 0

    # ------------------------------------------------------------------
    # Internal helpers

    @staticmethod
    def _norm(path: Path | str) -> str:
        text = Path(path).as_posix()
        if not text.startswith("/"):
            text = "/" + text
        return posixpath.normpath(text).replace("//", "/")

    def _tick(self) -> int:
        self._clock += 1
        return self._clock

    def _resolve(self, path: Path | str, *, follow_last: bool = True, depth: int = 0) -> str:
        parts = [part for part in self._norm(path).split("/") if part]
        current = "/"
        for index, part in enumerate(parts):
            candidate = posixpath.join(current, part)
            node = self._nodes.get(candidate)
            is_last = index == len(parts) - 1
            if node is not None and node.kind is EntryType.SYMLINK and (follow_last or not is_last):
                if depth >= _MAX_LINK_DEPTH:
                    raise OSError(errno.ELOOP, "Too many levels of symbolic links", str(path))
                candidate = self._resolve(posixpath.join(current, node.target), depth=depth + 1)
            current = candidate
        return current

    def _node(self, key: str, path: Path | str) -> _Node:
        node = self._nodes.get(key)
        if node is None:
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))
        return node

    def _check_parent(self, key: str, path: Path | str) -> None:
        parent = self._nodes.get(posixpath.dirname(key))
        if parent is None:
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))
        if parent.kind is not EntryType.DIRECTORY:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(path))

    def _children(self, key: str) -> list[str]:
        prefix = key.rstrip("/") + "/"
        return [name for name in self._nodes if name != key and name.startswith(prefix)]

    @staticmethod
    def _info(node: _Node) -> FileInfo:
        return FileInfo(kind=node.kind, size=len(node.content), mode=node.mode, mtime_ns=node.mtime_ns)

    # ------------------------------------------------------------------
    # FileSystem implementation

    def stat(self, path: Path) -> FileInfo:
        return self._info(self._node(self._resolve(path), path))

    def lstat(self, path: Path) -> FileInfo:
        return self._info(self._node(self._resolve(path, follow_last=False), path))

    def readlink(self, path: Path) -> Path:
        node = self._node(self._resolve(path, follow_last=False), path)
        if node.kind is not EntryType.SYMLINK:
            raise OSError(errno.EINVAL, "Invalid argument", str(path))
        return Path(node.target)

    def symlink(self, target: Path, link: Path) -> None:
        key = self._resolve(link, follow_last=False)
        if key in self._nodes:
            raise FileExistsError(errno.EEXIST, "File exists", str(link))
        self._check_parent(key, link)
        self._nodes[key] = _Node(EntryType.SYMLINK, mode=0o777, target=str(target), mtime_ns=self._tick())

    def read_file(self, path: Path) -> bytes:
        node = self._node(self._resolve(path), path)
        if node.kind is EntryType.DIRECTORY:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", str(path))
        return node.content

    def write_file(self, path: Path, data: bytes, *, mode: int = 0o644) -> None:
        key = self._resolve(path)
        existing = self._nodes.get(key)
        if existing is not None and existing.kind is EntryType.DIRECTORY:
            raise IsADirectoryError(errno.EISDIR, "Is a directory", str(path))
        self._check_parent(key, path)
        self._nodes[key] = _Node(EntryType.FILE, content=bytes(data), mode=mode, mtime_ns=self._tick())

    def mkdir(self, path: Path, *, parents: bool = False, exist_ok: bool = False) -> None:
        key = self._resolve(path, follow_last=False)
        if key in self._nodes:
            if exist_ok and self.is_dir(Path(key)):
                return
            raise FileExistsError(errno.EEXIST, "File exists", str(path))
        parent_key = posixpath.dirname(key)
        parent = self._nodes.get(parent_key)
        if parent is None:
            if not parents:
                raise FileNotFoundError(errno.ENOENT, "No such file or directory", str(path))
            self.mkdir(Path(parent_key), parents=True, exist_ok=True)
        elif parent.kind is not EntryType.DIRECTORY:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(path))
        self._nodes[key] = _Node(EntryType.DIRECTORY, mode=0o755, mtime_ns=self._tick())

    def remove(self, path: Path) -> None:
        key = self._resolve(path, follow_last=False)
        node = self._node(key, path)
        if node.kind is EntryType.DIRECTORY and self._children(key):
            raise OSError(errno.ENOTEMPTY, "Directory not empty", str(path))
        if key == "/":
            raise PermissionError(errno.EPERM, "Refusing to remove root", str(path))
        del self._nodes[key]

    def remove_all(self, path: Path) -> None:
        key = self._resolve(path, follow_last=False)
        node = self._node(key, path)
        if key == "/":
            raise PermissionError(errno.EPERM, "Refusing to remove root", str(path))
        if node.kind is EntryType.DIRECTORY:
            for child in self._children(key):
                del self._nodes[child]
        del self._nodes[key]

    def rename(self, source: Path, destination: Path) -> None:
        source_key = self._resolve(source, follow_last=False)
        node = self._node(source_key, source)
        destination_key = self._resolve(destination, follow_last=False)
        self._check_parent(destination_key, destination)
        existing = self._nodes.get(destination_key)
        if existing is not None and existing.kind is EntryType.DIRECTORY:
            if node.kind is not EntryType.DIRECTORY:
                raise IsADirectoryError(errno.EISDIR, "Is a directory", str(destination))
            if self._children(destination_key):
                raise OSError(errno.ENOTEMPTY, "Directory not empty", str(destination))
        moved = {source_key: node}
        if node.kind is EntryType.DIRECTORY:
            moved.update({child: self._nodes[child] for child in self._children(source_key)})
        for key in moved:
            del self._nodes[key]
        for key, value in moved.items():
            self._nodes[destination_key + key[len(source_key) :]] = value

    def read_dir(self, path: Path) -> list[str]:
        key = self._resolve(path)
        node = self._node(key, path)
        if node.kind is not EntryType.DIRECTORY:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", str(path))
        return sorted(
            posixpath.basename(child) for child in self._children(key) if posixpath.dirname(child) == key
        )


# ----------------------------------------------------------------------
# Helpers shared by the datastore and handlers


def ensure_parent(fs: FileSystem, path: Path) -> None:
    """Ensure the parent directory exists."""

    fs.mkdir(path.parent, parents=True, exist_ok=True)


def detect_entry_type(fs: FileSystem, path: Path) -> EntryType:
    """Determine the ``EntryType`` for ``path`` without following symlinks."""

    return fs.lstat(path).kind


def link_destination(fs: FileSystem, link: Path) -> Path:
    """Return the absolute, lexically normalised target of the symlink ``link``."""

    raw = fs.readlink(link)
    if not raw.is_absolute():
        raw = link.parent / raw
    return Path(os.path.normpath(raw))


def symlink_points_to(fs: FileSystem, link: Path, target: Path) -> bool:
    """Return ``True`` if ``link`` is a symlink whose stored target is ``target``."""

    if not fs.is_symlink(link):
        return False
    return link_destination(fs, link) == Path(os.path.normpath(target))


def file_checksum(fs: FileSystem, path: Path) -> str:
    """Return a ``sha256:<hex>`` digest of a file, or of a directory tree."""

    hasher = sha256()
    if not fs.is_dir(path):
        hasher.update(fs.read_file(path))
        return f"sha256:{hasher.hexdigest()}"

    for child in _walk(fs, path):
        entry_type = detect_entry_type(fs, child)
        hasher.update(entry_type.value.encode())
        hasher.update(b"\0")
        hasher.update(child.relative_to(path).as_posix().encode())
        hasher.update(b"\0")
        if entry_type is EntryType.FILE:
            hasher.update(fs.read_file(child))
        elif entry_type is EntryType.SYMLINK:
            hasher.update(str(fs.readlink(child)).encode())
    return f"sha256:{hasher.hexdigest()}"


def _walk(fs: FileSystem, path: Path) -> list[Path]:
    entries: list[Path] = []
    for name in fs.read_dir(path):
        child = path / name
        entries.append(child)
        if detect_entry_type(fs, child) is EntryType.DIRECTORY:
            entries.extend(_walk(fs, child))
    return sorted(entries)
