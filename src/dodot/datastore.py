"""The only component allowed to mutate dodot's data directory.

Linking handlers use a two-hop layout::

    <home>/.vimrc -> <data>/packs/vim/symlinks/vimrc -> <dotfiles>/vim/vimrc

The intermediate link inside the data directory is dodot's witness of
ownership: a user-visible path is only ever touched when it resolves through
an intermediate. Next to each intermediate a hidden ``.<name>.link.toml`` records
the user link made from it and the directories created on its way, and shell
scripts carry a ``.<name>.placement`` marker read by the shell init snippet.
Provisioning handlers record completed runs in sentinel files holding
``<checksum>|<RFC3339 timestamp>``.
"""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

import tomli_w

from .errors import ConsistencyError, FileSystemError
from .filesystem import FileSystem, ensure_parent, link_destination, symlink_points_to
from .models import Status, StatusState
from .paths import LINK_RECORD_SUFFIX, PLACEMENT_SUFFIX, Paths, sidecar_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SentinelRecord:
    """Parsed sentinel contents."""

    checksum: str
    timestamp: datetime | None


@dataclass(frozen=True, slots=True)
class LinkRecord:
    """Where an intermediate was linked from, and what had to be created for it."""

    user_link: Path
    created_dirs: tuple[Path, ...] = ()


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 with seconds precision, UTC rendered as ``Z``."""

    text = moment.astimezone(timezone.utc).replace(microsecond=0).isoformat()
    return text.replace("+00:00", "Z")


def format_sentinel(checksum: str, moment: datetime) -> str:
    return f"{checksum}|{format_timestamp(moment)}\n"


def parse_sentinel(text: str) -> SentinelRecord:
    """Parse sentinel text, tolerating a missing or malformed timestamp."""

    body = text.strip()
    checksum, _, raw_timestamp = body.partition("|")
    timestamp: datetime | None = None
    if raw_timestamp:
        try:
            timestamp = datetime.fromisoformat(raw_timestamp.strip())
        except ValueError:
            timestamp = None
    return SentinelRecord(checksum=checksum, timestamp=timestamp)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DataStore:
    """Handler-typed operations over the data directory."""

    def __init__(self, fs: FileSystem, paths: Paths, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self.fs = fs
        self.paths = paths
        self._clock = clock

    # ------------------------------------------------------------------
    # Linking

    def intermediate_path(self, pack: str, handler: str, source: Path) -> Path:
        return self.paths.intermediate_path(pack, handler, source)

    def is_data_linked(self, pack: str, handler: str, source: Path) -> bool:
        return symlink_points_to(self.fs, self.intermediate_path(pack, handler, source), source)

    def link_data(self, pack: str, handler: str, source: Path) -> Path:
        """Ensure ``<data>/packs/<pack>/<handler>/<name>`` points at ``source``."""

        intermediate = self.intermediate_path(pack, handler, source)
        try:
            self.fs.mkdir(intermediate.parent, parents=True, exist_ok=True)
            if symlink_points_to(self.fs, intermediate, source):
                return intermediate
            if self.fs.lexists(intermediate):
                logger.debug("Replacing stale intermediate link '%s'", intermediate)
                self.fs.remove_all(intermediate)
            self.fs.symlink(source, intermediate)
        except OSError as exc:
            raise FileSystemError(
                f"Cannot link '{source}' into the data directory: {exc}",
                details={"pack": pack, "handler": handler, "path": str(intermediate)},
            ) from exc

        logger.debug("Linked '%s' -> '%s'", intermediate, source)
        return intermediate

    def is_user_linked(self, intermediate: Path, user_path: Path) -> bool:
        return symlink_points_to(self.fs, user_path, intermediate)

    def link_user(self, intermediate: Path, user_path: Path) -> bool:
        """Point ``user_path`` at ``intermediate``.

        Only an absent path or a link already resolving to ``intermediate`` is
        touched. Returns ``True`` when a link was created. The link and any
        parent directories created for it are recorded beside ``intermediate``.
        """

        try:
            if self.fs.lexists(user_path):
                if symlink_points_to(self.fs, user_path, intermediate):
                    return False
                raise self._conflict(user_path, intermediate)
            created = self._missing_parents(user_path)
            ensure_parent(self.fs, user_path)
            self.fs.symlink(intermediate, user_path)
        except OSError as exc:
            raise FileSystemError(
                f"Cannot create link '{user_path}': {exc}",
                details={"path": str(user_path), "intermediate": str(intermediate)},
            ) from exc

        logger.debug("Linked '%s' -> '%s'", user_path, intermediate)
        self._write_link_record(intermediate, user_path, created)
        return True

    def _missing_parents(self, path: Path) -> list[Path]:
        missing: list[Path] = []
        parent = path.parent
        while parent != parent.parent and not self.fs.lexists(parent):
            missing.append(parent)
            parent = parent.parent
        return missing

    def _write_link_record(self, intermediate: Path, user_path: Path, created: Iterable[Path]) -> None:
        created_dirs = list(created)
        previous = self.read_link_record(intermediate)
        if previous is not None and previous.user_link == user_path:
            created_dirs.extend(path for path in previous.created_dirs if path not in created_dirs)
        payload = {"user_link": str(user_path), "created_dirs": [str(path) for path in created_dirs]}
        self._write_atomic(sidecar_path(intermediate, LINK_RECORD_SUFFIX), tomli_w.dumps(payload).encode("utf-8"))

    def read_link_record(self, intermediate: Path) -> LinkRecord | None:
        """Return the user link recorded for ``intermediate``, if any."""

        path = sidecar_path(intermediate, LINK_RECORD_SUFFIX)
        try:
            data = tomllib.loads(self.fs.read_file(path).decode("utf-8"))
            return LinkRecord(
                user_link=Path(data["user_link"]),
                created_dirs=tuple(Path(item) for item in data.get("created_dirs", [])),
            )
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError, tomllib.TOMLDecodeError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable link record '%s': %s", path, exc)
            return None

    def prune_created_dirs(self, directories: Iterable[Path]) -> list[Path]:
        """Remove recorded directories that are now empty, deepest first.

        Home itself and anything that is not a real directory are left alone.
        """

        removed: list[Path] = []
        for directory in sorted(set(directories), key=lambda path: (len(path.parts), str(path)), reverse=True):
            if directory == self.paths.home or self.fs.is_symlink(directory) or not self.fs.is_dir(directory):
                continue
            try:
                if self.fs.read_dir(directory):
                    continue
                self.fs.remove(directory)
            except OSError as exc:
                logger.debug("Leaving '%s' in place: %s", directory, exc)
                continue
            logger.debug("Removed directory '%s'", directory)
            removed.append(directory)
        return removed

    def record_placement(self, pack: str, handler: str, source: Path, placement: str) -> bool:
        """Store the shell placement of a registered script; ``False`` if unchanged."""

        path = sidecar_path(self.intermediate_path(pack, handler, source), PLACEMENT_SUFFIX)
        try:
            if self.fs.read_file(path).decode("utf-8", errors="replace").strip() == placement:
                return False
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise FileSystemError(f"Cannot read '{path}': {exc}", details={"path": str(path)}) from exc
        self._write_atomic(path, f"{placement}\n".encode("utf-8"))
        return True

    def read_placement(self, pack: str, handler: str, source: Path) -> str | None:
        path = sidecar_path(self.intermediate_path(pack, handler, source), PLACEMENT_SUFFIX)
        try:
            return self.fs.read_file(path).decode("utf-8", errors="replace").strip() or None
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise FileSystemError(f"Cannot read '{path}': {exc}", details={"path": str(path)}) from exc

    def _conflict(self, user_path: Path, intermediate: Path) -> ConsistencyError:
        details = {"path": str(user_path), "intermediate": str(intermediate)}
        info = self.fs.lstat(user_path)
        if info.is_symlink:
            current = link_destination(self.fs, user_path)
            details["current_target"] = str(current)
            return ConsistencyError(
                f"'{user_path}' is a symlink to '{current}', which dodot does not own", details=details
            )
        if info.is_dir:
            return ConsistencyError(f"'{user_path}' is a directory; refusing to replace it", details=details)
        return ConsistencyError(f"'{user_path}' already exists; refusing to overwrite it", details=details)

    def unlink_data(self, pack: str, handler: str, source: Path) -> bool:
        return self.remove_intermediate(self.intermediate_path(pack, handler, source))

    def remove_intermediate(self, intermediate: Path) -> bool:
        """Remove an intermediate link and its sidecars; ``False`` when it was already gone."""

        removed = True
        for path in (
            intermediate,
            sidecar_path(intermediate, LINK_RECORD_SUFFIX),
            sidecar_path(intermediate, PLACEMENT_SUFFIX),
        ):
            try:
                self.fs.remove(path)
            except FileNotFoundError:
                if path == intermediate:
                    removed = False
            except OSError as exc:
                raise FileSystemError(f"Cannot remove '{path}': {exc}", details={"path": str(path)}) from exc
        return removed

    def unlink_user(self, user_path: Path, intermediate: Path) -> bool:
        """Remove ``user_path`` only if it is a symlink resolving to ``intermediate``."""

        try:
            if not symlink_points_to(self.fs, user_path, intermediate):
                return False
            self.fs.remove(user_path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileSystemError(f"Cannot remove '{user_path}': {exc}", details={"path": str(user_path)}) from exc
        return True

    def data_links(self, pack: str, handler: str) -> list[Path]:
        """Intermediate links currently recorded for ``pack``/``handler``."""

        directory = self.paths.pack_handler_dir(pack, handler)
        return [directory / name for name in self._list(directory) if self.fs.is_symlink(directory / name)]

    # ------------------------------------------------------------------
    # Sentinels

    def read_sentinel(self, pack: str, handler: str, sentinel: str) -> SentinelRecord | None:
        path = self.paths.sentinel_path(pack, handler, sentinel)
        try:
            raw = self.fs.read_file(path)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise FileSystemError(f"Cannot read sentinel '{path}': {exc}", details={"path": str(path)}) from exc
        return parse_sentinel(raw.decode("utf-8", errors="replace"))

    def has_sentinel(self, pack: str, handler: str, sentinel: str) -> bool:
        return self.fs.lexists(self.paths.sentinel_path(pack, handler, sentinel))

    def needs_run(self, pack: str, handler: str, sentinel: str, checksum: str) -> bool:
        record = self.read_sentinel(pack, handler, sentinel)
        return record is None or record.checksum != checksum

    def record_run(self, pack: str, handler: str, sentinel: str, checksum: str) -> Path:
        """Write ``checksum|now`` to the sentinel via a temporary file and rename."""

        path = self.paths.sentinel_path(pack, handler, sentinel)
        self._write_atomic(path, format_sentinel(checksum, self._clock()).encode("ascii"))
        logger.debug("Recorded run for %s/%s: %s", pack, handler, sentinel)
        return path

    def _write_atomic(self, path: Path, payload: bytes) -> None:
        temp_path = path.parent / f".{path.name}.dodot-tmp-{os.getpid()}"
        try:
            self.fs.mkdir(path.parent, parents=True, exist_ok=True)
            self.fs.write_file(temp_path, payload)
            self.fs.rename(temp_path, path)
        except OSError as exc:
            if self.fs.lexists(temp_path):
                self.fs.remove(temp_path)
            raise FileSystemError(f"Cannot write '{path}': {exc}", details={"path": str(path)}) from exc

    def sentinels(self, pack: str, handler: str) -> list[Path]:
        directory = self.paths.pack_handler_dir(pack, handler)
        return [directory / name for name in self._list(directory)]

    def remove_state(self, pack: str, handler: str) -> bool:
        """Remove ``<data>/packs/<pack>/<handler>/`` and nothing else."""

        directory = self.paths.pack_handler_dir(pack, handler)
        try:
            self.fs.remove_all(directory)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise FileSystemError(
                f"Cannot remove state directory '{directory}': {exc}",
                details={"pack": pack, "handler": handler, "path": str(directory)},
            ) from exc
        logger.debug("Removed state directory '%s'", directory)
        return True

    def prune_pack(self, pack: str) -> bool:
        """Remove ``<data>/packs/<pack>/`` once no handler state is left in it."""

        directory = self.paths.pack_dir(pack)
        if not self.fs.is_dir(directory) or self._list(directory):
            return False
        try:
            self.fs.remove(directory)
        except OSError as exc:
            raise FileSystemError(f"Cannot remove '{directory}': {exc}", details={"path": str(directory)}) from exc
        return True

    def _list(self, directory: Path) -> list[str]:
        try:
            return self.fs.read_dir(directory)
        except (FileNotFoundError, NotADirectoryError):
            return []
        except OSError as exc:
            raise FileSystemError(f"Cannot read '{directory}': {exc}", details={"path": str(directory)}) from exc

    # ------------------------------------------------------------------
    # Status queries

    def _data_link_status(self, pack: str, handler: str, source: Path) -> Status | None:
        intermediate = self.intermediate_path(pack, handler, source)
        if not self.fs.lexists(intermediate):
            return Status(StatusState.MISSING, "not linked")
        if not self.fs.is_symlink(intermediate):
            return Status(
                StatusState.ERROR, f"'{intermediate}' is not a symlink", error_type="not-a-symlink"
            )
        current = link_destination(self.fs, intermediate)
        if current != Path(os.path.normpath(source)):
            return Status(
                StatusState.ERROR, f"intermediate link points to '{current}'", error_type="wrong-target"
            )
        if not self.fs.lexists(source):
            return Status(StatusState.ERROR, f"source '{source}' is missing", error_type="missing-source")
        return None

    def symlink_status(self, pack: str, source: Path, user_path: Path, *, handler: str = "symlink") -> Status:
        problem = self._data_link_status(pack, handler, source)
        if problem is not None:
            return problem
        intermediate = self.intermediate_path(pack, handler, source)
        if not self.fs.lexists(user_path):
            return Status(StatusState.PENDING, f"'{user_path}' not linked yet")
        if symlink_points_to(self.fs, user_path, intermediate):
            return Status(StatusState.READY, f"linked at '{user_path}'")
        return Status(StatusState.ERROR, f"'{user_path}' is owned by something else", error_type="conflict")

    def path_status(self, pack: str, source: Path, *, handler: str = "path") -> Status:
        problem = self._data_link_status(pack, handler, source)
        return problem or Status(StatusState.READY, "added to PATH")

    def shell_status(
        self, pack: str, source: Path, *, handler: str = "shell", placement: str | None = None
    ) -> Status:
        problem = self._data_link_status(pack, handler, source)
        if problem is not None:
            return problem
        if placement is not None and self.read_placement(pack, handler, source) != placement:
            return Status(StatusState.PENDING, f"placement '{placement}' not recorded yet")
        return Status(StatusState.READY, f"sourced by shell init ({placement or 'environment'})")

    def _sentinel_status(self, pack: str, handler: str, sentinel: str, checksum: str) -> Status:
        record = self.read_sentinel(pack, handler, sentinel)
        if record is None:
            return Status(StatusState.MISSING, "never run")
        if record.checksum != checksum:
            return Status(StatusState.PENDING, "input changed", timestamp=record.timestamp)
        return Status(StatusState.READY, "provisioned", timestamp=record.timestamp)

    def provision_status(self, pack: str, sentinel: str, checksum: str, *, handler: str = "install") -> Status:
        return self._sentinel_status(pack, handler, sentinel, checksum)

    def homebrew_status(self, pack: str, sentinel: str, checksum: str, *, handler: str = "homebrew") -> Status:
        return self._sentinel_status(pack, handler, sentinel, checksum)
