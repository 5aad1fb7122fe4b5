"""Shared models and enums for dodot."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from .config import PackConfig
    from .errors import DodotError


class EntryType(str, Enum):
    """Kinds of filesystem nodes."""

    FILE = "file"
    DIRECTORY = "directory"
    SYMLINK = "symlink"


class RunMode(str, Enum):
    """How often a handler's effects are applied."""

    LINKING = "linking"
    PROVISIONING = "provisioning"


class CommandIntent(str, Enum):
    """High-level verb selecting handler category and direction."""

    LINK = "link"
    PROVISION = "provision"
    ALL = "all"
    UNLINK = "unlink"
    DEPROVISION = "deprovision"

    @property
    def run_modes(self) -> frozenset[RunMode]:
        if self in (CommandIntent.LINK, CommandIntent.UNLINK):
            return frozenset({RunMode.LINKING})
        if self in (CommandIntent.PROVISION, CommandIntent.DEPROVISION):
            return frozenset({RunMode.PROVISIONING})
        return frozenset({RunMode.LINKING, RunMode.PROVISIONING})

    @property
    def is_inverse(self) -> bool:
        return self in (CommandIntent.UNLINK, CommandIntent.DEPROVISION)


class StatusState(str, Enum):
    """States reported for deployments, actions and handler results."""

    MISSING = "missing"
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"
    SKIPPED = "skipped"


class ExecutionStatus(str, Enum):
    """Aggregated status of a pack or a whole run."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"
    SKIPPED = "skipped"
    PENDING = "pending"
    CANCELLED = "cancelled"


class OperationType(str, Enum):
    """Effects the executor knows how to carry out."""

    LINK_DATA = "link_data"
    CREATE_USER_LINK = "create_user_link"
    APPEND_TO_PATH = "append_to_path"
    REGISTER_SHELL = "register_shell"
    RUN_ONCE = "run_once"


@dataclass(frozen=True, slots=True)
class FileInfo:
    """Subset of stat information used by dodot."""

    kind: EntryType
    size: int = 0
    mode: int = 0
    mtime_ns: int = 0

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryType.DIRECTORY

    @property
    def is_symlink(self) -> bool:
        return self.kind is EntryType.SYMLINK


@dataclass(frozen=True, slots=True)
class Pack:
    """A directory of related configuration files under the dotfiles root."""

    name: str
    path: Path
    config: "PackConfig | None" = None


@dataclass(frozen=True, slots=True)
class Match:
    """One pack entry selected by one rule."""

    pack: str
    source: Path
    relative_path: str
    handler: str
    options: Mapping[str, Any] = field(default_factory=dict)
    is_directory: bool = False


@dataclass(frozen=True, slots=True)
class Operation:
    """Lowest-level effect understood by the executor."""

    type: OperationType
    pack: str
    handler: str
    source: Path
    destination: Path
    sentinel: str | None = None
    checksum: str | None = None
    command: tuple[str, ...] = ()
    cwd: Path | None = None
    placement: str | None = None


@dataclass(frozen=True, slots=True)
class Action:
    """Handler-specific instruction derived from a match."""

    pack: str
    handler: str
    source: Path
    target: Path
    description: str
    operations: tuple[Operation, ...] = ()
    checksum: str | None = None
    sentinel: str | None = None
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def name(self) -> str:
        return self.source.name


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a single operation."""

    operation: Operation
    state: StatusState
    message: str
    error: "DodotError | None" = None


@dataclass(frozen=True, slots=True)
class ActionResult:
    """Outcome of an action, aggregated from its operations."""

    action: Action
    state: StatusState
    message: str
    error: "DodotError | None" = None
    operations: tuple[OperationResult, ...] = ()

    @property
    def failed(self) -> bool:
        return self.state is StatusState.ERROR


@dataclass(frozen=True, slots=True)
class Status:
    """Deployment status of one item as seen by the datastore."""

    state: StatusState
    message: str
    timestamp: datetime | None = None
    error_type: str | None = None


@dataclass(frozen=True, slots=True)
class ClearedItem:
    """Something removed (or that would be removed) while clearing a handler."""

    type: str
    path: Path
    success: bool = True
    error: str | None = None
