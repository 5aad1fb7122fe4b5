"""Exception hierarchy for dodot."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

if TYPE_CHECKING:  # pragma: no cover
    from .context import ExecutionContext


class ErrorKind(str, Enum):
    """Closed set of failure categories."""

    CONFIGURATION = "configuration"
    NOT_FOUND = "not_found"
    RULE_EVALUATION = "rule_evaluation"
    ACTION_GENERATION = "action_generation"
    FS = "fs"
    EXECUTION = "execution"
    CONSISTENCY = "consistency"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class DodotError(RuntimeError):
    """Base error carrying a kind and structured details."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = dict(details or {})

    def with_detail(self, key: str, value: Any) -> "DodotError":
        self.details[key] = value
        return self


class ConfigurationError(DodotError):
    """Raised for a bad dotfiles root or an unreadable pack configuration."""

    kind = ErrorKind.CONFIGURATION


class PackNotFoundError(DodotError):
    """Raised when requested packs do not exist under the dotfiles root."""

    kind = ErrorKind.NOT_FOUND


class RuleError(DodotError):
    """Raised for malformed patterns or unknown handler names."""

    kind = ErrorKind.RULE_EVALUATION


class ActionGenerationError(DodotError):
    """Raised when a handler refuses a match."""

    kind = ErrorKind.ACTION_GENERATION


class FileSystemError(DodotError):
    """Raised when an underlying filesystem operation fails."""

    kind = ErrorKind.FS


class CommandError(DodotError):
    """Raised when an external command exits non-zero or times out."""

    kind = ErrorKind.EXECUTION


class ConsistencyError(DodotError):
    """Raised instead of overwriting state dodot does not own."""

    kind = ErrorKind.CONSISTENCY


class InternalError(DodotError):
    """Raised on invariant violations."""

    kind = ErrorKind.INTERNAL


class PipelineFailed(DodotError):
    """Raised after a run in which at least one action failed.

    The populated context is attached so partial results are never lost.
    """

    kind = ErrorKind.EXECUTION

    def __init__(
        self,
        message: str,
        *,
        context: "ExecutionContext",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.context = context


class PipelineCancelled(DodotError):
    """Raised when a run stopped because cancellation was requested."""

    kind = ErrorKind.CANCELLED

    def __init__(
        self,
        message: str,
        *,
        context: "ExecutionContext",
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.context = context
