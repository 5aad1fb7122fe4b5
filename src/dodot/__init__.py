"""Core package for the dodot project."""

from .cli import app, run
from .context import ExecutionContext, HandlerResult, PackExecutionResult
from .datastore import DataStore
from .errors import (
    ActionGenerationError,
    CommandError,
    ConfigurationError,
    ConsistencyError,
    DodotError,
    ErrorKind,
    FileSystemError,
    InternalError,
    PackNotFoundError,
    PipelineCancelled,
    PipelineFailed,
    RuleError,
)
from .filesystem import FileSystem, MemoryFileSystem, OSFileSystem
from .models import CommandIntent, ExecutionStatus, RunMode, Status, StatusState
from .paths import Paths, RootSource
from .pipeline import Pipeline, PipelineOptions
from .registry import HandlerRegistry, default_registry

__all__ = [
    "ActionGenerationError",
    "CommandError",
    "CommandIntent",
    "ConfigurationError",
    "ConsistencyError",
    "DataStore",
    "DodotError",
    "ErrorKind",
    "ExecutionContext",
    "ExecutionStatus",
    "FileSystem",
    "FileSystemError",
    "HandlerRegistry",
    "HandlerResult",
    "InternalError",
    "MemoryFileSystem",
    "OSFileSystem",
    "PackExecutionResult",
    "PackNotFoundError",
    "Paths",
    "Pipeline",
    "PipelineCancelled",
    "PipelineFailed",
    "PipelineOptions",
    "RootSource",
    "RuleError",
    "RunMode",
    "Status",
    "StatusState",
    "app",
    "default_registry",
    "run",
]
