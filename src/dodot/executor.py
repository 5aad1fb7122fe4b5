"""Carrying out operations against the datastore."""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Sequence

from .datastore import DataStore
from .errors import CommandError, DodotError, FileSystemError, InternalError
from .models import Action, ActionResult, Operation, OperationResult, OperationType, StatusState

logger = logging.getLogger(__name__)

_LINK_OPERATIONS = frozenset({OperationType.LINK_DATA, OperationType.APPEND_TO_PATH, OperationType.REGISTER_SHELL})


class CommandRunner:
    """Runs provisioning commands with an optional deadline."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = timeout

    def run(self, command: Sequence[str], *, cwd: Path | None = None, env: Mapping[str, str] | None = None) -> str:
        logger.info("Running %s", " ".join(command))
        try:
            completed = subprocess.run(
                list(command),
                cwd=cwd,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            output = exc.output.decode(errors="replace") if isinstance(exc.output, bytes) else exc.output or ""
            raise CommandError(
                f"'{command[0]}' timed out after {self.timeout}s",
                details={"command": list(command), "timeout": self.timeout, "output": output},
            ) from exc
        except OSError as exc:
            raise CommandError(
                f"Cannot run '{command[0]}': {exc}", details={"command": list(command)}
            ) from exc

        if completed.returncode != 0:
            raise CommandError(
                f"'{' '.join(command)}' exited with status {completed.returncode}",
                details={"command": list(command), "returncode": completed.returncode, "output": completed.stdout},
            )
        return completed.stdout


class PathLocks:
    """One lock per user-visible path."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Path, threading.Lock] = {}

    @contextmanager
    def hold(self, path: Path) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(path, threading.Lock())
        with lock:
            yield


class Executor:
    """Runs actions one by one; a failing action never stops the batch."""

    def __init__(
        self,
        datastore: DataStore,
        *,
        runner: CommandRunner | None = None,
        dry_run: bool = False,
        force: bool = False,
        enable_home_symlinks: bool = True,
        cancel: threading.Event | None = None,
        locks: PathLocks | None = None,
    ) -> None:
        self.datastore = datastore
        self.runner = runner or CommandRunner()
        self.dry_run = dry_run
        self.force = force
        self.enable_home_symlinks = enable_home_symlinks
        self.cancel = cancel or threading.Event()
        self.locks = locks or PathLocks()

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def execute(self, actions: Sequence[Action]) -> list[ActionResult]:
        results: list[ActionResult] = []
        for action in actions:
            if self.cancelled:
                logger.info("Cancelled; %d action(s) not started", len(actions) - len(results))
                break
            results.append(self.execute_action(action))
        return results

    def execute_action(self, action: Action) -> ActionResult:
        if self.dry_run:
            return ActionResult(action=action, state=StatusState.READY, message=f"would {action.description}")

        operation_results: list[OperationResult] = []
        with self.locks.hold(action.target):
            for operation in action.operations:
                result = self._run_operation(operation)
                operation_results.append(result)
                if result.state is StatusState.ERROR:
                    break
        return _summarise(action, operation_results)

    def _run_operation(self, operation: Operation) -> OperationResult:
        try:
            state, message = self._dispatch(operation)
        except InternalError:
            raise
        except DodotError as exc:
            logger.warning("%s failed for '%s': %s", operation.type.value, operation.source, exc.message)
            return OperationResult(operation=operation, state=StatusState.ERROR, message=exc.message, error=exc)
        except OSError as exc:
            error = FileSystemError(str(exc), details={"path": str(operation.destination)})
            return OperationResult(operation=operation, state=StatusState.ERROR, message=error.message, error=error)
        return OperationResult(operation=operation, state=state, message=message)

    def _dispatch(self, operation: Operation) -> tuple[StatusState, str]:
        datastore = self.datastore

        if operation.type in _LINK_OPERATIONS:
            changed = not datastore.is_data_linked(operation.pack, operation.handler, operation.source)
            if changed:
                datastore.link_data(operation.pack, operation.handler, operation.source)
            if operation.placement is not None:
                changed = datastore.record_placement(
                    operation.pack, operation.handler, operation.source, operation.placement
                ) or changed
            if not changed:
                return StatusState.SKIPPED, "already linked"
            return StatusState.READY, f"linked {operation.source.name}"

        if operation.type is OperationType.CREATE_USER_LINK:
            if not self.enable_home_symlinks and datastore.paths.is_in_home(operation.destination):
                return StatusState.SKIPPED, f"home symlinks disabled; not linking '{operation.destination}'"
            if datastore.is_user_linked(operation.source, operation.destination):
                return StatusState.SKIPPED, "already linked"
            datastore.link_user(operation.source, operation.destination)
            return StatusState.READY, f"linked '{operation.destination}'"

        if operation.type is OperationType.RUN_ONCE:
            if operation.sentinel is None or operation.checksum is None:
                raise InternalError(
                    f"run-once operation for '{operation.source}' has no sentinel",
                    details={"pack": operation.pack, "handler": operation.handler},
                )
            if not self.force and not datastore.needs_run(
                operation.pack, operation.handler, operation.sentinel, operation.checksum
            ):
                return StatusState.SKIPPED, "already provisioned"
            self.runner.run(operation.command, cwd=operation.cwd, env=self._command_env(operation))
            datastore.record_run(operation.pack, operation.handler, operation.sentinel, operation.checksum)
            return StatusState.READY, f"ran {operation.source.name}"

        raise InternalError(f"Unsupported operation '{operation.type.value}'")

    def _command_env(self, operation: Operation) -> dict[str, str]:
        paths = self.datastore.paths
        env = dict(os.environ)
        env.update(
            {
                "DODOT_PACK": operation.pack,
                "DOTFILES_ROOT": str(paths.dotfiles_root),
                "DODOT_DATA_DIR": str(paths.data_dir),
            }
        )
        return env


def _summarise(action: Action, results: list[OperationResult]) -> ActionResult:
    operations = tuple(results)
    for result in results:
        if result.state is StatusState.ERROR:
            return ActionResult(
                action=action, state=StatusState.ERROR, message=result.message, error=result.error, operations=operations
            )
    if results and all(result.state is StatusState.SKIPPED for result in results):
        return ActionResult(action=action, state=StatusState.SKIPPED, message=results[-1].message, operations=operations)
    skipped = [result.message for result in results if result.state is StatusState.SKIPPED]
    message = action.description if not skipped else f"{action.description} ({'; '.join(skipped)})"
    return ActionResult(action=action, state=StatusState.READY, message=message, operations=operations)
