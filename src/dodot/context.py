"""Result accumulation for a pipeline run."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping

from .errors import DodotError, InternalError
from .models import ActionResult, ClearedItem, ExecutionStatus, StatusState


def aggregate_status(total: int, completed: int, failed: int, skipped: int) -> ExecutionStatus:
    """Fold handler counts into one status.

    All ready is success (including the empty case), all failed is error,
    all skipped is skipped, and any failure among other outcomes is partial.
    """

    if completed == total:
        return ExecutionStatus.SUCCESS
    if failed == total:
        return ExecutionStatus.ERROR
    if skipped == total:
        return ExecutionStatus.SKIPPED
    if failed:
        return ExecutionStatus.PARTIAL
    return ExecutionStatus.SUCCESS


@dataclass
class HandlerResult:
    """Outcome of one handler for one pack."""

    handler: str
    files: list[str]
    status: StatusState
    error: DodotError | None = None
    message: str = ""
    action_results: list[ActionResult] = field(default_factory=list)
    cleared_items: list[ClearedItem] = field(default_factory=list)

    @property
    def failed(self) -> bool:
        return self.status is StatusState.ERROR

    @classmethod
    def from_actions(cls, handler: str, results: Iterable[ActionResult]) -> "HandlerResult":
        results = list(results)
        files = [result.action.name for result in results]
        errors = [result for result in results if result.failed]
        if errors:
            first = errors[0]
            message = first.message if len(errors) == 1 else f"{len(errors)} of {len(results)} actions failed"
            return cls(handler, files, StatusState.ERROR, error=first.error, message=message, action_results=results)
        if results and all(result.state is StatusState.SKIPPED for result in results):
            return cls(handler, files, StatusState.SKIPPED, message="nothing to do", action_results=results)
        return cls(handler, files, StatusState.READY, message=f"{len(results)} action(s)", action_results=results)

    @classmethod
    def from_error(cls, handler: str, error: DodotError, files: Iterable[str] = ()) -> "HandlerResult":
        return cls(handler, list(files), StatusState.ERROR, error=error, message=error.message)

    @classmethod
    def from_cleared(cls, handler: str, items: Iterable[ClearedItem]) -> "HandlerResult":
        items = list(items)
        failures = [item for item in items if not item.success]
        status = StatusState.ERROR if failures else StatusState.READY
        message = (failures[0].error or "") if failures else f"cleared {len(items)} item(s)"
        return cls(
            handler,
            [item.path.name for item in items],
            status,
            message=message,
            cleared_items=items,
        )


@dataclass
class PackExecutionResult:
    """Handler results of one pack with their counts kept in step."""

    pack: str
    handler_results: list[HandlerResult] = field(default_factory=list)
    total_handlers: int = 0
    completed_handlers: int = 0
    failed_handlers: int = 0
    skipped_handlers: int = 0
    status: ExecutionStatus = ExecutionStatus.PENDING

    def add(self, result: HandlerResult) -> None:
        self.handler_results.append(result)
        self.total_handlers += 1
        if result.status is StatusState.READY:
            self.completed_handlers += 1
        elif result.status is StatusState.ERROR:
            self.failed_handlers += 1
        elif result.status is StatusState.SKIPPED:
            self.skipped_handlers += 1
        self.status = aggregate_status(
            self.total_handlers, self.completed_handlers, self.failed_handlers, self.skipped_handlers
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionContext:
    """Accumulates per-pack results; frozen once :meth:`complete` runs."""

    def __init__(self, command: str, *, dry_run: bool = False, clock: Callable[[], datetime] = _utcnow) -> None:
        self.command = command
        self.dry_run = dry_run
        self._clock = clock
        self.started_at = clock()
        self.finished_at: datetime | None = None
        self.status = ExecutionStatus.PENDING
        self._packs: dict[str, PackExecutionResult] = {}
        self._lock = threading.Lock()

    @property
    def completed(self) -> bool:
        return self.finished_at is not None

    @property
    def pack_results(self) -> Mapping[str, PackExecutionResult]:
        return MappingProxyType(self._packs)

    def add_pack(self, pack: str) -> PackExecutionResult:
        with self._lock:
            self._ensure_open()
            return self._packs.setdefault(pack, PackExecutionResult(pack))

    def add_handler_result(self, pack: str, result: HandlerResult) -> None:
        with self._lock:
            self._ensure_open()
            self._packs.setdefault(pack, PackExecutionResult(pack)).add(result)

    def handler_results(self) -> Iterator[tuple[str, HandlerResult]]:
        for name, pack_result in self._packs.items():
            for result in pack_result.handler_results:
                yield name, result

    def failures(self) -> list[tuple[str, HandlerResult]]:
        return [(pack, result) for pack, result in self.handler_results() if result.failed]

    def totals(self) -> tuple[int, int, int, int]:
        """``(total, completed, failed, skipped)`` over every pack."""

        packs = list(self._packs.values())
        return (
            sum(pack.total_handlers for pack in packs),
            sum(pack.completed_handlers for pack in packs),
            sum(pack.failed_handlers for pack in packs),
            sum(pack.skipped_handlers for pack in packs),
        )

    def complete(self, status: ExecutionStatus | None = None) -> None:
        with self._lock:
            self._ensure_open()
            self.status = status if status is not None else aggregate_status(*self.totals())
            self.finished_at = self._clock()

    def _ensure_open(self) -> None:
        if self.finished_at is not None:
            raise InternalError("Execution context is already complete", details={"command": self.command})
