from __future__ import annotations

from pathlib import Path

import pytest

from dodot.context import ExecutionContext, HandlerResult, PackExecutionResult, aggregate_status
from dodot.errors import ConsistencyError, InternalError
from dodot.models import Action, ActionResult, ClearedItem, ExecutionStatus, StatusState


def _result(handler: str, state: StatusState) -> HandlerResult:
    return HandlerResult(handler=handler, files=[handler], status=state)


def _action_result(name: str, state: StatusState) -> ActionResult:
    action = Action(pack="p", handler="symlink", source=Path("/d/p") / name, target=Path("/h") / name, description=name)
    error = ConsistencyError("conflict") if state is StatusState.ERROR else None
    return ActionResult(action=action, state=state, message=name, error=error)


@pytest.mark.parametrize(
    ("states", "expected"),
    [
        ([], ExecutionStatus.SUCCESS),
        ([StatusState.READY, StatusState.READY], ExecutionStatus.SUCCESS),
        ([StatusState.ERROR, StatusState.ERROR], ExecutionStatus.ERROR),
        ([StatusState.SKIPPED, StatusState.SKIPPED], ExecutionStatus.SKIPPED),
        ([StatusState.READY, StatusState.ERROR], ExecutionStatus.PARTIAL),
        ([StatusState.SKIPPED, StatusState.ERROR], ExecutionStatus.PARTIAL),
        ([StatusState.READY, StatusState.SKIPPED], ExecutionStatus.SUCCESS),
    ],
)
def test_pack_status_rules(states: list[StatusState], expected: ExecutionStatus) -> None:
    pack = PackExecutionResult("p")
    for index, state in enumerate(states):
        pack.add(_result(f"h{index}", state))

    assert pack.total_handlers == len(states)
    assert pack.completed_handlers == states.count(StatusState.READY)
    assert pack.failed_handlers == states.count(StatusState.ERROR)
    assert pack.skipped_handlers == states.count(StatusState.SKIPPED)
    assert aggregate_status(
        pack.total_handlers, pack.completed_handlers, pack.failed_handlers, pack.skipped_handlers
    ) is expected
    if states:
        assert pack.status is expected


def test_handler_result_from_actions() -> None:
    ready = HandlerResult.from_actions("symlink", [_action_result("a", StatusState.READY)])
    skipped = HandlerResult.from_actions("symlink", [_action_result("a", StatusState.SKIPPED)])
    failed = HandlerResult.from_actions(
        "symlink", [_action_result("a", StatusState.READY), _action_result("b", StatusState.ERROR)]
    )

    assert ready.status is StatusState.READY
    assert skipped.status is StatusState.SKIPPED
    assert failed.status is StatusState.ERROR
    assert failed.files == ["a", "b"]
    assert isinstance(failed.error, ConsistencyError)


def test_handler_result_from_cleared() -> None:
    ok = HandlerResult.from_cleared("symlink", [ClearedItem(type="intermediate", path=Path("/data/x"))])
    broken = HandlerResult.from_cleared(
        "symlink", [ClearedItem(type="intermediate", path=Path("/data/x"), success=False, error="busy")]
    )

    assert ok.status is StatusState.READY
    assert ok.files == ["x"]
    assert broken.status is StatusState.ERROR
    assert broken.message == "busy"


def test_context_aggregates_and_freezes() -> None:
    context = ExecutionContext("link")
    context.add_handler_result("a", _result("symlink", StatusState.READY))
    context.add_handler_result("b", _result("symlink", StatusState.ERROR))
    context.add_pack("c")

    context.complete()

    assert context.completed
    assert context.finished_at is not None and context.finished_at >= context.started_at
    assert context.status is ExecutionStatus.PARTIAL
    assert context.totals() == (2, 1, 1, 0)
    assert [pack for pack, _ in context.failures()] == ["b"]
    assert context.pack_results["a"].status is ExecutionStatus.SUCCESS
    assert context.pack_results["b"].status is ExecutionStatus.ERROR

    with pytest.raises(InternalError):
        context.add_handler_result("a", _result("path", StatusState.READY))
    with pytest.raises(InternalError):
        context.complete()


def test_context_explicit_terminal_status() -> None:
    context = ExecutionContext("provision", dry_run=True)

    context.complete(ExecutionStatus.CANCELLED)

    assert context.status is ExecutionStatus.CANCELLED
    assert context.dry_run
