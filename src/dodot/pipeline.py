"""The deployment pipeline: packs to matches to actions to results."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

from .context import ExecutionContext, HandlerResult
from .datastore import DataStore
from .errors import (
    ActionGenerationError,
    ConfigurationError,
    DodotError,
    PipelineCancelled,
    PipelineFailed,
)
from .executor import CommandRunner, Executor
from .filesystem import FileSystem, OSFileSystem
from .handlers import Handler, HandlerContext
from .models import Action, ActionResult, CommandIntent, ExecutionStatus, Match, Pack, RunMode, Status, StatusState
from .packs import select_packs
from .paths import Paths
from .registry import HandlerRegistry, default_registry
from .rules import build_rules, get_matches

logger = logging.getLogger(__name__)


@dataclass
class PipelineOptions:
    """Inputs of one pipeline run."""

    dotfiles_root: Path | str | None = None
    packs: Sequence[str] = ()
    dry_run: bool = False
    intent: CommandIntent = CommandIntent.ALL
    force: bool = False
    enable_home_symlinks: bool = True
    workers: int = 1
    command_timeout: float | None = None
    cancel: threading.Event | None = None
    data_dir: Path | None = None
    home: Path | None = None
    cwd: Path | None = None
    environ: Mapping[str, str] | None = None


@dataclass
class HandlerPlan:
    handler: Handler
    actions: list[Action] = field(default_factory=list)
    # Indices of provisioning actions whose sentinel already matches.
    fresh: set[int] = field(default_factory=set)
    error: DodotError | None = None
    files: list[str] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.handler.name


@dataclass
class PackPlan:
    pack: Pack
    handlers: list[HandlerPlan] = field(default_factory=list)

    def targets(self, handler: str) -> list[Path]:
        for plan in self.handlers:
            if plan.name == handler:
                return [action.target for action in plan.actions]
        return []


@dataclass(frozen=True, slots=True)
class StatusEntry:
    """Status of one planned action, or of a handler that refused its matches."""

    pack: str
    handler: str
    name: str
    target: Path | None
    status: Status


class Pipeline:
    """Composes discovery, rules, handlers and the executor."""

    def __init__(
        self,
        fs: FileSystem | None = None,
        registry: HandlerRegistry | None = None,
        runner: CommandRunner | None = None,
    ) -> None:
        self.fs = fs or OSFileSystem()
        self.registry = registry or default_registry()
        self.runner = runner

    def resolve_paths(self, options: PipelineOptions) -> Paths:
        paths = Paths.resolve(
            options.dotfiles_root,
            environ=options.environ,
            cwd=options.cwd,
            home=options.home,
            data_dir=options.data_dir,
        )
        if not self.fs.is_dir(paths.dotfiles_root):
            raise ConfigurationError(
                f"Dotfiles root '{paths.dotfiles_root}' is not a readable directory",
                details={"dotfiles_root": str(paths.dotfiles_root), "root_source": paths.root_source.value},
            )
        return paths

    def run(self, options: PipelineOptions) -> ExecutionContext:
        """Run ``options.intent`` over the selected packs.

        Raises :class:`PipelineFailed` (with the populated context) when any
        handler failed and :class:`PipelineCancelled` when cancelled.
        """

        paths = self.resolve_paths(options)
        packs = select_packs(self.fs, paths, options.packs)
        datastore = DataStore(self.fs, paths)
        hctx = HandlerContext(paths=paths, fs=self.fs, datastore=datastore)
        intent = options.intent

        plans = [self._plan_pack(pack, hctx, intent=intent, force=options.force) for pack in packs]

        cancel = options.cancel or threading.Event()
        context = ExecutionContext(intent.value, dry_run=options.dry_run)
        executor = Executor(
            datastore,
            runner=self.runner or CommandRunner(options.command_timeout),
            dry_run=options.dry_run,
            force=options.force,
            enable_home_symlinks=options.enable_home_symlinks,
            cancel=cancel,
        )

        def work(plan: PackPlan) -> None:
            if cancel.is_set():
                return
            logger.info("%s pack '%s'", intent.value.capitalize(), plan.pack.name)
            if intent.is_inverse:
                self._clear_pack(plan, hctx, context, dry_run=options.dry_run, cancel=cancel)
            else:
                self._deploy_pack(plan, context, executor, dry_run=options.dry_run)

        if options.workers > 1 and len(plans) > 1:
            with ThreadPoolExecutor(max_workers=options.workers, thread_name_prefix="dodot") as pool:
                list(pool.map(work, plans))
        else:
            for plan in plans:
                work(plan)

        if cancel.is_set():
            context.complete(ExecutionStatus.CANCELLED)
            raise PipelineCancelled("Cancelled before all packs were processed", context=context)

        context.complete()
        failures = context.failures()
        if failures:
            raise PipelineFailed(
                f"{len(failures)} handler(s) failed",
                context=context,
                details={"failed": [f"{pack}/{result.handler}" for pack, result in failures]},
            )
        return context

    def status(self, options: PipelineOptions) -> list[StatusEntry]:
        """Deployment status of every action the selected packs would produce."""

        paths = self.resolve_paths(options)
        datastore = DataStore(self.fs, paths)
        hctx = HandlerContext(paths=paths, fs=self.fs, datastore=datastore)

        entries: list[StatusEntry] = []
        for pack in select_packs(self.fs, paths, options.packs):
            plan = self._plan_pack(pack, hctx, intent=CommandIntent.ALL, force=True)
            for handler_plan in plan.handlers:
                if handler_plan.error is not None:
                    entries.append(
                        StatusEntry(
                            pack=pack.name,
                            handler=handler_plan.name,
                            name=", ".join(handler_plan.files),
                            target=None,
                            status=Status(
                                StatusState.ERROR, handler_plan.error.message, error_type=handler_plan.error.kind.value
                            ),
                        )
                    )
                    continue
                for action in handler_plan.actions:
                    entries.append(
                        StatusEntry(
                            pack=pack.name,
                            handler=handler_plan.name,
                            name=action.name,
                            target=action.target,
                            status=handler_plan.handler.status(action, datastore),
                        )
                    )
        return entries

    # ------------------------------------------------------------------
    # Planning

    def _plan_pack(self, pack: Pack, hctx: HandlerContext, *, intent: CommandIntent, force: bool) -> PackPlan:
        modes = intent.run_modes
        rules = build_rules(pack.config, known_handlers=self.registry.names())
        matches = [
            match for match in get_matches(self.fs, pack, rules) if self.registry.run_mode(match.handler) in modes
        ]

        grouped: dict[str, list[Match]] = {}
        for match in matches:
            grouped.setdefault(match.handler, []).append(match)

        plan = PackPlan(pack=pack)
        for name in self.registry.names(modes):
            handler = self.registry.get(name)
            handler_plan = HandlerPlan(handler=handler, files=[match.relative_path for match in grouped.get(name, [])])
            plan.handlers.append(handler_plan)
            if name not in grouped:
                continue

            try:
                actions = handler.to_actions(grouped[name], hctx)
            except ActionGenerationError as exc:
                if not intent.is_inverse:
                    logger.warning("%s", exc.message)
                handler_plan.error = exc
                continue

            handler_plan.actions = [action for action in actions if self.registry.run_mode(action.handler) in modes]

            if handler.run_mode is RunMode.PROVISIONING and not force and not intent.is_inverse:
                try:
                    handler_plan.fresh = {
                        index
                        for index, action in enumerate(handler_plan.actions)
                        if not hctx.datastore.needs_run(pack.name, name, action.sentinel or "", action.checksum or "")
                    }
                except DodotError as exc:
                    handler_plan.error = exc
        return plan

    # ------------------------------------------------------------------
    # Forward and inverse execution

    def _deploy_pack(self, plan: PackPlan, context: ExecutionContext, executor: Executor, *, dry_run: bool) -> None:
        pack = plan.pack.name
        context.add_pack(pack)

        for handler_plan in plan.handlers:
            if executor.cancelled:
                return
            if handler_plan.error is not None:
                context.add_handler_result(
                    pack, HandlerResult.from_error(handler_plan.name, handler_plan.error, handler_plan.files)
                )
                continue
            if not handler_plan.actions:
                continue

            pending = [action for index, action in enumerate(handler_plan.actions) if index not in handler_plan.fresh]
            executed = iter(executor.execute(pending))
            results: list[ActionResult] = []
            for index, action in enumerate(handler_plan.actions):
                if index in handler_plan.fresh:
                    results.append(ActionResult(action=action, state=StatusState.SKIPPED, message="already provisioned"))
                    continue
                result = next(executed, None)
                if result is None:
                    break
                results.append(result)

            if not results:
                continue
            if dry_run:
                context.add_handler_result(
                    pack,
                    HandlerResult(
                        handler_plan.name,
                        [result.action.name for result in results],
                        StatusState.READY,
                        message="planned",
                        action_results=results,
                    ),
                )
            else:
                context.add_handler_result(pack, HandlerResult.from_actions(handler_plan.name, results))

    def _clear_pack(
        self,
        plan: PackPlan,
        hctx: HandlerContext,
        context: ExecutionContext,
        *,
        dry_run: bool,
        cancel: threading.Event,
    ) -> None:
        pack = plan.pack
        context.add_pack(pack.name)

        for handler_plan in plan.handlers:
            if cancel.is_set():
                return
            handler = handler_plan.handler
            if not handler.has_state(pack, hctx):
                continue
            items = handler.clear(pack, hctx, dry_run=dry_run, targets=plan.targets(handler.name))
            context.add_handler_result(pack.name, HandlerResult.from_cleared(handler.name, items))

        if not dry_run:
            try:
                hctx.datastore.prune_pack(pack.name)
            except DodotError as exc:
                logger.warning("Cannot prune state of pack '%s': %s", pack.name, exc.message)
