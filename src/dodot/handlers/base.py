"""Handler interface and the shared linking/provisioning behaviour."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar, Iterable, Sequence

from ..datastore import DataStore
from ..errors import ActionGenerationError, DodotError
from ..filesystem import FileSystem, file_checksum
from ..models import Action, ClearedItem, Match, Operation, OperationType, Pack, RunMode, Status
from ..paths import Paths, sentinel_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HandlerContext:
    """What a handler may consult while planning or clearing."""

    paths: Paths
    fs: FileSystem
    datastore: DataStore


class Handler(ABC):
    """One deployment kind.

    Subclasses declare ``name``, ``run_mode`` and ``priority`` as class
    attributes so the registry can read them without instantiating.
    """

    name: ClassVar[str]
    run_mode: ClassVar[RunMode]
    priority: ClassVar[int]
    description: ClassVar[str] = ""
    # Starter entry for new packs; a trailing "/" means a directory.
    template_name: ClassVar[str | None] = None
    template: ClassVar[str] = ""
    template_mode: ClassVar[int] = 0o644

    @abstractmethod
    def to_actions(self, matches: Sequence[Match], ctx: HandlerContext) -> list[Action]:
        """Turn matches into actions, preserving match order."""

    @abstractmethod
    def status(self, action: Action, datastore: DataStore) -> Status:
        """Report the deployment status of one action."""

    @abstractmethod
    def clear(
        self,
        pack: Pack,
        ctx: HandlerContext,
        *,
        dry_run: bool = False,
        targets: Iterable[Path] = (),
    ) -> list[ClearedItem]:
        """Retract everything this handler deployed for ``pack``."""

    def has_state(self, pack: Pack, ctx: HandlerContext) -> bool:
        return ctx.fs.lexists(ctx.paths.pack_handler_dir(pack.name, self.name))

    def _refuse(self, match: Match, reason: str) -> ActionGenerationError:
        return ActionGenerationError(
            f"{self.name} handler refused '{match.relative_path}' in pack '{match.pack}': {reason}",
            details={"pack": match.pack, "handler": self.name, "source": str(match.source)},
        )


def _clear_item(kind: str, path: Path, perform: Callable[[], object] | None) -> ClearedItem:
    if perform is None:
        return ClearedItem(type=kind, path=path)
    try:
        perform()
    except DodotError as exc:
        logger.warning("Failed to remove %s '%s': %s", kind, path, exc.message)
        return ClearedItem(type=kind, path=path, success=False, error=exc.message)
    return ClearedItem(type=kind, path=path)


def _unique(paths: Iterable[Path]) -> list[Path]:
    seen: list[Path] = []
    for path in paths:
        if path not in seen:
            seen.append(path)
    return seen


class LinkingHandler(Handler):
    """Handlers whose state is a set of intermediate links."""

    run_mode = RunMode.LINKING
    operation_type: ClassVar[OperationType]

    def to_actions(self, matches: Sequence[Match], ctx: HandlerContext) -> list[Action]:
        actions: list[Action] = []
        claimed: dict[Path, str] = {}
        for match in matches:
            self.check_match(match)
            intermediate = ctx.paths.intermediate_path(match.pack, self.name, match.source)
            if intermediate in claimed:
                raise self._refuse(match, f"'{intermediate.name}' is already claimed by '{claimed[intermediate]}'")
            claimed[intermediate] = match.relative_path
            operation = Operation(
                type=self.operation_type,
                pack=match.pack,
                handler=self.name,
                source=match.source,
                destination=intermediate,
                placement=self.placement(match),
            )
            actions.append(
                Action(
                    pack=match.pack,
                    handler=self.name,
                    source=match.source,
                    target=intermediate,
                    description=self.describe(match),
                    operations=(operation,),
                    options=dict(match.options),
                )
            )
        return actions

    def check_match(self, match: Match) -> None:
        """Raise :class:`ActionGenerationError` for matches this handler cannot deploy."""

    def describe(self, match: Match) -> str:
        return f"link {match.relative_path}"

    def placement(self, match: Match) -> str | None:
        return None

    def clear(
        self,
        pack: Pack,
        ctx: HandlerContext,
        *,
        dry_run: bool = False,
        targets: Iterable[Path] = (),
    ) -> list[ClearedItem]:
        datastore = ctx.datastore
        candidates = self._user_link_candidates(ctx, targets)
        items: list[ClearedItem] = []
        created_dirs: list[Path] = []

        for intermediate in datastore.data_links(pack.name, self.name):
            record = datastore.read_link_record(intermediate)
            recorded: list[Path] = []
            if record is not None:
                recorded.append(record.user_link)
                created_dirs.extend(record.created_dirs)
            for candidate in _unique([*recorded, *candidates]):
                if not datastore.is_user_linked(intermediate, candidate):
                    continue
                items.append(
                    _clear_item(
                        "user_link",
                        candidate,
                        None if dry_run else lambda c=candidate, i=intermediate: datastore.unlink_user(c, i),
                    )
                )
            items.append(
                _clear_item(
                    "intermediate",
                    intermediate,
                    None if dry_run else lambda i=intermediate: datastore.remove_intermediate(i),
                )
            )

        if dry_run:
            return items
        items.extend(ClearedItem(type="directory", path=path) for path in datastore.prune_created_dirs(created_dirs))
        if all(item.success for item in items):
            try:
                datastore.remove_state(pack.name, self.name)
            except DodotError as exc:
                state_dir = ctx.paths.pack_handler_dir(pack.name, self.name)
                logger.warning("Failed to remove state '%s': %s", state_dir, exc.message)
                items.append(ClearedItem(type="state", path=state_dir, success=False, error=exc.message))
        return items

    @staticmethod
    def _user_link_candidates(ctx: HandlerContext, targets: Iterable[Path]) -> list[Path]:
        home = ctx.paths.home
        try:
            names = ctx.fs.read_dir(home)
        except OSError:
            names = []
        return _unique([*targets, *(home / name for name in names)])


class ProvisioningHandler(Handler):
    """Handlers that run a command once per input checksum."""

    run_mode = RunMode.PROVISIONING

    @abstractmethod
    def command(self, match: Match) -> tuple[str, ...]:
        """Command line executed for ``match``."""

    def describe(self, match: Match) -> str:
        return f"run {match.relative_path}"

    def to_actions(self, matches: Sequence[Match], ctx: HandlerContext) -> list[Action]:
        actions: list[Action] = []
        for match in matches:
            if match.is_directory:
                raise self._refuse(match, "expected a file")
            try:
                checksum = file_checksum(ctx.fs, match.source)
            except OSError as exc:
                raise self._refuse(match, f"cannot read input: {exc}") from exc

            sentinel = sentinel_name(match.source)
            operation = Operation(
                type=OperationType.RUN_ONCE,
                pack=match.pack,
                handler=self.name,
                source=match.source,
                destination=ctx.paths.sentinel_path(match.pack, self.name, sentinel),
                sentinel=sentinel,
                checksum=checksum,
                command=self.command(match),
                cwd=match.source.parent,
            )
            actions.append(
                Action(
                    pack=match.pack,
                    handler=self.name,
                    source=match.source,
                    target=operation.destination,
                    description=self.describe(match),
                    operations=(operation,),
                    checksum=checksum,
                    sentinel=sentinel,
                    options=dict(match.options),
                )
            )
        return actions

    def clear(
        self,
        pack: Pack,
        ctx: HandlerContext,
        *,
        dry_run: bool = False,
        targets: Iterable[Path] = (),
    ) -> list[ClearedItem]:
        sentinels = ctx.datastore.sentinels(pack.name, self.name)
        if dry_run:
            return [ClearedItem(type="sentinel", path=path) for path in sentinels]
        try:
            ctx.datastore.remove_state(pack.name, self.name)
        except DodotError as exc:
            return [ClearedItem(type="sentinel", path=path, success=False, error=exc.message) for path in sentinels]
        return [ClearedItem(type="sentinel", path=path) for path in sentinels]
