"""Symlink handler: two-hop links from the home directory into packs."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Sequence

from ..config import PROTECTED_PATHS
from ..datastore import DataStore
from ..models import Action, Match, Operation, OperationType, Status
from ..paths import Paths
from .base import HandlerContext, LinkingHandler


def is_protected(path: Path, paths: Paths) -> bool:
    """Whether ``path`` is, or lives under, a protected home location."""

    try:
        relative = PurePosixPath(Path(os.path.normpath(path)).relative_to(paths.home).as_posix())
    except ValueError:
        return False
    candidates = {relative.as_posix(), *(parent.as_posix() for parent in relative.parents)}
    return bool(candidates & PROTECTED_PATHS)


class SymlinkHandler(LinkingHandler):
    name = "symlink"
    priority = 10
    description = "Links files into the home directory"
    operation_type = OperationType.LINK_DATA

    def to_actions(self, matches: Sequence[Match], ctx: HandlerContext) -> list[Action]:
        actions: list[Action] = []
        claimed: dict[Path, str] = {}

        for match in matches:
            user_path = ctx.paths.user_link_path(match.source.name, match.options.get("target"))
            if is_protected(user_path, ctx.paths):
                raise self._refuse(match, f"'{user_path}' is a protected path")
            if user_path in claimed:
                raise self._refuse(match, f"'{user_path}' is already claimed by '{claimed[user_path]}'")
            claimed[user_path] = match.relative_path

            intermediate = ctx.paths.intermediate_path(match.pack, self.name, match.source)
            operations = (
                Operation(
                    type=OperationType.LINK_DATA,
                    pack=match.pack,
                    handler=self.name,
                    source=match.source,
                    destination=intermediate,
                ),
                Operation(
                    type=OperationType.CREATE_USER_LINK,
                    pack=match.pack,
                    handler=self.name,
                    source=intermediate,
                    destination=user_path,
                ),
            )
            actions.append(
                Action(
                    pack=match.pack,
                    handler=self.name,
                    source=match.source,
                    target=user_path,
                    description=f"link {match.relative_path} -> {user_path}",
                    operations=operations,
                    options=dict(match.options),
                )
            )
        return actions

    def status(self, action: Action, datastore: DataStore) -> Status:
        return datastore.symlink_status(action.pack, action.source, action.target, handler=self.name)
