"""Path handler: directories the shell init prepends to ``PATH``."""

from __future__ import annotations

from ..datastore import DataStore
from ..models import Action, Match, OperationType, Status
from .base import LinkingHandler


class PathHandler(LinkingHandler):
    name = "path"
    priority = 20
    description = "Adds directories to PATH"
    template_name = "bin/"
    operation_type = OperationType.APPEND_TO_PATH

    def check_match(self, match: Match) -> None:
        if not match.is_directory:
            raise self._refuse(match, "expected a directory")

    def describe(self, match: Match) -> str:
        return f"add {match.relative_path} to PATH"

    def status(self, action: Action, datastore: DataStore) -> Status:
        return datastore.path_status(action.pack, action.source, handler=self.name)
