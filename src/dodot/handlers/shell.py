"""Shell handler: scripts sourced by the shell init snippet."""

from __future__ import annotations

from ..datastore import DataStore
from ..models import Action, Match, OperationType, Status
from .base import LinkingHandler

PLACEMENTS = ("environment", "login", "aliases")


class ShellHandler(LinkingHandler):
    name = "shell"
    priority = 30
    description = "Registers shell scripts to source at startup"
    template_name = "aliases.sh"
    template = "# Aliases for interactive shells.\n# alias ll='ls -lh'\n"
    operation_type = OperationType.REGISTER_SHELL

    def check_match(self, match: Match) -> None:
        if match.is_directory:
            raise self._refuse(match, "expected a file")
        placement = match.options.get("placement", "environment")
        if placement not in PLACEMENTS:
            raise self._refuse(match, f"unknown placement '{placement}' (expected one of {', '.join(PLACEMENTS)})")

    def describe(self, match: Match) -> str:
        return f"source {match.relative_path} ({self.placement(match)})"

    def placement(self, match: Match) -> str:
        return match.options.get("placement", "environment")

    def status(self, action: Action, datastore: DataStore) -> Status:
        placement = action.operations[0].placement if action.operations else None
        return datastore.shell_status(action.pack, action.source, handler=self.name, placement=placement)
