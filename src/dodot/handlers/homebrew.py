"""Homebrew handler: ``brew bundle`` for a pack's Brewfile."""

from __future__ import annotations

from ..datastore import DataStore
from ..models import Action, Match, Status
from .base import ProvisioningHandler


class HomebrewHandler(ProvisioningHandler):
    name = "homebrew"
    priority = 50
    description = "Installs Brewfile packages"
    template_name = "Brewfile"
    template = "# Homebrew packages for this pack, installed with brew bundle.\n# brew \"git\"\n"

    def command(self, match: Match) -> tuple[str, ...]:
        return ("brew", "bundle", "--file", str(match.source))

    def describe(self, match: Match) -> str:
        return f"brew bundle {match.relative_path}"

    def status(self, action: Action, datastore: DataStore) -> Status:
        return datastore.homebrew_status(action.pack, action.sentinel or "", action.checksum or "", handler=self.name)
