"""Install handler: runs a pack's install script once per checksum."""

from __future__ import annotations

from ..datastore import DataStore
from ..models import Action, Match, Status
from .base import ProvisioningHandler


class InstallHandler(ProvisioningHandler):
    name = "install"
    priority = 40
    description = "Runs install scripts once"
    template_name = "install.sh"
    template = (
        "#!/usr/bin/env bash\n"
        "# Runs once per change of this file (dodot provision).\n"
        "set -euo pipefail\n"
    )
    template_mode = 0o755

    def command(self, match: Match) -> tuple[str, ...]:
        return ("bash", str(match.source))

    def status(self, action: Action, datastore: DataStore) -> Status:
        return datastore.provision_status(action.pack, action.sentinel or "", action.checksum or "", handler=self.name)
