"""Built-in handlers, listed in precedence order."""

from .base import Handler, HandlerContext, LinkingHandler, ProvisioningHandler
from .homebrew import HomebrewHandler
from .install import InstallHandler
from .path import PathHandler
from .shell import ShellHandler
from .symlink import SymlinkHandler

BUILTIN_HANDLERS: tuple[type[Handler], ...] = (
    SymlinkHandler,
    PathHandler,
    ShellHandler,
    InstallHandler,
    HomebrewHandler,
)

__all__ = [
    "BUILTIN_HANDLERS",
    "Handler",
    "HandlerContext",
    "HomebrewHandler",
    "InstallHandler",
    "LinkingHandler",
    "PathHandler",
    "ProvisioningHandler",
    "ShellHandler",
    "SymlinkHandler",
]
