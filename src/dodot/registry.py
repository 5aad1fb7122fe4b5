"""Handler registry."""

from __future__ import annotations

import threading
from typing import Iterable

from .errors import InternalError, RuleError
from .handlers import BUILTIN_HANDLERS, Handler
from .models import RunMode


class HandlerRegistry:
    """Maps handler names to handler classes.

    Run modes and precedence are read from class attributes, so asking about a
    handler never instantiates it.
    """

    def __init__(self, factories: Iterable[type[Handler]] = ()) -> None:
        self._factories: dict[str, type[Handler]] = {}
        self._instances: dict[str, Handler] = {}
        self._lock = threading.Lock()
        for factory in factories:
            self.register(factory)

    def register(self, factory: type[Handler], *, replace: bool = False) -> None:
        name = factory.name
        with self._lock:
            if name in self._factories and not replace:
                raise InternalError(f"Handler '{name}' is already registered", details={"handler": name})
            self._factories[name] = factory
            self._instances.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def factory(self, name: str) -> type[Handler]:
        try:
            return self._factories[name]
        except KeyError:
            raise RuleError(f"Unknown handler '{name}'", details={"handler": name}) from None

    def get(self, name: str) -> Handler:
        factory = self.factory(name)
        with self._lock:
            instance = self._instances.get(name)
            if instance is None:
                instance = self._instances[name] = factory()
        return instance

    def run_mode(self, name: str) -> RunMode:
        return self.factory(name).run_mode

    def names(self, modes: Iterable[RunMode] | None = None) -> list[str]:
        """Registered names in precedence order, optionally limited to ``modes``."""

        wanted = set(modes) if modes is not None else None
        ordered = sorted(self._factories.values(), key=lambda factory: (factory.priority, factory.name))
        return [factory.name for factory in ordered if wanted is None or factory.run_mode in wanted]


_default_registry: HandlerRegistry | None = None
_default_lock = threading.Lock()


def default_registry() -> HandlerRegistry:
    """Process-wide registry holding the built-in handlers."""

    global _default_registry
    with _default_lock:
        if _default_registry is None:
            _default_registry = HandlerRegistry(BUILTIN_HANDLERS)
        return _default_registry
