"""Pack configuration (``.dodot.toml``) and built-in defaults."""

from __future__ import annotations

import logging
import tomllib
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ConfigurationError, RuleError
from .filesystem import FileSystem

logger = logging.getLogger(__name__)

# Top-level dotfiles-root entries that are never packs.
DEFAULT_PACK_IGNORE: tuple[str, ...] = (".git", ".svn", ".hg", "node_modules", ".DS_Store", "*.swp", "*~", "#*#")

# Pack-internal entries that no rule ever matches.
PACK_SPECIAL_FILES: frozenset[str] = frozenset({".dodot.toml", ".dodotignore", ".git", ".gitignore", ".DS_Store"})

# Paths relative to home that the symlink handler refuses to manage.
PROTECTED_PATHS: frozenset[str] = frozenset(
    {
        ".ssh/authorized_keys",
        ".ssh/id_rsa",
        ".ssh/id_ed25519",
        ".gnupg",
        ".password-store",
        ".config/gh/hosts.yml",
        ".aws/credentials",
        ".kube/config",
        ".docker/config.json",
    }
)


class Rule(BaseModel):
    """Binds a file pattern to a handler.

    Patterns starting with ``!`` are exclusions and carry no handler.
    """

    model_config = ConfigDict(frozen=True)

    pattern: str
    handler: str = ""
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_exclusion(self) -> bool:
        return self.pattern.startswith("!")


DEFAULT_RULES: tuple[Rule, ...] = (
    Rule(pattern="!*.bak"),
    Rule(pattern="!*.tmp"),
    Rule(pattern="!*.swp"),
    Rule(pattern="!.DS_Store"),
    Rule(pattern="!#*#"),
    Rule(pattern="!*~"),
    Rule(pattern="install.sh", handler="install"),
    Rule(pattern="Brewfile", handler="homebrew"),
    Rule(pattern="profile.sh", handler="shell", options={"placement": "environment"}),
    Rule(pattern="login.sh", handler="shell", options={"placement": "login"}),
    Rule(pattern="*aliases.sh", handler="shell", options={"placement": "aliases"}),
    Rule(pattern="bin/", handler="path"),
    Rule(pattern=".local/bin/", handler="path"),
    Rule(pattern="*", handler="symlink"),
)


class _RuleEntry(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    match: str
    handler: str
    options: dict[str, Any] = Field(default_factory=dict)


class _PackSection(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    ignore: tuple[str, ...] = ()


class PackConfig(BaseModel):
    """Parsed ``.dodot.toml`` of a single pack."""

    model_config = ConfigDict(frozen=True)

    source: Path | None = None
    rules: tuple[Rule, ...] = ()
    ignore: tuple[str, ...] = ()

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], *, source: Path | None = None) -> "PackConfig":
        rules: list[Rule] = []
        ignore: tuple[str, ...] = ()
        where = str(source) if source else "pack configuration"

        for key, value in raw.items():
            if key == "pack" and isinstance(value, Mapping):
                _warn_unknown(value, {"ignore"}, f"{where} [pack]")
                try:
                    ignore = _PackSection.model_validate(value).ignore
                except ValidationError as exc:
                    raise ConfigurationError(
                        f"Invalid [pack] table in {where}: {exc}", details={"path": where}
                    ) from exc
            elif key == "rule" and isinstance(value, list):
                for index, entry in enumerate(value):
                    rules.append(_rule_from_entry(entry, index=index, where=where))
            elif isinstance(value, Mapping) and "patterns" in value:
                rules.extend(_rules_from_handler_section(key, value, where=where))
            else:
                logger.warning("Ignoring unknown key '%s' in %s", key, where)

        return cls(source=source, rules=tuple(rules), ignore=ignore)


def _warn_unknown(table: Mapping[str, Any], known: set[str], where: str) -> None:
    for key in table:
        if key not in known:
            logger.warning("Ignoring unknown key '%s' in %s", key, where)


def _rule_from_entry(entry: Any, *, index: int, where: str) -> Rule:
    if not isinstance(entry, Mapping):
        raise RuleError(f"[[rule]] #{index + 1} in {where} must be a table", details={"path": where})
    _warn_unknown(entry, {"match", "handler", "options"}, f"{where} [[rule]] #{index + 1}")
    try:
        parsed = _RuleEntry.model_validate(entry)
    except ValidationError as exc:
        raise RuleError(
            f"[[rule]] #{index + 1} in {where} needs string 'match' and 'handler' keys",
            details={"path": where, "index": index},
        ) from exc
    return Rule(pattern=parsed.match, handler=parsed.handler, options=dict(parsed.options))


def _rules_from_handler_section(handler: str, table: Mapping[str, Any], *, where: str) -> list[Rule]:
    patterns = table.get("patterns")
    if not isinstance(patterns, list) or not all(isinstance(item, str) for item in patterns):
        raise RuleError(
            f"[{handler}] patterns in {where} must be a list of strings",
            details={"path": where, "handler": handler},
        )
    options = {key: value for key, value in table.items() if key != "patterns"}
    return [Rule(pattern=pattern, handler=handler, options=options) for pattern in patterns]


def load_pack_config(fs: FileSystem, path: Path) -> PackConfig | None:
    """Load ``path`` if it exists; ``None`` when the pack has no configuration."""

    if not fs.lexists(path):
        return None

    try:
        data = tomllib.loads(fs.read_file(path).decode("utf-8"))
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Cannot read pack configuration '{path}': {exc}", details={"path": str(path)}) from exc
    except tomllib.TOMLDecodeError as exc:
        raise ConfigurationError(f"Invalid TOML in '{path}': {exc}", details={"path": str(path)}) from exc

    return PackConfig.from_raw(data, source=path)
