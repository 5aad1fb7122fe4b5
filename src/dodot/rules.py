"""Matching pack entries against rules."""

from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from typing import Collection, Iterable

from .config import DEFAULT_RULES, PACK_SPECIAL_FILES, PackConfig, Rule
from .errors import FileSystemError, RuleError
from .filesystem import FileSystem
from .models import Match, Pack

logger = logging.getLogger(__name__)

_GLOB_CHARS = frozenset("*?[")


def is_glob(pattern: str) -> bool:
    return any(char in _GLOB_CHARS for char in pattern)


def pattern_matches(pattern: str, name: str, *, is_dir: bool) -> bool:
    """Match a pack-relative entry path against a rule pattern.

    ``dir/`` only matches directories, a literal name matches either kind and
    any other glob only matches files.
    """

    if pattern.startswith("!"):
        pattern = pattern[1:]
    if pattern.endswith("/"):
        return is_dir and fnmatchcase(name, pattern.rstrip("/"))
    if not is_glob(pattern):
        return name == pattern
    return not is_dir and fnmatchcase(name, pattern)


def _validate(rule: Rule, known_handlers: Collection[str] | None, source: str) -> None:
    bare = rule.pattern[1:] if rule.is_exclusion else rule.pattern
    if not bare or bare == "/":
        raise RuleError(f"Empty pattern in {source}", details={"source": source, "handler": rule.handler})
    if rule.is_exclusion:
        return
    if not rule.handler:
        raise RuleError(
            f"Rule '{rule.pattern}' in {source} has no handler", details={"source": source, "pattern": rule.pattern}
        )
    if known_handlers is not None and rule.handler not in known_handlers:
        raise RuleError(
            f"Unknown handler '{rule.handler}' for pattern '{rule.pattern}' in {source}",
            details={"source": source, "pattern": rule.pattern, "handler": rule.handler},
        )


def build_rules(
    config: PackConfig | None,
    *,
    known_handlers: Collection[str] | None = None,
    defaults: Iterable[Rule] = DEFAULT_RULES,
) -> list[Rule]:
    """Effective ordered rule list for a pack.

    Pack rules come first; a later pack rule replaces an earlier one with the
    same pattern in place, and a pack rule shadows the default rule with that
    pattern.
    """

    source = str(config.source) if config and config.source else "pack configuration"
    pack_rules: dict[str, Rule] = {}
    if config is not None:
        for rule in config.rules:
            _validate(rule, known_handlers, source)
            pack_rules[rule.pattern] = rule
        for pattern in config.ignore:
            exclusion = Rule(pattern=pattern if pattern.startswith("!") else f"!{pattern}")
            _validate(exclusion, known_handlers, source)
            pack_rules.setdefault(exclusion.pattern, exclusion)

    rules = list(pack_rules.values())
    for rule in defaults:
        if rule.pattern not in pack_rules:
            _validate(rule, known_handlers, "default rules")
            rules.append(rule)
    return rules


def match_entry(rules: Iterable[Rule], name: str, *, is_dir: bool) -> Rule | None:
    """Return the rule selecting ``name``, or ``None`` if it is excluded or unmatched."""

    rules = list(rules)
    for rule in rules:
        if rule.is_exclusion and pattern_matches(rule.pattern, name, is_dir=is_dir):
            return None
    for rule in rules:
        if not rule.is_exclusion and pattern_matches(rule.pattern, name, is_dir=is_dir):
            return rule
    return None


def get_matches(fs: FileSystem, pack: Pack, rules: Iterable[Rule]) -> list[Match]:
    """Apply ``rules`` to the entries of ``pack`` in path order.

    Top-level entries are scanned; nested paths are only considered when a
    rule names them literally, such as ``.local/bin/``.
    """

    rules = list(rules)
    try:
        names = fs.read_dir(pack.path)
    except OSError as exc:
        raise FileSystemError(f"Cannot read pack '{pack.name}': {exc}", details={"pack": pack.name}) from exc

    matches: list[Match] = []
    for name in names:
        if name in PACK_SPECIAL_FILES:
            continue
        match = _match(fs, pack, rules, name)
        if match is None:
            logger.debug("No rule for '%s' in pack '%s'", name, pack.name)
            continue
        matches.append(match)

    for relative in nested_patterns(rules):
        if not fs.lexists(pack.path / relative):
            continue
        match = _match(fs, pack, rules, relative, literal=True)
        if match is not None:
            matches.append(match)
    return sorted(matches, key=lambda match: match.relative_path)


def nested_patterns(rules: Iterable[Rule]) -> list[str]:
    """Literal multi-segment patterns, e.g. ``.local/bin``."""

    nested: list[str] = []
    for rule in rules:
        relative = rule.pattern.rstrip("/")
        if rule.is_exclusion or "/" not in relative or is_glob(relative) or relative in nested:
            continue
        nested.append(relative)
    return nested


def _match(fs: FileSystem, pack: Pack, rules: list[Rule], relative: str, *, literal: bool = False) -> Match | None:
    source = pack.path / relative
    is_dir = fs.is_dir(source)
    rule = match_entry(rules, relative, is_dir=is_dir)
    if rule is None or (literal and rule.pattern.rstrip("/") != relative):
        return None
    return Match(
        pack=pack.name,
        source=source,
        relative_path=relative,
        handler=rule.handler,
        options=dict(rule.options),
        is_directory=is_dir,
    )
