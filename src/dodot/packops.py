"""Pack maintenance: scaffolding, ignoring and adopting existing files."""

from __future__ import annotations

import io
import logging
import os
import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

import tomli_w

from .config import PackConfig, Rule, load_pack_config
from .datastore import DataStore
from .errors import ConfigurationError, ConsistencyError, DodotError, FileSystemError, PackNotFoundError
from .executor import Executor
from .filesystem import FileSystem, link_destination
from .handlers import Handler, HandlerContext, SymlinkHandler
from .handlers.symlink import is_protected
from .models import Match, Pack
from .paths import PACK_CONFIG_FILENAME, PACK_IGNORE_FILENAME, Paths
from .registry import HandlerRegistry, default_registry
from .rules import build_rules, get_matches, match_entry

logger = logging.getLogger(__name__)

README_FILENAME = "README.txt"

_INVALID_NAME_CHARS = frozenset('/\\:*?"<>|')


@dataclass(frozen=True, slots=True)
class AdoptedFile:
    """A file moved into a pack and linked back to where it was."""

    original: Path
    destination: Path
    rule_added: bool = False


def validate_pack_name(name: str) -> str:
    """Return ``name`` without trailing slashes, or raise :class:`ConfigurationError`."""

    cleaned = name.rstrip("/")
    if not cleaned or cleaned in (".", ".."):
        raise ConfigurationError(f"Invalid pack name '{name}'", details={"pack": name})
    bad = sorted({char for char in cleaned if char in _INVALID_NAME_CHARS or ord(char) < 32})
    if bad:
        raise ConfigurationError(
            f"Pack name '{name}' contains invalid characters: {' '.join(repr(char) for char in bad)}",
            details={"pack": name},
        )
    return cleaned


def render_pack_config(rules: Sequence[dict[str, object]] = (), *, ignore: Sequence[str] = ()) -> str:
    """Starter ``.dodot.toml`` text with a short explanatory header."""

    data: dict[str, object] = {"pack": {"ignore": list(ignore)}}
    if rules:
        data["rule"] = list(rules)

    buffer = io.StringIO()
    buffer.write("# dodot pack configuration\n")
    buffer.write("#\n")
    buffer.write("# [pack] ignore lists entries dodot should skip.\n")
    buffer.write("# Each [[rule]] binds an entry name or glob to a handler:\n")
    buffer.write("# symlink, path, shell, install or homebrew.\n")
    buffer.write("# A handler table also works: [symlink] patterns = [\"*.conf\"]\n\n")
    buffer.write(tomli_w.dumps(data))
    return buffer.getvalue()


def _readme(name: str, handlers: Iterable[Handler]) -> str:
    lines = [
        f"dodot pack: {name}",
        "",
        "Files in this pack:",
        f"- {PACK_CONFIG_FILENAME}: pack configuration",
    ]
    for handler in handlers:
        if handler.template_name:
            lines.append(f"- {handler.template_name}: {handler.description.lower()}")
    lines += [
        f"- {README_FILENAME}: this file (ignored by dodot)",
        "",
        f"Add your dotfiles here, then run 'dodot deploy {name}'.",
        "",
    ]
    return "\n".join(lines)


def _write_template(fs: FileSystem, pack_path: Path, handler: Handler) -> Path:
    name = handler.template_name or ""
    target = pack_path / name.rstrip("/")
    if name.endswith("/"):
        fs.mkdir(target, parents=True, exist_ok=True)
    else:
        fs.write_file(target, handler.template.encode("utf-8"), mode=handler.template_mode)
    logger.info("Created template '%s'", target)
    return target


def _handlers(registry: HandlerRegistry) -> list[Handler]:
    return [registry.get(name) for name in registry.names()]


def init_pack(fs: FileSystem, paths: Paths, name: str, *, registry: HandlerRegistry | None = None) -> list[Path]:
    """Create a new pack with a starter configuration, a README and handler templates."""

    registry = registry or default_registry()
    name = validate_pack_name(name)
    pack_path = paths.pack_path(name)
    if fs.lexists(pack_path):
        raise ConsistencyError(f"Pack '{name}' already exists at '{pack_path}'", details={"pack": name})

    handlers = _handlers(registry)
    created: list[Path] = []
    try:
        fs.mkdir(pack_path, parents=True)
        created.append(pack_path)
        config_path = paths.pack_config_path(name)
        fs.write_file(config_path, render_pack_config(ignore=[README_FILENAME]).encode("utf-8"))
        created.append(config_path)
        readme = pack_path / README_FILENAME
        fs.write_file(readme, _readme(name, handlers).encode("utf-8"))
        created.append(readme)
        for handler in handlers:
            if handler.template_name:
                created.append(_write_template(fs, pack_path, handler))
    except OSError as exc:
        raise FileSystemError(f"Cannot create pack '{name}': {exc}", details={"pack": name}) from exc

    logger.info("Initialised pack '%s'", name)
    return created


def _existing_pack(fs: FileSystem, paths: Paths, name: str) -> Pack:
    name = validate_pack_name(name)
    pack_path = paths.pack_path(name)
    if not fs.is_dir(pack_path):
        raise PackNotFoundError(
            f"Pack(s) not found: {name}",
            details={
                "missing": [name],
                "dotfiles_root": str(paths.dotfiles_root),
                "root_source": paths.root_source.value,
            },
        )
    return Pack(name=name, path=pack_path, config=load_pack_config(fs, paths.pack_config_path(name)))


def fill_pack(fs: FileSystem, paths: Paths, name: str, *, registry: HandlerRegistry | None = None) -> list[Path]:
    """Add templates for every handler the pack does not use yet."""

    registry = registry or default_registry()
    pack = _existing_pack(fs, paths, name)
    rules = build_rules(pack.config, known_handlers=registry.names())
    used = {match.handler for match in get_matches(fs, pack, rules)}

    created: list[Path] = []
    try:
        for handler in _handlers(registry):
            if not handler.template_name or handler.name in used:
                continue
            if fs.lexists(pack.path / handler.template_name.rstrip("/")):
                continue
            created.append(_write_template(fs, pack.path, handler))
    except OSError as exc:
        raise FileSystemError(f"Cannot fill pack '{pack.name}': {exc}", details={"pack": pack.name}) from exc
    return created


def add_ignore(fs: FileSystem, paths: Paths, name: str) -> bool:
    """Mark a pack as ignored; ``False`` when it already was."""

    pack = _existing_pack(fs, paths, name)
    marker = pack.path / PACK_IGNORE_FILENAME
    if fs.lexists(marker):
        return False
    try:
        fs.write_file(marker, b"")
    except OSError as exc:
        raise FileSystemError(f"Cannot write '{marker}': {exc}", details={"path": str(marker)}) from exc
    logger.info("Pack '%s' is now ignored", pack.name)
    return True


def _target_option(paths: Paths, directory: Path) -> str:
    if directory == paths.home:
        return "~"
    if paths.is_in_home(directory):
        return "~/" + directory.relative_to(paths.home).as_posix()
    return str(directory)


def _is_managed(fs: FileSystem, paths: Paths, path: Path) -> bool:
    if not fs.is_symlink(path):
        return False
    target = link_destination(fs, path)
    for root in (paths.dotfiles_root, paths.data_dir):
        try:
            target.relative_to(root)
        except ValueError:
            continue
        return True
    return False


class Adopter:
    """Moves files into a pack and links them back through the data directory."""

    def __init__(
        self,
        fs: FileSystem,
        paths: Paths,
        *,
        registry: HandlerRegistry | None = None,
        dry_run: bool = False,
    ) -> None:
        self.fs = fs
        self.paths = paths
        self.dry_run = dry_run
        self.registry = registry or default_registry()
        self.datastore = DataStore(fs, paths)

    def adopt(
        self, pack_name: str, sources: Iterable[str | os.PathLike[str]], *, force: bool = False
    ) -> list[AdoptedFile]:
        name = validate_pack_name(pack_name)
        adopted: list[AdoptedFile] = []
        for raw in sources:
            result = self.adopt_one(name, raw, force=force)
            if result is not None:
                adopted.append(result)
        logger.info("Adopted %d file(s) into pack '%s'", len(adopted), name)
        return adopted

    def adopt_one(self, pack_name: str, raw: str | os.PathLike[str], *, force: bool = False) -> AdoptedFile | None:
        fs, paths = self.fs, self.paths
        original = Path(os.path.normpath(paths.expand(raw)))
        if not fs.lexists(original):
            raise FileSystemError(f"'{original}' does not exist", details={"path": str(original)})
        if _is_managed(fs, paths, original):
            logger.info("'%s' is already managed by dodot; skipping", original)
            return None
        if is_protected(original, paths):
            raise ConsistencyError(
                f"'{original}' is a protected path; refusing to adopt it", details={"path": str(original)}
            )

        pack_path = paths.pack_path(pack_name)
        config_path = paths.pack_config_path(pack_name)
        config_text = self._read_config(config_path)
        is_dir = fs.is_dir(original)
        entry, rule = self._plan_entry(pack_name, original, config_text, is_dir=is_dir)
        destination = pack_path / entry

        if fs.lexists(destination):
            if not force:
                raise ConsistencyError(
                    f"'{destination}' already exists; use --force to replace it",
                    details={"path": str(destination), "pack": pack_name},
                )
            if self.dry_run:
                return AdoptedFile(original=original, destination=destination, rule_added=rule is not None)
            self._run(lambda: fs.remove_all(destination), f"Cannot replace '{destination}'", destination)

        if self.dry_run:
            logger.info("Would adopt '%s' into '%s'", original, destination)
            return AdoptedFile(original=original, destination=destination, rule_added=rule is not None)

        self._run(lambda: fs.mkdir(pack_path, parents=True, exist_ok=True), "Cannot create pack", pack_path)
        self._run(lambda: fs.rename(original, destination), f"Cannot move '{original}' into the pack", original)
        try:
            if rule is not None:
                self._write_config(config_path, _append_rule(config_text, rule))
            self._link_back(pack_name, destination, original, rule)
        except DodotError:
            logger.error("Linking '%s' back failed; restoring it", original)
            self._rollback(original, destination, config_path if rule is not None else None, config_text)
            raise

        logger.info("Adopted '%s' into '%s'", original, destination)
        return AdoptedFile(original=original, destination=destination, rule_added=rule is not None)

    def _plan_entry(
        self, pack_name: str, original: Path, config_text: str | None, *, is_dir: bool
    ) -> tuple[str, dict[str, object] | None]:
        """Choose the entry name inside the pack and the rule needed to link it back, if any."""

        paths = self.paths
        if original.parent == paths.home and original.name.startswith(".") and len(original.name) > 1:
            entry = original.name[1:]
            rule = match_entry(self._rules(config_text), entry, is_dir=is_dir)
            if rule is not None and rule.handler == SymlinkHandler.name and "target" not in rule.options:
                return entry, None

        entry = original.name
        new_rule: dict[str, object] = {
            "match": entry,
            "handler": SymlinkHandler.name,
            "options": {"target": _target_option(paths, original.parent)},
        }
        chosen = match_entry(self._rules(_append_rule(config_text, new_rule)), entry, is_dir=is_dir)
        if chosen is None or chosen.handler != SymlinkHandler.name or chosen.options != new_rule["options"]:
            raise ConsistencyError(
                f"Rules of pack '{pack_name}' would not link '{entry}' back to '{original}'",
                details={"pack": pack_name, "path": str(original)},
            )
        return entry, new_rule

    def _rules(self, config_text: str | None) -> list[Rule]:
        config = None
        if config_text:
            try:
                config = PackConfig.from_raw(tomllib.loads(config_text))
            except tomllib.TOMLDecodeError as exc:
                raise ConfigurationError(f"Cannot parse pack configuration: {exc}") from exc
        return build_rules(config, known_handlers=self.registry.names())

    def _read_config(self, path: Path) -> str | None:
        try:
            return self.fs.read_file(path).decode("utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise FileSystemError(f"Cannot read '{path}': {exc}", details={"path": str(path)}) from exc

    def _write_config(self, path: Path, text: str) -> None:
        self._run(lambda: self.fs.write_file(path, text.encode("utf-8")), f"Cannot write '{path}'", path)

    def _link_back(self, pack_name: str, source: Path, user_path: Path, rule: dict[str, object] | None) -> None:
        options = dict(rule["options"]) if rule is not None else {}
        match = Match(
            pack=pack_name,
            source=source,
            relative_path=source.name,
            handler=SymlinkHandler.name,
            options=options,
            is_directory=self.fs.is_dir(source),
        )
        ctx = HandlerContext(paths=self.paths, fs=self.fs, datastore=self.datastore)
        actions = SymlinkHandler().to_actions([match], ctx)
        if actions[0].target != user_path:
            raise ConsistencyError(
                f"'{source.name}' would be linked at '{actions[0].target}', not '{user_path}'",
                details={"path": str(user_path)},
            )
        for result in Executor(self.datastore).execute(actions):
            if result.failed:
                raise result.error or FileSystemError(result.message, details={"path": str(user_path)})

    def _rollback(
        self, original: Path, destination: Path, config_path: Path | None, config_text: str | None
    ) -> None:
        """Undo a partial adoption; ``config_path`` is set when the configuration was rewritten."""

        fs = self.fs
        intermediate = self.paths.intermediate_path(destination.parent.name, SymlinkHandler.name, destination)
        try:
            self.datastore.unlink_user(original, intermediate)
            self.datastore.remove_intermediate(intermediate)
            if not fs.lexists(original):
                fs.rename(destination, original)
            if config_path is not None and config_text is None:
                fs.remove(config_path)
            elif config_path is not None:
                fs.write_file(config_path, config_text.encode("utf-8"))
        except (DodotError, OSError) as exc:
            logger.error("Rollback of '%s' failed: %s", original, exc)

    @staticmethod
    def _run(operation, message: str, path: Path) -> None:
        try:
            operation()
        except OSError as exc:
            raise FileSystemError(f"{message}: {exc}", details={"path": str(path)}) from exc


def _append_rule(config_text: str | None, rule: dict[str, object]) -> str:
    """Append one ``[[rule]]`` table, keeping the existing text and comments."""

    block = tomli_w.dumps({"rule": [rule]})
    if not config_text:
        return render_pack_config() + "\n" + block
    separator = "" if config_text.endswith("\n\n") else ("\n" if config_text.endswith("\n") else "\n\n")
    return config_text + separator + block
