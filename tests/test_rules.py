from __future__ import annotations

from pathlib import Path

import pytest

from dodot.config import PackConfig, Rule
from dodot.errors import RuleError
from dodot.filesystem import MemoryFileSystem
from dodot.models import Pack
from dodot.registry import default_registry
from dodot.rules import build_rules, get_matches, match_entry, pattern_matches

HANDLERS = default_registry().names()


@pytest.mark.parametrize(
    ("pattern", "name", "is_dir", "expected"),
    [
        ("bin/", "bin", True, True),
        ("bin/", "bin", False, False),
        ("bin", "bin", True, True),
        ("bin", "bin", False, True),
        ("*.sh", "install.sh", False, True),
        ("*.sh", "scripts.sh", True, False),
        ("*", "nvim", True, False),
        ("!*.bak", "vimrc.bak", False, True),
    ],
)
def test_pattern_semantics(pattern: str, name: str, is_dir: bool, expected: bool) -> None:
    assert pattern_matches(pattern, name, is_dir=is_dir) is expected


def test_defaults_route_well_known_files() -> None:
    rules = build_rules(None, known_handlers=HANDLERS)

    assert match_entry(rules, "install.sh", is_dir=False).handler == "install"
    assert match_entry(rules, "Brewfile", is_dir=False).handler == "homebrew"
    assert match_entry(rules, "bin", is_dir=True).handler == "path"
    assert match_entry(rules, "vimrc", is_dir=False).handler == "symlink"
    assert match_entry(rules, "work-aliases.sh", is_dir=False).options == {"placement": "aliases"}
    assert match_entry(rules, "vimrc.bak", is_dir=False) is None
    # Directories other than bin/ are not matched by the catch-all glob.
    assert match_entry(rules, "nvim", is_dir=True) is None


def test_pack_rules_take_precedence_and_later_rules_win() -> None:
    config = PackConfig.from_raw(
        {
            "rule": [
                {"match": "nvim", "handler": "path"},
                {"match": "nvim", "handler": "symlink"},
                {"match": "install.sh", "handler": "symlink"},
            ]
        }
    )

    rules = build_rules(config, known_handlers=HANDLERS)

    assert match_entry(rules, "nvim", is_dir=True).handler == "symlink"
    assert match_entry(rules, "install.sh", is_dir=False).handler == "symlink"
    assert [rule.pattern for rule in rules].count("nvim") == 1


def test_exclusions_are_checked_first() -> None:
    config = PackConfig.from_raw(
        {"pack": {"ignore": ["notes.txt"]}, "rule": [{"match": "notes.txt", "handler": "symlink"}]}
    )

    rules = build_rules(config, known_handlers=HANDLERS)

    assert match_entry(rules, "notes.txt", is_dir=False) is None


def test_unknown_handler_is_rejected() -> None:
    config = PackConfig.from_raw({"rule": [{"match": "x", "handler": "teleport"}]})

    with pytest.raises(RuleError) as excinfo:
        build_rules(config, known_handlers=HANDLERS)

    assert excinfo.value.details["handler"] == "teleport"


def test_empty_pattern_is_rejected() -> None:
    with pytest.raises(RuleError):
        build_rules(None, known_handlers=HANDLERS, defaults=[Rule(pattern="", handler="symlink")])


def test_get_matches_scans_top_level_entries_in_order() -> None:
    fs = MemoryFileSystem()
    pack_dir = Path("/dotfiles/vim")
    fs.mkdir(pack_dir / "bin", parents=True)
    fs.mkdir(pack_dir / "colors")
    fs.write_file(pack_dir / "colors" / "theme.vim", b"")
    for name in ("vimrc", "gvimrc", ".dodot.toml", "install.sh", "vimrc.swp"):
        fs.write_file(pack_dir / name, b"")
    pack = Pack(name="vim", path=pack_dir)

    matches = get_matches(fs, pack, build_rules(None, known_handlers=HANDLERS))

    assert [(match.relative_path, match.handler) for match in matches] == [
        ("bin", "path"),
        ("gvimrc", "symlink"),
        ("install.sh", "install"),
        ("vimrc", "symlink"),
    ]
    assert matches[0].is_directory
    assert matches[0].source == pack_dir / "bin"
    assert all(match.pack == "vim" for match in matches)


def test_redefined_pack_rule_keeps_its_position() -> None:
    config = PackConfig.from_raw(
        {
            "rule": [
                {"match": "*.sh", "handler": "symlink"},
                {"match": "setup.sh", "handler": "install"},
                {"match": "*.sh", "handler": "shell"},
            ]
        }
    )

    rules = build_rules(config, known_handlers=HANDLERS)

    assert [rule.pattern for rule in rules][:2] == ["*.sh", "setup.sh"]
    assert match_entry(rules, "setup.sh", is_dir=False).handler == "shell"


def test_get_matches_finds_literal_nested_paths() -> None:
    fs = MemoryFileSystem()
    pack_dir = Path("/dotfiles/tools")
    fs.mkdir(pack_dir / ".local" / "bin", parents=True)
    fs.write_file(pack_dir / ".local" / "bin" / "hello", b"")
    fs.write_file(pack_dir / "toolrc", b"")
    pack = Pack(name="tools", path=pack_dir)

    matches = get_matches(fs, pack, build_rules(None, known_handlers=HANDLERS))

    assert [(match.relative_path, match.handler) for match in matches] == [
        (".local/bin", "path"),
        ("toolrc", "symlink"),
    ]
    assert matches[0].source == pack_dir / ".local" / "bin"
    assert matches[0].is_directory


def test_nested_path_can_be_excluded() -> None:
    fs = MemoryFileSystem()
    pack_dir = Path("/dotfiles/tools")
    fs.mkdir(pack_dir / ".local" / "bin", parents=True)
    pack = Pack(name="tools", path=pack_dir)
    config = PackConfig.from_raw({"pack": {"ignore": [".local/bin/"]}})

    assert get_matches(fs, pack, build_rules(config, known_handlers=HANDLERS)) == []
