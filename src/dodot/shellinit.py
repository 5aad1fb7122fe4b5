"""Shell code that activates what the path and shell handlers deployed.

Scripts are sourced by placement: ``environment`` scripts in every shell,
``login`` scripts only in login shells and ``aliases`` scripts only in
interactive shells. A script without a placement marker counts as
``environment``.
"""

from __future__ import annotations

import shlex

from .paths import ENV_DATA_DIR, PACKS_DIR_NAME, PLACEMENT_SUFFIX, Paths, STATE_DIR_NAMES

SUPPORTED_SHELLS = ("bash", "zsh", "fish")

# Shell expression that succeeds in a login shell.
_LOGIN_TESTS = {
    "bash": "shopt -q login_shell",
    "zsh": "[[ -o login ]]",
}

_POSIX_TEMPLATE = """\
# dodot shell integration
{env}="${{{env}:-{data_dir}}}"
for _dodot_dir in "${env}"/{packs}/*/{path}/*; do
  [ -d "$_dodot_dir" ] && PATH="$_dodot_dir:$PATH"
done
for _dodot_placement in environment login aliases; do
  case $_dodot_placement in
    login) {login_test} || continue ;;
    aliases) [[ $- == *i* ]] || continue ;;
  esac
  for _dodot_script in "${env}"/{packs}/*/{shell}/*; do
    [ -f "$_dodot_script" ] || continue
    _dodot_kind=environment
    _dodot_marker="${{_dodot_script%/*}}/.${{_dodot_script##*/}}{suffix}"
    [ -f "$_dodot_marker" ] && read -r _dodot_kind < "$_dodot_marker"
    [ "$_dodot_kind" = "$_dodot_placement" ] && . "$_dodot_script"
  done
done
unset _dodot_dir _dodot_script _dodot_placement _dodot_kind _dodot_marker
export PATH {env}
"""

_FISH_TEMPLATE = """\
# dodot shell integration
set -q {env}; or set -gx {env} {data_dir}
for _dodot_dir in ${env}/{packs}/*/{path}/*
    test -d $_dodot_dir; and fish_add_path --global --prepend $_dodot_dir
end
for _dodot_placement in environment login aliases
    switch $_dodot_placement
        case login
            status is-login; or continue
        case aliases
            status is-interactive; or continue
    end
    for _dodot_script in ${env}/{packs}/*/{shell}/*.fish
        set -l _dodot_kind environment
        set -l _dodot_marker (dirname $_dodot_script)/.(basename $_dodot_script){suffix}
        test -f $_dodot_marker; and read _dodot_kind < $_dodot_marker
        test "$_dodot_kind" = $_dodot_placement; and source $_dodot_script
    end
end
"""


def _double_quoted(value: str) -> str:
    for char in ("\\", '"', "$", "`"):
        value = value.replace(char, "\\" + char)
    return value


def render_snippet(paths: Paths, shell: str = "bash") -> str:
    """Return init code for ``shell`` to add to its rc file."""

    if shell not in SUPPORTED_SHELLS:
        raise ValueError(f"Unsupported shell '{shell}' (expected one of {', '.join(SUPPORTED_SHELLS)})")
    if shell == "fish":
        template, data_dir = _FISH_TEMPLATE, shlex.quote(str(paths.data_dir))
    else:
        template, data_dir = _POSIX_TEMPLATE, _double_quoted(str(paths.data_dir))
    return template.format(
        env=ENV_DATA_DIR,
        data_dir=data_dir,
        packs=PACKS_DIR_NAME,
        path=STATE_DIR_NAMES.get("path", "path"),
        shell=STATE_DIR_NAMES.get("shell", "shell"),
        suffix=PLACEMENT_SUFFIX,
        login_test=_LOGIN_TESTS.get(shell, "false"),
    )
