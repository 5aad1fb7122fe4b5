"""Command-line interface for dodot."""

from __future__ import annotations

import logging
import signal
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Iterator

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .config import DEFAULT_RULES
from .context import ExecutionContext
from .errors import (
    ConfigurationError,
    DodotError,
    PackNotFoundError,
    PipelineCancelled,
    PipelineFailed,
    RuleError,
)
from .filesystem import OSFileSystem
from .models import CommandIntent, ExecutionStatus, StatusState
from .packops import Adopter, add_ignore, fill_pack, init_pack, render_pack_config
from .packs import discover_packs, select_packs
from .pipeline import Pipeline, PipelineOptions, StatusEntry
from .paths import PACK_CONFIG_FILENAME, Paths, RootSource
from .rules import get_matches
from .shellinit import SUPPORTED_SHELLS, render_snippet

app = typer.Typer(help="Deploy dotfiles packs into your home directory", no_args_is_help=True)
console = Console()
err_console = Console(stderr=True)

_STATE_STYLES = {
    StatusState.READY: "green",
    StatusState.SKIPPED: "cyan",
    StatusState.PENDING: "yellow",
    StatusState.MISSING: "yellow",
    StatusState.ERROR: "red",
}

_RUN_STYLES = {
    ExecutionStatus.SUCCESS: "green",
    ExecutionStatus.SKIPPED: "cyan",
    ExecutionStatus.PARTIAL: "yellow",
    ExecutionStatus.ERROR: "red",
    ExecutionStatus.CANCELLED: "yellow",
}


@dataclass
class _CliState:
    dotfiles_root: Path | None = None
    dry_run: bool = False
    enable_home_symlinks: bool = True


def _configure_logging(verbose: int) -> None:
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=True)],
        force=True,
    )


def _resolve_paths(state: _CliState) -> Paths:
    return Pipeline().resolve_paths(PipelineOptions(dotfiles_root=state.dotfiles_root))


def _handle_error(exc: Exception) -> None:
    if isinstance(exc, PipelineCancelled):
        _format_context(exc.context)
        console.print("[yellow]Cancelled; remaining packs were not processed.[/yellow]")
        raise typer.Exit(code=3)
    if isinstance(exc, PipelineFailed):
        _format_context(exc.context)
        _format_failures(exc.context)
        raise typer.Exit(code=1)
    if isinstance(exc, PackNotFoundError):
        console.print(f"[red]{exc.message}[/red]")
        root = exc.details.get("dotfiles_root")
        source = exc.details.get("root_source")
        console.print(
            f"[yellow]Looked in '{root}' (dotfiles root from {source}). Run 'dodot list' to see packs.[/yellow]"
        )
        raise typer.Exit(code=2)
    if isinstance(exc, (ConfigurationError, RuleError)):
        console.print(f"[red]{exc.message}[/red]")
        if exc.details.get("root_source") == RootSource.CWD_FALLBACK.value:
            console.print("[yellow]Set DOTFILES_ROOT or pass --dotfiles-root to point at your dotfiles.[/yellow]")
        raise typer.Exit(code=2)
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Check ownership of the home and data directories.")
        raise typer.Exit(code=1)
    if isinstance(exc, DodotError):
        console.print(f"[red]{exc.message}[/red]")
        raise typer.Exit(code=1)
    raise exc


def _format_context(context: ExecutionContext) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Pack")
    table.add_column("Handler")
    table.add_column("Files", overflow="fold")
    table.add_column("Status")
    table.add_column("Details", overflow="fold")

    rows = 0
    for pack, result in context.handler_results():
        style = _STATE_STYLES.get(result.status, "white")
        table.add_row(
            pack,
            result.handler,
            ", ".join(result.files),
            f"[{style}]{result.status.value}[/{style}]",
            result.message,
        )
        rows += 1

    if rows:
        console.print(table)
    else:
        console.print("[yellow]Nothing to do.[/yellow]")

    style = _RUN_STYLES.get(context.status, "white")
    prefix = "[dim](dry run)[/dim] " if context.dry_run else ""
    console.print(f"{prefix}{context.command}: [{style}]{context.status.value}[/{style}]")


def _format_failures(context: ExecutionContext) -> None:
    for pack, result in context.failures():
        for action_result in result.action_results:
            if action_result.failed:
                name = action_result.action.name
                console.print(f"[red]{pack}/{result.handler}: {name}: {action_result.message}[/red]")
        for item in result.cleared_items:
            if not item.success:
                console.print(f"[red]{pack}/{result.handler}: {item.path}: {item.error}[/red]")
        if not result.action_results and not result.cleared_items:
            console.print(f"[red]{pack}/{result.handler}: {result.message}[/red]")


def _format_status(entries: Iterable[StatusEntry]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Pack")
    table.add_column("Handler")
    table.add_column("Entry")
    table.add_column("State")
    table.add_column("Details", overflow="fold")

    for entry in entries:
        style = _STATE_STYLES.get(entry.status.state, "white")
        details = entry.status.message
        if entry.status.timestamp is not None:
            details = f"{details} ({entry.status.timestamp.isoformat()})"
        table.add_row(
            entry.pack,
            entry.handler,
            entry.name,
            f"[{style}]{entry.status.state.value}[/{style}]",
            details,
        )

    console.print(table)


@contextmanager
def _cancel_on_sigint(cancel: threading.Event) -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _request_cancel(signum: int, frame: object) -> None:
        logging.getLogger(__name__).warning("Interrupted; finishing the current action")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _request_cancel)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _run(
    ctx: typer.Context,
    intent: CommandIntent,
    packs: list[str] | None,
    *,
    force: bool = False,
    workers: int = 1,
) -> None:
    state: _CliState = ctx.obj
    cancel = threading.Event()
    options = PipelineOptions(
        dotfiles_root=state.dotfiles_root,
        packs=tuple(packs or ()),
        dry_run=state.dry_run,
        intent=intent,
        force=force,
        enable_home_symlinks=state.enable_home_symlinks,
        workers=workers,
        cancel=cancel,
    )

    try:
        with _cancel_on_sigint(cancel):
            context = Pipeline().run(options)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    _format_context(context)


@app.callback()
def main(
    ctx: typer.Context,
    dotfiles_root: Path | None = typer.Option(
        None,
        "--dotfiles-root",
        "-d",
        help="Directory holding the packs (default: $DOTFILES_ROOT, the git root, or the current directory)",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", "-n", help="Show what would happen without changing anything"),
    enable_home_symlinks: bool = typer.Option(
        True,
        "--enable-home-symlinks/--no-enable-home-symlinks",
        help="Create the user-visible links inside the home directory",
    ),
    verbose: int = typer.Option(0, "--verbose", "-v", count=True, help="Increase log output (-v info, -vv debug)"),
) -> None:
    """Deploy dotfiles packs into your home directory."""

    _configure_logging(verbose)
    ctx.obj = _CliState(dotfiles_root=dotfiles_root, dry_run=dry_run, enable_home_symlinks=enable_home_symlinks)


@app.command()
def link(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to process (default: all)"),
    workers: int = typer.Option(1, "--workers", "-j", min=1, help="Packs processed in parallel"),
) -> None:
    """Link files, PATH directories and shell scripts."""

    _run(ctx, CommandIntent.LINK, packs, workers=workers)


@app.command()
def provision(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to process (default: all)"),
    force: bool = typer.Option(False, "--force", "-f", help="Rerun scripts even if they already ran"),
    workers: int = typer.Option(1, "--workers", "-j", min=1, help="Packs processed in parallel"),
) -> None:
    """Run install scripts and Brewfiles that have not run yet."""

    _run(ctx, CommandIntent.PROVISION, packs, force=force, workers=workers)


@app.command()
def deploy(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to process (default: all)"),
    force: bool = typer.Option(False, "--force", "-f", help="Rerun provisioning even if it already ran"),
    workers: int = typer.Option(1, "--workers", "-j", min=1, help="Packs processed in parallel"),
) -> None:
    """Link and provision."""

    _run(ctx, CommandIntent.ALL, packs, force=force, workers=workers)


@app.command()
def unlink(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to unlink (default: all)"),
) -> None:
    """Remove the links dodot created."""

    _run(ctx, CommandIntent.UNLINK, packs)


@app.command()
def deprovision(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to deprovision (default: all)"),
) -> None:
    """Forget provisioning records so scripts run again."""

    _run(ctx, CommandIntent.DEPROVISION, packs)


@app.command()
def on(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to turn on (default: all)"),
    force: bool = typer.Option(False, "--force", "-f", help="Rerun provisioning even if it already ran"),
    workers: int = typer.Option(1, "--workers", "-j", min=1, help="Packs processed in parallel"),
) -> None:
    """Same as deploy."""

    _run(ctx, CommandIntent.ALL, packs, force=force, workers=workers)


@app.command()
def off(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to turn off (default: all)"),
) -> None:
    """Unlink, then deprovision."""

    code = 0
    for intent in (CommandIntent.UNLINK, CommandIntent.DEPROVISION):
        try:
            _run(ctx, intent, packs)
        except typer.Exit as exc:
            # Usage errors and cancellation stop here; handler failures do not.
            if exc.exit_code in (2, 3):
                raise
            code = max(code, exc.exit_code)
    if code:
        raise typer.Exit(code=code)


@app.command()
def status(
    ctx: typer.Context,
    packs: list[str] = typer.Argument(None, help="Packs to inspect (default: all)"),
) -> None:
    """Show the deployment state of every pack entry."""

    state: _CliState = ctx.obj
    try:
        entries = Pipeline().status(PipelineOptions(dotfiles_root=state.dotfiles_root, packs=tuple(packs or ())))
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    if not entries:
        console.print("[yellow]No pack entries found.[/yellow]")
        return
    _format_status(entries)
    if any(entry.status.state is not StatusState.READY for entry in entries):
        console.print("[yellow]Some entries are not deployed. Run 'dodot deploy' to bring them up to date.[/yellow]")


@app.command("list")
def list_packs(ctx: typer.Context) -> None:
    """List the packs under the dotfiles root."""

    state: _CliState = ctx.obj
    try:
        paths = _resolve_paths(state)
        packs = discover_packs(OSFileSystem(), paths)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Pack")
    table.add_column("Path", overflow="fold")
    table.add_column("Config")
    for pack in packs:
        table.add_row(pack.name, str(pack.path), PACK_CONFIG_FILENAME if pack.config else "")
    console.print(table)


@app.command()
def snippet(
    ctx: typer.Context,
    shell: str = typer.Option("bash", "--shell", "-s", help=f"Shell dialect ({', '.join(SUPPORTED_SHELLS)})"),
) -> None:
    """Print the shell code that activates PATH directories and shell scripts."""

    if shell not in SUPPORTED_SHELLS:
        console.print(f"[red]Unsupported shell '{shell}'. Choose one of: {', '.join(SUPPORTED_SHELLS)}.[/red]")
        raise typer.Exit(code=2)
    state: _CliState = ctx.obj
    paths = Paths.resolve(state.dotfiles_root)
    typer.echo(render_snippet(paths, shell), nl=False)


@app.command()
def genconfig(
    ctx: typer.Context,
    pack: str = typer.Argument(..., help="Pack to write the configuration into"),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing configuration"),
    stdout: bool = typer.Option(False, "--stdout", help="Print the configuration instead of writing it"),
) -> None:
    """Create a starter .dodot.toml listing how each entry is handled today."""

    state: _CliState = ctx.obj
    fs = OSFileSystem()
    try:
        paths = _resolve_paths(state)
        (selected,) = select_packs(fs, paths, [pack])
        matches = get_matches(fs, selected, DEFAULT_RULES)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    rules: list[dict[str, object]] = []
    for match in matches:
        entry: dict[str, object] = {"match": match.relative_path, "handler": match.handler}
        if match.options:
            entry["options"] = dict(match.options)
        rules.append(entry)
    text = render_pack_config(rules)

    if stdout:
        typer.echo(text, nl=False)
        return

    config_path = paths.pack_config_path(selected.name)
    if config_path.exists() and not force:
        console.print(f"[red]Configuration '{config_path}' already exists. Use --force to overwrite.[/red]")
        raise typer.Exit(code=1)

    config_path.write_text(text)
    console.print(f"[green]Created '{config_path}'.[/green]")


def _report_created(created: list[Path], paths: Paths, empty: str) -> None:
    if not created:
        console.print(f"[yellow]{empty}[/yellow]")
        return
    for path in created:
        console.print(f"[green]Created[/green] {path.relative_to(paths.dotfiles_root)}")


@app.command()
def init(
    ctx: typer.Context,
    pack: str = typer.Argument(..., help="Name of the new pack"),
) -> None:
    """Create a new pack with a starter configuration and handler templates."""

    state: _CliState = ctx.obj
    try:
        paths = _resolve_paths(state)
        if state.dry_run:
            console.print(f"[dim](dry run)[/dim] would create pack '{pack}' in '{paths.dotfiles_root}'")
            return
        created = init_pack(OSFileSystem(), paths, pack)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return
    _report_created(created, paths, "Nothing created.")


@app.command()
def fill(
    ctx: typer.Context,
    pack: str = typer.Argument(..., help="Pack to add templates to"),
) -> None:
    """Add templates for the handlers a pack does not use yet."""

    state: _CliState = ctx.obj
    try:
        paths = _resolve_paths(state)
        if state.dry_run:
            console.print(f"[dim](dry run)[/dim] would add missing templates to pack '{pack}'")
            return
        created = fill_pack(OSFileSystem(), paths, pack)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return
    _report_created(created, paths, f"Pack '{pack}' already uses every handler.")


@app.command()
def addignore(
    ctx: typer.Context,
    pack: str = typer.Argument(..., help="Pack to ignore"),
) -> None:
    """Make dodot skip a pack by adding a .dodotignore file."""

    state: _CliState = ctx.obj
    try:
        paths = _resolve_paths(state)
        if state.dry_run:
            console.print(f"[dim](dry run)[/dim] would ignore pack '{pack}'")
            return
        added = add_ignore(OSFileSystem(), paths, pack)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return
    if added:
        console.print(f"[green]Pack '{pack}' is now ignored.[/green]")
    else:
        console.print(f"[yellow]Pack '{pack}' was already ignored.[/yellow]")


@app.command()
def adopt(
    ctx: typer.Context,
    pack: str = typer.Argument(..., help="Pack that receives the files"),
    sources: list[Path] = typer.Argument(..., help="Existing files or directories to move into the pack"),
    force: bool = typer.Option(False, "--force", "-f", help="Replace entries that already exist in the pack"),
) -> None:
    """Move existing files into a pack and link them back in place."""

    state: _CliState = ctx.obj
    try:
        paths = _resolve_paths(state)
        adopted = Adopter(OSFileSystem(), paths, dry_run=state.dry_run).adopt(pack, sources, force=force)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)
        return

    if not adopted:
        console.print("[yellow]Nothing to adopt.[/yellow]")
        return
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("File", overflow="fold")
    table.add_column("Pack entry", overflow="fold")
    table.add_column("Rule")
    for item in adopted:
        entry = item.destination.relative_to(paths.dotfiles_root)
        table.add_row(str(item.original), str(entry), "added" if item.rule_added else "")
    console.print(table)
    prefix = "[dim](dry run)[/dim] " if state.dry_run else ""
    console.print(f"{prefix}adopt: [green]{len(adopted)} file(s)[/green]")


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
