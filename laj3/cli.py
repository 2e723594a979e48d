"""Command-line entry point: ``laj3 dict|server|install``."""

from __future__ import annotations

import argparse
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Union

from rich.console import Console
from rich.markup import escape
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    TaskID,
    TextColumn,
    TransferSpeedColumn,
)
from rich.table import Table

from . import __version__
from .configuration import ConfigurationBundle, load_configuration
from .errors import ConnectionFailureError, InvalidPathError, Laj3Error
from .logging_utils import setup_logging
from .sync import (
    ClientSettings,
    Dictionary,
    InstallResult,
    InstallTarget,
    ProjectRegistry,
    ServerSettings,
    SyncClient,
    SyncServer,
    build_dictionary,
    load_local_dictionary,
    load_project,
    save_dictionary,
)

logger = logging.getLogger("laj3.cli")

LOG_LEVEL_ENV = "LAJ3_LOG_LEVEL"
PARTIAL_FAILURE_EXIT = 11


@dataclass(frozen=True)
class DictCommand:
    root: Path
    output: Optional[Path] = None
    recursive: bool = False
    empty: bool = False


@dataclass(frozen=True)
class ServerCommand:
    port: Optional[int] = None
    file: Optional[Path] = None
    root: Optional[Path] = None
    name: Optional[str] = None
    host: Optional[str] = None


@dataclass(frozen=True)
class InstallCommand:
    target: str
    file: Optional[Path] = None
    dest: Path = Path(".")
    delete: bool = False
    retries: Optional[int] = None
    update_dict: bool = False


Command = Union[DictCommand, ServerCommand, InstallCommand]


@dataclass(frozen=True)
class Invocation:
    """Arguments parsed once from the command line."""

    command: Command
    config_file: Optional[Path] = None
    log_level: Optional[str] = None
    log_dir: Optional[Path] = None


def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid int value: {raw!r}") from None
    if value < 0:
        raise argparse.ArgumentTypeError(f"must be 0 or more, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="laj3",
        description="Differential downloader: sync a tree from a laj3 server.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", type=Path, help="Extra YAML configuration file")
    parser.add_argument("--log-level", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")

    subparsers = parser.add_subparsers(dest="command", required=True)

    dict_parser = subparsers.add_parser("dict", help="Construct a dictionary from files")
    dict_parser.add_argument("-o", "--output", type=Path, help="Output file to store the dictionary")
    dict_parser.add_argument(
        "-r", "--recursive", action="store_true", help="Compute dictionary for subdirectories"
    )
    dict_parser.add_argument(
        "-e", "--empty", action="store_true", help="Produce an empty dictionary for a first install"
    )
    dict_parser.add_argument("root", type=Path, help="Root directory to add to dictionary or single file")

    server_parser = subparsers.add_parser("server", help="Start laj3 server")
    server_parser.add_argument("-p", "--port", type=int, help="Port to listen to")
    server_parser.add_argument("-f", "--file", type=Path, help="Dictionary file of the served tree")
    server_parser.add_argument("--root", type=Path, help="Directory the dictionary describes (default: .)")
    server_parser.add_argument("--name", help="Project name (default: dictionary file stem)")
    server_parser.add_argument("--host", help="Address to bind")

    install_parser = subparsers.add_parser("install", help="Download from server")
    install_parser.add_argument("-f", "--file", type=Path, help="Use a pre-computed dictionary file")
    install_parser.add_argument(
        "-d", "--dest", type=Path, default=Path("."), help="Destination directory (default: .)"
    )
    install_parser.add_argument(
        "--delete", action="store_true", help="Delete local files that are not on the server"
    )
    install_parser.add_argument(
        "--retries", type=_non_negative_int, help="Retries per file on connection loss"
    )
    install_parser.add_argument(
        "--update-dict", action="store_true", help="Rewrite the -f dictionary after installing"
    )
    install_parser.add_argument("target", help="host:port/project")

    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> Invocation:
    args = build_parser().parse_args(argv)

    command: Command
    if args.command == "dict":
        command = DictCommand(
            root=args.root, output=args.output, recursive=args.recursive, empty=args.empty
        )
    elif args.command == "server":
        command = ServerCommand(
            port=args.port, file=args.file, root=args.root, name=args.name, host=args.host
        )
    else:
        command = InstallCommand(
            target=args.target,
            file=args.file,
            dest=args.dest,
            delete=args.delete,
            retries=args.retries,
            update_dict=args.update_dict,
        )

    return Invocation(
        command=command,
        config_file=args.config,
        log_level=args.log_level,
        log_dir=args.log_dir,
    )


def run(command: Command, bundle: ConfigurationBundle, console: Console) -> int:
    """Dispatch a parsed command; returns the process exit code."""
    if isinstance(command, DictCommand):
        return run_dict(command, console)
    if isinstance(command, ServerCommand):
        return run_server(command, bundle, console)
    if isinstance(command, InstallCommand):
        return run_install(command, bundle, console)
    raise TypeError(f"Unhandled command {command!r}")


def run_dict(command: DictCommand, console: Console) -> int:
    dictionary = build_dictionary(command.root, recursive=command.recursive, empty=command.empty)

    if command.output is not None:
        save_dictionary(dictionary, command.output)
        console.print(
            f"[green]Saved dictionary with {len(dictionary)} files to {command.output}[/green]"
        )
    else:
        console.print(render_dictionary(dictionary, title=str(command.root)))
    return 0


def run_server(command: ServerCommand, bundle: ConfigurationBundle, console: Console) -> int:
    settings = ServerSettings.from_config(bundle.merged)
    if command.host:
        settings.host = command.host
    if command.port is not None:
        settings.port = command.port

    projects = [
        load_project(raw["name"], raw["root"], raw["dictionary"])
        for raw in bundle.merged.get("server", {}).get("projects", [])
    ]
    if command.file is not None:
        name = command.name or command.file.stem
        projects.append(load_project(name, command.root or Path("."), command.file))
    if not projects:
        raise InvalidPathError("No project to serve: pass --file or configure server.projects")

    try:
        registry = ProjectRegistry(projects)
    except ValueError as e:
        raise Laj3Error(str(e)) from e

    try:
        server = SyncServer(registry, settings)
    except OSError as e:
        raise ConnectionFailureError(
            f"Cannot bind {settings.host}:{settings.port}: {e}"
        ) from e

    with server:
        host, port = server.address
        console.print(
            f"[bold]Server started.[/bold] Listening on {host}:{port} "
            f"(projects: {', '.join(registry.names)})"
        )
        try:
            server.serve_forever()
        except KeyboardInterrupt:
            console.print("[yellow]Shutting down[/yellow]")
    return 0


def run_install(command: InstallCommand, bundle: ConfigurationBundle, console: Console) -> int:
    if command.update_dict and command.file is None:
        raise InvalidPathError("--update-dict needs a dictionary file given with -f")

    settings = ClientSettings.from_config(bundle.merged)
    if command.delete:
        settings.delete_removed = True
    if command.retries is not None:
        settings.retries = command.retries

    target = InstallTarget.parse(command.target)
    local = load_local_dictionary(command.file)
    command.dest.mkdir(parents=True, exist_ok=True)

    with _TransferProgress(console) as progress:
        client = SyncClient(command.dest, settings, progress_callback=progress.update)
        result = client.install(target, local)

    console.print(render_result(result))

    if command.update_dict and command.file is not None:
        save_dictionary(client.refreshed_dictionary(local, result), command.file)
        console.print(f"Updated local dictionary {command.file}")

    return 0 if result.success else PARTIAL_FAILURE_EXIT


class _TransferProgress:
    """Rich progress bar fed by the client's progress callback."""

    def __init__(self, console: Console):
        self._progress = Progress(
            TextColumn("{task.description}"),
            BarColumn(),
            DownloadColumn(),
            TransferSpeedColumn(),
            console=console,
            transient=True,
        )
        self._path: Optional[str] = None
        self._task: Optional[TaskID] = None

    def update(self, path: str, received: int, total: int) -> None:
        if path != self._path or self._task is None:
            if self._task is not None:
                self._progress.remove_task(self._task)
            self._path = path
            self._task = self._progress.add_task(path, total=total)
        self._progress.update(self._task, completed=received)

    def __enter__(self) -> "_TransferProgress":
        self._progress.start()
        return self

    def __exit__(self, *args) -> None:
        self._progress.stop()


def render_dictionary(dictionary: Dictionary, title: str = "Dictionary") -> Table:
    table = Table(title=f"{title} ({len(dictionary)} files)")
    table.add_column("Path", style="bold")
    table.add_column("Size", justify="right")
    table.add_column("SHA-256")
    for entry in dictionary:
        table.add_row(escape(entry.path), str(entry.size), entry.fingerprint)
    return table


def render_result(result: InstallResult) -> Table:
    table = Table(title=f"Install of '{result.project}'", show_header=False)
    table.add_column("Property", style="bold")
    table.add_column("Value")

    changeset = result.changeset
    table.add_row("Status", "[green]complete[/green]" if result.success else "[red]incomplete[/red]")
    table.add_row("Added", str(len(changeset.added)))
    table.add_row("Modified", str(len(changeset.modified)))
    table.add_row("Removed", str(len(changeset.removed)))
    table.add_row("Unchanged", str(len(changeset.unchanged)))
    table.add_row("Written", f"{len(result.written)} ({result.bytes_received} bytes)")
    if result.deleted:
        table.add_row("Deleted", str(len(result.deleted)))
    if result.kept:
        table.add_row("Kept (not on server)", str(len(result.kept)))
    for path, reason in sorted(result.failed.items()):
        table.add_row("[red]Failed[/red]", escape(f"{path}: {reason}"))
    return table


def _configure_logging(invocation: Invocation, bundle: ConfigurationBundle) -> None:
    log_config = bundle.merged.get("logging", {}) if bundle.merged else {}
    level = invocation.log_level or os.environ.get(LOG_LEVEL_ENV) or log_config.get("level", "WARNING")

    log_dir = invocation.log_dir
    if log_dir is None and log_config.get("directory"):
        log_dir = Path(log_config["directory"])

    log_path = setup_logging(log_dir, level, structured=bool(log_config.get("structured", False)))
    if log_path is not None:
        logger.info("Logging initialized at %s", log_path)


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the ``laj3`` console script."""

    invocation = parse_args(argv)
    console = Console()
    err_console = Console(stderr=True)

    bundle = load_configuration(invocation.config_file)
    _configure_logging(invocation, bundle)

    for diag in bundle.diagnostics:
        if diag.level != "info":
            err_console.print(f"[yellow]config {diag.level}:[/yellow] {escape(diag.message)}")
    if bundle.status != "ready":
        err_console.print(f"[red]error:[/red] configuration is {bundle.status}")
        return 1

    try:
        return run(invocation.command, bundle, console)
    except Laj3Error as e:
        logger.debug("Command failed", exc_info=True)
        err_console.print(f"[red]error:[/red] {escape(str(e))}")
        return e.code
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        return 130


__all__ = [
    "DictCommand",
    "ServerCommand",
    "InstallCommand",
    "Invocation",
    "build_parser",
    "parse_args",
    "run",
    "main",
]
