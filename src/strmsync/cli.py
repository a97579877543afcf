"""CLI entry point for strmsync."""

from __future__ import annotations

import dataclasses
import logging
import signal
import threading
import time
from contextlib import contextmanager
from io import StringIO
from pathlib import Path
from types import FrameType
from typing import Any, Callable, Iterator, Optional

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from strmsync import __version__
from strmsync.alist import AlistClient
from strmsync.config import StrmsyncConfig, load_config, merge_config
from strmsync.errors import AlistError, GenerationError, MappingNotFoundError, RunCancelled
from strmsync.generator import Generator
from strmsync.logging_setup import setup_logging
from strmsync.models import RefreshMode, RemoteItem
from strmsync.pool import CancelToken
from strmsync.schedule import ScheduleRegistry
from strmsync.service import SyncService
from strmsync.store import MappingStore, TaskRecorder

logger = logging.getLogger(__name__)

# Flag for graceful shutdown, set by signal handler
_shutdown_requested = False

app = typer.Typer(
    name="strmsync",
    help="Mirror AList media trees into .strm stub files.",
    invoke_without_command=True,
    no_args_is_help=True,
)


def _resolve_config_path(config: Optional[str]) -> Path:
    """Resolve the config file path, falling back to ./config.toml."""
    if config is not None:
        path = Path(config)
    else:
        path = Path("config.toml")
        if not path.exists():
            typer.echo(
                "Error: No --config given and no config.toml found in current directory",
                err=True,
            )
            raise typer.Exit(code=1)
    if not path.exists():
        typer.echo(f"Error: Config file not found: {path}", err=True)
        raise typer.Exit(code=1)
    return path


def _build_config(config_path: Path, log_level: Optional[str] = None) -> StrmsyncConfig:
    """Load TOML config and merge with CLI overrides, exiting on errors."""
    cli_overrides: dict[str, Any] = {}
    if log_level is not None:
        cli_overrides["log_level"] = log_level
    try:
        return merge_config(load_config(config_path), cli_overrides)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)


def _render(table: Table) -> str:
    """Render a rich table to plain text."""
    console = Console(file=StringIO(), force_terminal=False, width=120)
    console.print(table)
    output = console.file
    assert isinstance(output, StringIO)
    return output.getvalue()


def _tasks_path(cfg: StrmsyncConfig) -> Path:
    return cfg.data_dir / "tasks.json"


def _log_file_path(cfg: StrmsyncConfig) -> Path:
    return cfg.data_dir / "strmsync.log"


def _build_client(cfg: StrmsyncConfig) -> AlistClient:
    return AlistClient(
        cfg.alist.url,
        cfg.alist.token,
        sign_enabled=cfg.alist.sign_enabled,
        timeout=cfg.alist.timeout,
        case_sensitive=cfg.alist.case_sensitive_extensions,
    )


def _build_service(cfg: StrmsyncConfig, config_path: Path, client: AlistClient) -> SyncService:
    """Wire the engine, mapping store and task recorder around ``client``."""
    return SyncService(
        Generator(client, client),
        MappingStore(config_path, initial=cfg.mappings),
        TaskRecorder(_tasks_path(cfg)),
    )


@contextmanager
def _signal_handlers(on_first: Callable[[], None]) -> Iterator[None]:
    """Call ``on_first`` on the first SIGINT/SIGTERM; force-quit on the second."""
    global _shutdown_requested  # noqa: PLW0603
    _shutdown_requested = False

    prev_sigint = signal.getsignal(signal.SIGINT)
    prev_sigterm = signal.getsignal(signal.SIGTERM)

    def _handle_shutdown(signum: int, frame: FrameType | None) -> None:
        global _shutdown_requested  # noqa: PLW0603
        if _shutdown_requested:
            # Second signal: force exit immediately
            signal.signal(signal.SIGINT, signal.SIG_DFL)
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
            raise KeyboardInterrupt
        _shutdown_requested = True
        sig_name = signal.Signals(signum).name
        logger.info("Received %s, finishing in-flight work (press again to force quit)", sig_name)
        on_first()

    signal.signal(signal.SIGINT, _handle_shutdown)
    signal.signal(signal.SIGTERM, _handle_shutdown)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, prev_sigint)
        signal.signal(signal.SIGTERM, prev_sigterm)


@app.command()
def run(
    config: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file (default: ./config.toml)"),
    name: Optional[str] = typer.Option(None, "--name", help="Run only the mapping with this name"),
    mode: Optional[RefreshMode] = typer.Option(None, "--mode", help="Override the mapping's refresh mode"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Generate stub files for one mapping or all enabled mappings."""
    config_path = _resolve_config_path(config)
    cfg = _build_config(config_path, log_level)
    setup_logging(cfg.log_level, _log_file_path(cfg))

    logger.info("strmsync v%s", __version__)
    service = _build_service(cfg, config_path, _build_client(cfg))
    token = CancelToken()

    with _signal_handlers(token.cancel):
        if name is None:
            if mode is not None:
                logger.warning("--mode only applies together with --name; ignoring")
            service.run_all(token)
            return
        _run_one(service, token, name, mode)


def _run_one(
    service: SyncService,
    token: CancelToken,
    name: str,
    mode: Optional[RefreshMode],
) -> None:
    """Run a single mapping with a live progress display."""
    spec = service.mappings.get_by_name(name)
    if spec is None:
        logger.error("%s", MappingNotFoundError(name))
        raise typer.Exit(code=1)
    if mode is not None:
        spec = dataclasses.replace(spec, mode=mode)

    with Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        TextColumn("{task.completed} items"),
        TextColumn("{task.fields[current_file]}"),
        TimeElapsedColumn(),
    ) as progress:
        task = progress.add_task(spec.name, total=None, current_file="")

        def _advance(item: RemoteItem, outcome: str) -> None:
            progress.update(task, advance=1, current_file=item.path.rsplit("/", 1)[-1])

        try:
            result = service.run_mapping(token, spec, on_item=_advance)
        except RunCancelled:
            logger.info("Stopped: interrupted by signal")
            raise typer.Exit(code=130)
        except GenerationError as e:
            logger.error("%s", e)
            raise typer.Exit(code=1)

    logger.info("--- Summary: %s ---", spec.name)
    logger.info("Created: %d", result.created)
    logger.info("Skipped (already present): %d", result.skipped)
    logger.info("Deleted: %d", result.deleted)
    logger.info("Errors: %d", len(result.errors))
    for err in result.errors:
        logger.warning("  %s", err)


@app.command()
def serve(
    config: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file (default: ./config.toml)"),
    run_now: bool = typer.Option(False, "--run-now", help="Run all enabled mappings once at startup"),
    reload_interval: float = typer.Option(30, "--reload-interval", help="Seconds between config change checks"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override log level"),
) -> None:
    """Run scheduled mappings until interrupted."""
    config_path = _resolve_config_path(config)
    cfg = _build_config(config_path, log_level)
    setup_logging(cfg.log_level, _log_file_path(cfg))

    logger.info("strmsync v%s, starting scheduler", __version__)
    client = _build_client(cfg)
    try:
        client.ping()
    except AlistError as e:
        logger.warning("%s; scheduled runs will fail until it is reachable", e)

    service = _build_service(cfg, config_path, client)
    registry = ScheduleRegistry(service.run_scheduled, timezone=cfg.timezone)
    stop = threading.Event()

    def _stop() -> None:
        service.shutdown_token.cancel()
        stop.set()

    with _signal_handlers(_stop):
        registry.start(service.mappings.list_mappings())
        _log_next_runs(registry)
        if run_now:
            threading.Thread(
                target=service.run_all, args=(service.shutdown_token,), name="startup-run", daemon=True
            ).start()
        try:
            _serve_loop(service, registry, stop, reload_interval)
        finally:
            registry.shutdown(wait=True)


def _serve_loop(
    service: SyncService,
    registry: ScheduleRegistry,
    stop: threading.Event,
    reload_interval: float,
) -> None:
    """Block until ``stop`` is set, re-syncing schedules when the config changes."""
    next_check = time.monotonic() + reload_interval
    while not stop.wait(timeout=1.0):
        if reload_interval > 0 and time.monotonic() >= next_check:
            next_check = time.monotonic() + reload_interval
            if service.mappings.changed():
                logger.info("Config changed, re-syncing schedules")
                registry.sync(service.mappings.list_mappings())
                _log_next_runs(registry)


def _log_next_runs(registry: ScheduleRegistry) -> None:
    names = {e.mapping_id: e.mapping_name for e in registry.entries()}
    for mapping_id, fire in sorted(registry.next_fire_times().items()):
        if fire is not None:
            logger.info("Next run of %s: %s", names.get(mapping_id, mapping_id), fire.isoformat())


@app.command()
def schedules(
    config: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file (default: ./config.toml)"),
) -> None:
    """Show each mapping's schedule and next fire time."""
    cfg = _build_config(_resolve_config_path(config))

    table = Table(title="Schedules", show_header=True, header_style="bold")
    table.add_column("ID", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Cron")
    table.add_column("Enabled")
    table.add_column("Next run")

    # Paused, so fire times are computed but nothing runs.
    registry = ScheduleRegistry(lambda name: None, timezone=cfg.timezone)
    registry.start(cfg.mappings, paused=True)
    try:
        fire_times = registry.next_fire_times()
    finally:
        registry.shutdown(wait=False)

    for m in cfg.mappings:
        fire = fire_times.get(m.id)
        next_run = fire.strftime("%Y-%m-%d %H:%M:%S %Z") if fire else ""
        table.add_row(str(m.id), m.name, m.cron or "-", "yes" if m.enabled else "no", next_run)

    typer.echo(_render(table))


@app.command()
def tasks(
    config: Optional[str] = typer.Option(None, "--config", help="Path to TOML config file (default: ./config.toml)"),
    limit: int = typer.Option(20, "--limit", help="Number of recent tasks to show"),
    task_id: Optional[str] = typer.Option(None, "--task", help="Show only the task with this full ID"),
) -> None:
    """Show recent runs and their outcomes."""
    cfg = _build_config(_resolve_config_path(config))
    recorder = TaskRecorder(_tasks_path(cfg))
    if task_id is not None:
        record = recorder.get(task_id)
        if record is None:
            typer.echo(f"Error: No task with ID {task_id}", err=True)
            raise typer.Exit(code=1)
        records = [record]
    else:
        records = recorder.recent(limit)

    table = Table(title="Recent Tasks", show_header=True, header_style="bold")
    table.add_column("Task", style="cyan")
    table.add_column("Mapping")
    table.add_column("Mode")
    table.add_column("Status")
    table.add_column("Created", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Deleted", justify="right")
    table.add_column("Started")
    table.add_column("Errors")

    for r in records:
        table.add_row(
            r.task_id[:8],
            r.mapping_name,
            r.mode,
            r.status,
            str(r.files_created),
            str(r.files_skipped),
            str(r.files_deleted),
            r.started_at[:19],
            (r.errors[:60] + "...") if len(r.errors) > 60 else r.errors,
        )

    typer.echo(_render(table))


@app.command()
def version() -> None:
    """Print version information."""
    typer.echo(f"strmsync {__version__}")


if __name__ == "__main__":
    app()
