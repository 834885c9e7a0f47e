"""ServeTracker entry point.

Commands:
    sync          - Sync with the backend and keep the local mirror fresh
    clients       - List clients (falls back to the local mirror)
    serves        - List serve attempts
    export        - Export serve attempts in a date range as CSV
    push-local    - Create mirrored serve attempts missing on the backend
    clear-mirror  - Remove the local mirror
    diagnose      - Run developer diagnostics
    relay         - Run the email relay service
    init-config   - Write a default configuration file
    validate      - Validate the configuration file
"""

import asyncio
import logging
import signal
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import structlog
import typer
import yaml

from servetracker.backend import Backend, get_backend
from servetracker.config import get_default_config, load_config
from servetracker.mirror import MirrorStore
from servetracker.models import Config, SyncState
from servetracker.notifications import Notifier
from servetracker.orchestrator import ServeTracker
from servetracker.sync import SyncController

app = typer.Typer(
    name="servetracker",
    help="Process serving case management client",
    add_completion=False,
)

CONFIG_OPTION = typer.Option(
    Path("config.yaml"),
    "--config",
    "-c",
    help="Path to configuration file",
)


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Configure structured logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        log_format: Output format ("json" or "console")
    """
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", level=level.upper())


@dataclass
class Runtime:
    """Wired-up application objects."""

    backend: Backend
    mirror: MirrorStore
    sync: SyncController
    notifier: Notifier
    tracker: ServeTracker

    async def close(self) -> None:
        await self.sync.stop()
        await self.backend.close()
        self.mirror.close()


def build_runtime(config: Config) -> Runtime:
    """Create backend, mirror, sync controller, notifier and tracker."""
    backend = get_backend(config.backend)
    mirror = MirrorStore(config.mirror.db_path)
    sync = SyncController(
        backend,
        mirror,
        poll_interval=config.sync.poll_interval,
        realtime=config.sync.realtime,
    )
    notifier = Notifier(backend, config.email, config.backend.email_function_id)
    tracker = ServeTracker(backend, sync, notifier)
    return Runtime(backend, mirror, sync, notifier, tracker)


def _load(config_path: Path) -> Config:
    config = load_config(config_path)
    setup_logging(config.logging.level, config.logging.format)
    return config


async def _start(runtime: Runtime) -> None:
    state = await runtime.sync.start()
    if state == SyncState.DISCONNECTED and runtime.sync.warning:
        typer.echo(f"Warning: {runtime.sync.warning}", err=True)


@app.command()
def sync(config_path: Path = CONFIG_OPTION) -> None:
    """Sync with the backend until interrupted with Ctrl+C."""
    config = _load(config_path)
    logger = structlog.get_logger()
    runtime = build_runtime(config)

    async def run() -> None:
        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)

        await _start(runtime)
        logger.info("Sync running", state=runtime.sync.state.value)
        await stop_event.wait()
        logger.info("Received shutdown signal")
        await runtime.close()

    asyncio.run(run())


@app.command()
def clients(config_path: Path = CONFIG_OPTION) -> None:
    """List clients, from the backend when reachable, else the local mirror."""
    runtime = build_runtime(_load(config_path))

    async def run() -> None:
        await _start(runtime)
        for client in runtime.sync.clients:
            typer.echo(f"{client.id}\t{client.name}\t{client.email}\t{client.phone}")
        typer.echo(f"\n{len(runtime.sync.clients)} clients ({runtime.sync.state.value})")
        await runtime.close()

    asyncio.run(run())


@app.command()
def serves(
    config_path: Path = CONFIG_OPTION,
    client_id: str = typer.Option(None, "--client", help="Only this client"),
) -> None:
    """List serve attempts."""
    runtime = build_runtime(_load(config_path))

    async def run() -> None:
        await _start(runtime)
        rows = [s for s in runtime.sync.serves if not client_id or s.client_id == client_id]
        for serve in rows:
            typer.echo(
                f"{serve.timestamp:%Y-%m-%d %H:%M}\t{serve.client_name}\t"
                f"{serve.case_number}\t#{serve.attempt_number}\t{serve.status}"
            )
        typer.echo(f"\n{len(rows)} serve attempts ({runtime.sync.state.value})")
        await runtime.close()

    asyncio.run(run())


@app.command()
def export(
    start: datetime = typer.Option(..., "--start", formats=["%Y-%m-%d"]),
    end: datetime = typer.Option(..., "--end", formats=["%Y-%m-%d"]),
    output: Path = typer.Option(None, "--output", "-o", help="CSV file to write"),
    config_path: Path = CONFIG_OPTION,
) -> None:
    """Export serve attempts in a date range as CSV."""
    runtime = build_runtime(_load(config_path))

    async def run() -> str:
        await _start(runtime)
        data = runtime.tracker.export_serves_csv(start.date(), end.date())
        await runtime.close()
        return data

    data = asyncio.run(run())
    output = output or Path(f"serve-data-{start:%Y-%m-%d}-to-{end:%Y-%m-%d}.csv")
    output.write_text(data, encoding="utf-8")
    typer.echo(f"Exported to: {output}")


@app.command()
def push_local(config_path: Path = CONFIG_OPTION) -> None:
    """Create mirrored serve attempts that the backend does not have."""
    runtime = build_runtime(_load(config_path))

    async def run() -> int:
        runtime.sync.load_mirror()
        created = await runtime.tracker.push_local_serves()
        await runtime.close()
        return created

    typer.echo(f"Pushed {asyncio.run(run())} serve attempts")


@app.command()
def clear_mirror(config_path: Path = CONFIG_OPTION) -> None:
    """Remove the locally mirrored clients and serve attempts."""
    config = _load(config_path)
    mirror = MirrorStore(config.mirror.db_path)
    mirror.clear()
    mirror.close()
    typer.echo("Local mirror cleared")


@app.command()
def diagnose(
    config_path: Path = CONFIG_OPTION,
    email: str = typer.Option(None, "--email", help="Send a test email to this address"),
) -> None:
    """Run developer diagnostics against the backend, mirror and email relay."""
    from servetracker.diagnostics import run_diagnostics

    runtime = build_runtime(_load(config_path))

    async def run():
        results = await run_diagnostics(
            runtime.backend, runtime.mirror, runtime.notifier, email
        )
        await runtime.close()
        return results

    results = asyncio.run(run())
    for result in results:
        mark = "OK  " if result.ok else "FAIL"
        typer.echo(f"[{mark}] {result.name}: {result.detail}")
    if not all(r.ok for r in results):
        raise typer.Exit(1)


@app.command()
def relay(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(8000, "--port"),
    log_level: str = typer.Option("INFO", "--log-level"),
) -> None:
    """Run the email relay service."""
    import uvicorn

    from servetracker.relay import create_app

    setup_logging(log_level, "json")
    uvicorn.run(create_app(), host=host, port=port)


@app.command()
def init_config(
    output_path: Path = typer.Option(
        Path("config.yaml"),
        "--output",
        "-o",
        help="Path to write configuration file",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Overwrite existing file",
    ),
) -> None:
    """Generate a default configuration file."""
    if output_path.exists() and not force:
        typer.echo(f"File already exists: {output_path}")
        typer.echo("Use --force to overwrite")
        raise typer.Exit(1)

    with open(output_path, "w") as f:
        yaml.dump(get_default_config(), f, default_flow_style=False, sort_keys=False)

    typer.echo(f"Configuration written to: {output_path}")


@app.command()
def validate(config_path: Path = CONFIG_OPTION) -> None:
    """Validate the configuration file."""
    try:
        config = load_config(config_path)
        typer.echo("Configuration is valid")
        typer.echo(f"  Backend: {config.backend.kind} at {config.backend.endpoint}")
        typer.echo(f"  Mirror: {config.mirror.db_path}")
        typer.echo(f"  Poll interval: {config.sync.poll_interval}s")
        typer.echo(f"  Business email: {config.email.business_email}")
    except FileNotFoundError as e:
        typer.echo(f"Configuration file not found: {e}")
        raise typer.Exit(1) from None
    except Exception as e:
        typer.echo(f"Configuration error: {e}")
        raise typer.Exit(1) from None


if __name__ == "__main__":
    app()
