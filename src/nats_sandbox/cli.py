"""Command-line interface for running and managing sandboxed NATS servers."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from pathlib import Path
from typing import Any, Optional

import anyio
import typer

from .config import RunnerOptions
from .data_dir import DataDirectoryManager
from .exceptions import ConfigurationError, NatsSandboxError
from .runner import NatsRunner
from .versions import ensure_nats_binary

app = typer.Typer(no_args_is_help=True, help="Disposable NATS servers for tests and experiments.")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_options(**values: Any) -> RunnerOptions:
    """Build options from CLI values, leaving unset ones to env/defaults."""
    provided = {
        key: value
        for key, value in values.items()
        if value is not None and value is not False and value != []
    }
    try:
        return RunnerOptions(**provided)
    except ConfigurationError as exc:
        typer.echo(str(exc), err=True)
        raise typer.Exit(2) from exc


@app.command("run")
def run_command(
    port: Optional[int] = typer.Option(None, "--port", help="Client port (default: random)."),
    monitoring_port: Optional[int] = typer.Option(
        None, "--monitoring-port", help="HTTP monitoring port (default: random)."
    ),
    jetstream: bool = typer.Option(False, "--jetstream", help="Enable JetStream."),
    debug: bool = typer.Option(False, "--debug", help="Pass --debug to the server."),
    trace: bool = typer.Option(False, "--trace", help="Pass --trace to the server."),
    version: Optional[str] = typer.Option(None, "--version", help="nats-server version."),
    data_dir: Optional[Path] = typer.Option(
        None, "--data-dir", help="Keep server data in this directory (not deleted)."
    ),
    binary_dir: Optional[Path] = typer.Option(
        None, "--binary-dir", help="Use the nats-server executable from this directory."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", help="Seconds to wait for the server to become ready."
    ),
    arg: Optional[list[str]] = typer.Option(
        None, "--arg", help="Extra argument passed to nats-server (repeatable)."
    ),
    show_output: bool = typer.Option(False, "--show-output", help="Echo server output."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Start a server and keep it running until interrupted."""
    _configure_logging(verbose)
    options = _build_options(
        port=port,
        monitoring_port=monitoring_port,
        enable_jetstream=jetstream,
        enable_debug_logging=debug,
        enable_trace_logging=trace,
        version=version,
        data_directory=data_dir,
        binary_directory=binary_dir,
        connection_timeout=timeout,
        additional_arguments=arg,
        standard_output_logger=typer.echo if show_output else None,
    )
    try:
        runner = NatsRunner.run(options)
    except NatsSandboxError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc

    try:
        typer.echo(f"url: {runner.url}")
        typer.echo(f"port: {runner.port}")
        typer.echo(f"monitoring_port: {runner.monitoring_port}")
        typer.echo(f"data_directory: {runner.data_directory}")
        typer.echo("Press Ctrl+C to stop.")
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        typer.echo("Stopping...")
    finally:
        runner.dispose()


@app.command("download")
def download_command(
    version: Optional[str] = typer.Option(None, "--version", help="nats-server version."),
    cache_dir: Optional[Path] = typer.Option(
        None, "--cache-dir", help="Binary cache root (default: user data directory)."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Download a nats-server release into the cache and print its path."""
    _configure_logging(verbose)
    options = _build_options(version=version, cache_directory=cache_dir)
    try:
        path = anyio.run(ensure_nats_binary, options)
    except NatsSandboxError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(1) from exc
    typer.echo(str(path))


@app.command("prune")
def prune_command(
    lifetime_hours: float = typer.Option(
        12.0, "--lifetime-hours", min=0.0, help="Delete directories older than this."
    ),
    root: Optional[Path] = typer.Option(
        None, "--root", help="Directory holding auto-managed data directories."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Delete data directories abandoned by crashed runs."""
    _configure_logging(verbose)
    manager = DataDirectoryManager(root)
    removed = manager.sweep(timedelta(hours=lifetime_hours))
    for path in removed:
        typer.echo(str(path))
    typer.echo(f"Removed {len(removed)} stale data directories from {manager.root}")


if __name__ == "__main__":  # pragma: no cover
    app()
