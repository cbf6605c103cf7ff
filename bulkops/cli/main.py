#!/usr/bin/env python3
"""Command-line interface for the bulk-operation engine using Typer.

Provides configuration inspection and initialization, and read access to
persisted operation timelines.
"""

import asyncio
import json
from enum import IntEnum
from pathlib import Path
from typing import Optional

import typer
import yaml
from typing_extensions import Annotated

from .. import __version__
from ..config import ConfigLoadError, default_config_path, load_engine_config, save_default_config
from ..models.config import EngineConfig
from ..oplog import FileLogStore, LogLevel


class ExitCode(IntEnum):
    """CLI exit codes."""
    SUCCESS = 0
    NOT_FOUND = 1
    CONFIG_ERROR = 3
    RUNTIME_ERROR = 4


app = typer.Typer(
    name="bulkops",
    help="Resilient bulk-operation execution engine",
    add_completion=False
)

config_app = typer.Typer(help="Inspect and initialize engine configuration")
app.add_typer(config_app, name="config")

_LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR, LogLevel.CRITICAL]


@app.callback()
def main():
    """
    Resilient bulk-operation execution engine.

    Rate-limited request queue, staged execution with rollback, categorized
    error recovery and an auditable operation timeline.
    """
    pass


@app.command(name="version")
def show_version():
    """Show version information."""
    typer.echo(f"bulkops v{__version__}")


def _load_config(config_file: Optional[Path], environment: Optional[str]) -> EngineConfig:
    try:
        if config_file is None and not default_config_path().exists():
            return EngineConfig(environment=environment or "production")
        return load_engine_config(config_file, environment=environment)
    except ConfigLoadError as e:
        typer.echo(f"❌ Configuration error: {e}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


@config_app.command("show")
def config_show(
    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to engine YAML config (default: config/engine.yaml)")
    ] = None,

    environment: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment overrides to apply")
    ] = None,

    output_format: Annotated[
        str,
        typer.Option("--format", "-f", help="Output format: yaml or json")
    ] = "yaml",
):
    """Print the effective configuration after environment overrides."""
    config = _load_config(config_file, environment)
    data = config.model_dump(mode="json")

    if output_format.lower() == "json":
        typer.echo(json.dumps(data, indent=2))
    elif output_format.lower() in ("yaml", "yml"):
        typer.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        typer.echo(f"❌ Unsupported output format: {output_format}", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)


@config_app.command("init")
def config_init(
    output: Annotated[
        Path,
        typer.Argument(help="Where to write the default configuration")
    ] = Path("config/engine.yaml"),

    force: Annotated[
        bool,
        typer.Option("--force", help="Overwrite an existing file")
    ] = False,
):
    """Write a default configuration file."""
    if output.exists() and not force:
        typer.echo(f"❌ {output} already exists (use --force to overwrite)", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    output.parent.mkdir(parents=True, exist_ok=True)
    try:
        save_default_config(output)
    except ConfigLoadError as e:
        typer.echo(f"❌ {e}", err=True)
        raise typer.Exit(code=ExitCode.RUNTIME_ERROR.value)
    typer.echo(f"✅ Wrote default configuration to {output}")


def _resolve_log_dir(log_dir: Optional[Path], config_file: Optional[Path], environment: Optional[str]) -> Path:
    if log_dir is not None:
        return log_dir
    config = _load_config(config_file, environment)
    if config.logging.log_dir is None:
        typer.echo("❌ No log directory configured (set logging.log_dir or pass --log-dir)", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)
    return config.logging.log_dir


@app.command()
def timeline(
    operation_id: Annotated[
        str,
        typer.Argument(help="Operation whose timeline to print")
    ],

    log_dir: Annotated[
        Optional[Path],
        typer.Option("--log-dir", help="Directory holding persisted timelines")
    ] = None,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to engine YAML config")
    ] = None,

    environment: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment overrides to apply")
    ] = None,

    min_level: Annotated[
        str,
        typer.Option("--level", "-l", help="Minimum level: DEBUG, INFO, WARN, ERROR or CRITICAL")
    ] = "DEBUG",

    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print entries as JSON lines")
    ] = False,
):
    """Print the persisted audit timeline of an operation."""
    try:
        threshold = LogLevel(min_level.upper())
    except ValueError:
        typer.echo(f"❌ Invalid level '{min_level}'", err=True)
        raise typer.Exit(code=ExitCode.CONFIG_ERROR.value)

    store = FileLogStore(_resolve_log_dir(log_dir, config_file, environment))
    entries = asyncio.run(store.entries_for(operation_id))
    if not entries:
        typer.echo(f"❌ No timeline found for operation {operation_id}", err=True)
        raise typer.Exit(code=ExitCode.NOT_FOUND.value)

    minimum = _LEVEL_ORDER.index(threshold)
    for entry in sorted(entries, key=lambda e: e.timestamp):
        if _LEVEL_ORDER.index(entry.level) < minimum:
            continue
        if as_json:
            typer.echo(entry.model_dump_json())
        else:
            stage = entry.metadata.stage or "-"
            typer.echo(
                f"{entry.timestamp.isoformat()} {entry.level.value:<8} "
                f"{entry.category.value:<11} [{stage}] {entry.message}"
            )


@app.command()
def purge(
    log_dir: Annotated[
        Optional[Path],
        typer.Option("--log-dir", help="Directory holding persisted timelines")
    ] = None,

    config_file: Annotated[
        Optional[Path],
        typer.Option("--config", "-c", help="Path to engine YAML config")
    ] = None,

    environment: Annotated[
        Optional[str],
        typer.Option("--env", "-e", help="Environment overrides to apply")
    ] = None,

    retention_days: Annotated[
        Optional[int],
        typer.Option("--retention-days", help="Override the configured retention")
    ] = None,
):
    """Delete operation timelines older than the retention window."""
    directory = _resolve_log_dir(log_dir, config_file, environment)
    if retention_days is None:
        retention_days = _load_config(config_file, environment).logging.retention_days

    store = FileLogStore(directory, retention_days=retention_days)
    removed = asyncio.run(store.purge_expired())
    typer.echo(f"✅ Removed {removed} expired timeline(s) from {directory}")


def cli_main():
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    cli_main()
