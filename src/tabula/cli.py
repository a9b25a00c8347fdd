# src/tabula/cli.py
"""Tabula Command Line Interface.

Operator commands over the record table: inspect records, drop cached
state, check or reset the circuit breaker, and initialize the header row.
"""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

import typer
import yaml
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from tabula import __version__
from tabula.contracts.errors import TabulaError, describe_failure
from tabula.contracts.records import Record
from tabula.core.config import TabulaSettings, load_settings
from tabula.core.logging import configure_from_settings, configure_logging
from tabula.engine.access import DataAccess

__all__ = ["app"]

app = typer.Typer(
    name="tabula",
    help="Tabula: transactional record access over a rate-limited remote table.",
    no_args_is_help=True,
)

circuit_app = typer.Typer(help="Inspect or reset the shared circuit breaker.", no_args_is_help=True)
app.add_typer(circuit_app, name="circuit")


class OutputFormat(StrEnum):
    JSON = "json"
    YAML = "yaml"


@dataclass(frozen=True)
class LogFlags:
    """Global logging flags, layered over the settings file."""

    verbose: bool = False
    json_logs: bool = False


SETTINGS_OPTION = typer.Option(
    "settings.yaml",
    "--settings",
    "-s",
    help="Path to settings YAML file.",
)
FORMAT_OPTION = typer.Option(
    OutputFormat.JSON,
    "--format",
    "-f",
    help="Output format: 'json' or 'yaml'.",
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"tabula version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log at DEBUG level, overriding the settings file.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Write JSON log lines to stderr, overriding the settings file.",
    ),
) -> None:
    """Tabula: transactional record access over a rate-limited remote table."""
    # Until a settings file is loaded, only warnings (or everything with -v)
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")
    ctx.obj = LogFlags(verbose=verbose, json_logs=json_logs)


def _load(settings: str) -> TabulaSettings:
    settings_path = Path(settings).expanduser()
    try:
        return load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(1) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(1) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(1) from None


def _build_access(config: TabulaSettings) -> DataAccess:
    return DataAccess.from_settings(config)


@contextmanager
def _access(ctx: typer.Context, settings: str) -> Iterator[DataAccess]:
    """Open DataAccess for a command; map data-access failures to exit code 1."""
    config = _load(settings)
    flags = ctx.find_object(LogFlags) or LogFlags()
    configure_from_settings(config.logging, verbose=flags.verbose, json_output=True if flags.json_logs else None)
    access = _build_access(config)
    try:
        yield access
    except TabulaError as e:
        failure = describe_failure(e)
        typer.echo(f"Error: {failure.message} (ref {failure.correlation_id})", err=True)
        typer.echo(f"  {type(e).__name__}: {e}", err=True)
        raise typer.Exit(1) from None
    finally:
        access.close()


def _emit(data: Any, output_format: OutputFormat) -> None:
    if output_format is OutputFormat.YAML:
        typer.echo(yaml.safe_dump(data, sort_keys=False, allow_unicode=True).rstrip())
    else:
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))


def _record_data(record: Record) -> dict[str, Any]:
    return record.to_dict()


@app.command()
def show(
    ctx: typer.Context,
    record_id: str = typer.Argument(..., help="Record id."),
    settings: str = SETTINGS_OPTION,
    output_format: OutputFormat = FORMAT_OPTION,
) -> None:
    """Show one record by id."""
    with _access(ctx, settings) as access:
        record = access.read_record(record_id)
        if record is None:
            typer.echo(f"Record not found: {record_id}", err=True)
            raise typer.Exit(1)
        _emit(_record_data(record), output_format)


@app.command()
def find(
    ctx: typer.Context,
    owner_key: str = typer.Argument(..., help="Owner key (e.g. e-mail address)."),
    settings: str = SETTINGS_OPTION,
    output_format: OutputFormat = FORMAT_OPTION,
) -> None:
    """Find the record held by an owner key."""
    with _access(ctx, settings) as access:
        record = access.find_by_owner_key(owner_key)
        if record is None:
            typer.echo(f"No record for owner key: {owner_key}", err=True)
            raise typer.Exit(1)
        _emit(_record_data(record), output_format)


@app.command("list")
def list_records(
    ctx: typer.Context,
    active_only: bool = typer.Option(False, "--active-only", help="Only active records."),
    settings: str = SETTINGS_OPTION,
    output_format: OutputFormat = FORMAT_OPTION,
) -> None:
    """List every record."""
    with _access(ctx, settings) as access:
        _emit([_record_data(record) for record in access.list_records(active_only=active_only)], output_format)


@app.command()
def invalidate(
    ctx: typer.Context,
    namespace: str = typer.Argument("records", help="Cache namespace to invalidate."),
    settings: str = SETTINGS_OPTION,
) -> None:
    """Invalidate every cached entry of a namespace, in every process."""
    with _access(ctx, settings) as access:
        version = access.invalidate_all(namespace)
        typer.echo(f"Namespace {namespace!r} now at version {version}")


@app.command("init-table")
def init_table(ctx: typer.Context, settings: str = SETTINGS_OPTION) -> None:
    """Write the header row on an empty table, or verify an existing one."""
    with _access(ctx, settings) as access:
        written = access.store.ensure_header()
        typer.echo("Header row written." if written else "Header row already present and valid.")


@circuit_app.command("status")
def circuit_status(ctx: typer.Context, settings: str = SETTINGS_OPTION) -> None:
    """Show the shared circuit breaker state."""
    with _access(ctx, settings) as access:
        breaker = access.breaker
        state = breaker.state()
        remaining_ms = breaker.open_remaining_ms()
        if remaining_ms > 0:
            typer.echo(f"Circuit {breaker.name!r}: OPEN for another {remaining_ms / 1000:.0f}s")
        else:
            typer.echo(f"Circuit {breaker.name!r}: closed")
        typer.echo(f"  consecutive rate limits: {state.consecutive_errors}/{breaker.failure_threshold}")


@circuit_app.command("reset")
def circuit_reset(ctx: typer.Context, settings: str = SETTINGS_OPTION) -> None:
    """Force the circuit breaker closed."""
    with _access(ctx, settings) as access:
        access.breaker.reset()
        typer.echo(f"Circuit {access.breaker.name!r} reset.")
