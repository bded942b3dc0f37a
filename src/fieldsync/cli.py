"""
Command-line interface for fieldsync.
"""

import asyncio
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass
from functools import wraps
from pathlib import Path
from typing import AsyncIterator, List, Tuple

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .config import FieldSyncConfig, setup_logging
from .exceptions import ConfigurationError, FieldSyncError


console = Console()

_HINTS = {
    "retry": "The source could not be reached. Try again in a moment.",
    "reload": "Someone else saved this schema. Run sync again to reload it.",
    "fix_field": "Fix the field definition and try again.",
}


def handle_errors(func):
    """Decorator to handle errors gracefully in CLI commands."""
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except FieldSyncError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            hint = _HINTS.get(e.user_action or "")
            if hint:
                console.print(f"[yellow]Hint:[/yellow] {hint}")
            sys.exit(1)
        except KeyboardInterrupt:
            console.print("\n[yellow]Interrupted by user[/yellow]")
            sys.exit(0)
        except Exception as e:
            console.print(f"[red]Unexpected error:[/red] {escape(str(e))}")
            if "--debug" in sys.argv:
                import traceback
                traceback.print_exc()
            sys.exit(1)
    return wrapper


def _load_config(path: str) -> FieldSyncConfig:
    config = FieldSyncConfig.from_yaml(path)
    config.validate_config()
    setup_logging(config.logging, debug=config.debug or "--debug" in sys.argv)
    return config


@dataclass
class _Runtime:
    """Store, registry and publisher wired from configuration."""

    store: object
    registry: object
    publisher: object


@asynccontextmanager
async def _open_runtime(config: FieldSyncConfig) -> AsyncIterator[_Runtime]:
    from .database import (
        ConnectionConfig,
        ConnectionPool,
        InMemoryDependentRegistry,
        InMemorySchemaStore,
        PostgresDependentRegistry,
        PostgresSchemaStore,
    )
    from .events import PostgresNotifyPublisher, RecordingEventPublisher, RedisEventPublisher

    pool = None
    if config.store.backend == "postgres":
        pool = ConnectionPool(ConnectionConfig.from_store_config(config.store))
        await pool.initialize()
        store = PostgresSchemaStore(pool)
        registry = PostgresDependentRegistry(pool)
    else:
        store = InMemorySchemaStore()
        registry = InMemoryDependentRegistry()

    if config.events.backend == "redis":
        publisher = RedisEventPublisher(config.events.connection, config.events.channel)
    elif config.events.backend == "postgres":
        publisher = PostgresNotifyPublisher(pool, config.events.channel)
    else:
        publisher = RecordingEventPublisher()

    try:
        yield _Runtime(store=store, registry=registry, publisher=publisher)
    finally:
        await publisher.close()
        if pool is not None:
            await pool.close()


def _create_scanner(config: FieldSyncConfig, connection_id: str):
    from .sources import ScannerFactory

    connection = config.get_connection(connection_id)
    source = config.get_source(connection.source)
    return connection, ScannerFactory.create_scanner(source, connection.sheet_name)


@asynccontextmanager
async def _open_session(config: FieldSyncConfig, connection_id: str):
    from .session import ReconciliationSession

    connection, scanner = _create_scanner(config, connection_id)
    async with _open_runtime(config) as runtime, scanner:
        yield ReconciliationSession(
            connection_id=connection.connection_id,
            source_id=connection.source_id,
            scanner=scanner,
            store=runtime.store,
            registry=runtime.registry,
            publisher=runtime.publisher,
            config=config.reconciliation,
        )


@click.group()
@click.version_option(__version__)
@click.option(
    "--debug", is_flag=True, help="Enable debug mode"
)
@click.pass_context
def main(ctx, debug):
    """fieldsync: keep field schemas in step with spreadsheet sources."""
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


config_option = click.option(
    "--config",
    "-c",
    type=click.Path(exists=True),
    required=True,
    help="Configuration file path",
)

connection_option = click.option(
    "--connection",
    "connection_id",
    required=True,
    help="Connection id from the configuration",
)


@main.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(),
    default="fieldsync-config.yaml",
    help="Output configuration file path",
)
@handle_errors
def init(output: str):
    """Initialize a new fieldsync configuration file."""
    if Path(output).exists():
        if not click.confirm(f"Configuration file {output} already exists. Overwrite?"):
            return

    _create_default_config().to_yaml(output)
    console.print(f"[green]✓[/green] Configuration file created: {output}")
    console.print("\n[yellow]Next steps:[/yellow]")
    console.print("1. Edit the sources and connections in the configuration file")
    console.print("2. Run: fieldsync validate-config -c your-config.yaml")
    console.print("3. With a postgres store, run: fieldsync setup-store -c your-config.yaml")
    console.print("4. Run: fieldsync sync -c your-config.yaml --connection <id>")


@main.command()
@config_option
@handle_errors
def validate_config(config: str):
    """Validate configuration file."""
    console.print(f"Validating configuration: {config}")

    try:
        fieldsync_config = FieldSyncConfig.from_yaml(config)
        fieldsync_config.validate_config()
    except ConfigurationError as e:
        console.print(f"[red]✗[/red] Configuration error: {escape(str(e))}")
        sys.exit(1)

    console.print("[green]✓[/green] Configuration is valid")
    _display_config_summary(fieldsync_config)


@main.command()
@config_option
@handle_errors
def setup_store(config: str):
    """Create the metadata schema and tables in PostgreSQL."""
    fieldsync_config = _load_config(config)
    if fieldsync_config.store.backend != "postgres":
        raise ConfigurationError("setup-store needs the postgres store backend")

    from .database import ConnectionConfig, ConnectionPool, MetadataManager

    async def run_setup():
        pool = ConnectionPool(ConnectionConfig.from_store_config(fieldsync_config.store))
        async with pool:
            manager = MetadataManager(pool)
            results = await manager.setup_metadata_schema()
            report = await manager.check_metadata_integrity()
        return results, report

    results, report = asyncio.run(run_setup())

    for table in results["tables_created"]:
        console.print(f"[green]✓[/green] {table}")
    for error in results["errors"]:
        console.print(f"[red]✗[/red] {error}")

    if not report.get("is_healthy"):
        missing = ", ".join(report.get("missing_components", [])) or report.get("error", "")
        console.print(f"[red]Metadata store incomplete:[/red] {missing}")
        sys.exit(1)
    console.print("[green]✓[/green] Metadata store ready")


@main.command()
@config_option
@connection_option
@handle_errors
def scan(config: str, connection_id: str):
    """Show the columns currently in a connection's source."""
    fieldsync_config = _load_config(config)

    async def run_scan():
        connection, scanner = _create_scanner(fieldsync_config, connection_id)
        async with scanner:
            return connection, await scanner.scan(connection.source_id)

    connection, columns = asyncio.run(run_scan())

    table = Table(title=f"Columns of {connection.source_id}")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Inferred type", style="magenta")
    table.add_column("Samples", style="green")
    for column in columns:
        table.add_row(
            str(column.position),
            column.name,
            column.inferred_type.value if column.inferred_type else "",
            ", ".join(column.sample_data),
        )
    console.print(table)


@main.command()
@config_option
@connection_option
@handle_errors
def diff(config: str, connection_id: str):
    """Compare the source with the stored schema."""
    fieldsync_config = _load_config(config)

    async def run_diff():
        async with _open_session(fieldsync_config, connection_id) as session:
            await session.sync()
            return session.diff

    column_diff = asyncio.run(run_diff())
    _display_changes(column_diff)


@main.command()
@config_option
@connection_option
@click.option("--save", is_flag=True, help="Save the preview as the new schema")
@click.option(
    "--purge-removed",
    is_flag=True,
    help="Drop columns that are no longer in the source when saving",
)
@handle_errors
def sync(config: str, connection_id: str, save: bool, purge_removed: bool):
    """Reconcile a connection's schema with its source."""
    fieldsync_config = _load_config(config)

    async def run_sync():
        async with _open_session(fieldsync_config, connection_id) as session:
            preview = await session.sync()
            result = None
            if purge_removed:
                session.purge_removed()
                preview = session.preview
            if save:
                result = await session.save()
            return session.diff, preview, result

    column_diff, preview, result = asyncio.run(run_sync())

    _display_changes(column_diff)
    _display_fields(f"Preview of {connection_id}", preview.fields if preview else [])

    if result is None:
        if fieldsync_config.store.backend == "memory":
            console.print("[yellow]Memory store: nothing is kept between runs[/yellow]")
        return

    if result.ok:
        console.print(
            f"[green]✓[/green] Schema {result.status.value} (version {result.version})"
        )
        if result.dependents:
            console.print(f"Notified dependents: {', '.join(result.dependents)}")
        return

    console.print(f"[red]✗[/red] Save {result.status.value}")
    for error in result.errors:
        console.print(f"  - {escape(error)}")
    hint = _HINTS.get(result.user_action or "")
    if hint:
        console.print(f"[yellow]Hint:[/yellow] {hint}")
    sys.exit(1)


@main.command()
@config_option
@connection_option
@click.option("--history", is_flag=True, help="List previously saved versions")
@handle_errors
def show(config: str, connection_id: str, history: bool):
    """Show the stored schema of a connection."""
    fieldsync_config = _load_config(config)
    fieldsync_config.get_connection(connection_id)

    async def run_show():
        async with _open_runtime(fieldsync_config) as runtime:
            schema = await runtime.store.get(connection_id)
            versions = await runtime.store.history(connection_id) if history else []
            dependents = await runtime.registry.list_dependents(connection_id)
        return schema, versions, dependents

    schema, versions, dependents = asyncio.run(run_show())

    _display_fields(f"{connection_id} (version {schema.version})", schema.fields)
    if schema.retired_ids:
        console.print(f"Retired ids: {', '.join(schema.retired_ids)}")
    console.print(f"Dependents: {', '.join(dependents) if dependents else 'none'}")

    if versions:
        table = Table(title="History")
        table.add_column("Version", style="cyan")
        table.add_column("Saved", style="magenta")
        table.add_column("Fields", style="green", justify="right")
        for item in versions:
            table.add_row(item.version, str(item.updated_at or ""), str(len(item.fields)))
        console.print(table)


@main.command()
@config_option
@click.option(
    "--connection",
    "connection_ids",
    multiple=True,
    help="Only report these connections (repeatable)",
)
@handle_errors
def watch(config: str, connection_ids: Tuple[str, ...]):
    """Print schema change events as they are published."""
    fieldsync_config = _load_config(config)

    from .database import ConnectionConfig
    from .listener import SchemaChangeListener

    database = None
    if fieldsync_config.events.backend == "postgres":
        database = ConnectionConfig.from_store_config(fieldsync_config.store)

    async def on_change(event):
        console.print(
            f"[cyan]{event.changed_at.isoformat()}[/cyan] {event.connection_id} "
            f"-> version {event.version} ({len(event.dependents)} dependents)"
        )

    listener = SchemaChangeListener(
        fieldsync_config.events,
        on_change,
        connection_ids=connection_ids or None,
        database=database,
    )
    console.print(f"[blue]Watching {fieldsync_config.events.channel}...[/blue]")

    try:
        asyncio.run(listener.start())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped watching[/yellow]")


def _display_changes(column_diff) -> None:
    if column_diff is None:
        return
    if column_diff.bootstrap:
        console.print(
            f"[blue]First sync:[/blue] {len(column_diff.merged_columns)} columns will seed the schema"
        )
        return
    if not column_diff.has_changes:
        console.print("[green]✓[/green] Source matches the stored schema")
        return

    table = Table(title="Changes")
    table.add_column("Change", style="yellow")
    table.add_column("Column", style="cyan")
    table.add_column("Details", style="magenta")
    for change in column_diff.changes:
        table.add_row(change.type.value, change.name, change.describe())
    console.print(table)

    if column_diff.ambiguous_names:
        console.print(
            f"[yellow]Duplicate headers, check the pairing:[/yellow] "
            f"{', '.join(column_diff.ambiguous_names)}"
        )


def _display_fields(title: str, fields: List) -> None:
    table = Table(title=title)
    table.add_column("Id", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Active", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Samples")
    for item in fields:
        if item.is_removed:
            status = "removed (kept)" if item.keep else "removed (dropped on save)"
        else:
            status = "custom" if item.is_custom else ""
        table.add_row(
            item.id,
            item.name,
            item.type.value,
            "yes" if item.active else "no",
            status,
            ", ".join(item.sample_data),
        )
    console.print(table)


def _create_default_config() -> FieldSyncConfig:
    """Create a default configuration with examples."""
    from .config import SourceConfig, SourceConnectionConfig

    sources = {
        "google_sheets": SourceConfig(
            provider="sheets",
            access_token="${SHEETS_ACCESS_TOKEN}",
        ),
        "local_csv": SourceConfig(provider="csv"),
    }
    connections = [
        SourceConnectionConfig(
            connection_id="contacts",
            source="google_sheets",
            source_id="${SHEET_ID}",
        ),
        SourceConnectionConfig(
            connection_id="contacts_local",
            source="local_csv",
            source_id="./contacts.csv",
        ),
    ]
    return FieldSyncConfig(sources=sources, connections=connections)


def _display_config_summary(config: FieldSyncConfig) -> None:
    """Display a summary of the configuration."""
    console.print("\n[blue]Configuration Summary[/blue]")
    console.print(f"Store: {config.store.backend}")
    console.print(f"Events: {config.events.backend}")

    source_table = Table(title="Sources")
    source_table.add_column("Name", style="cyan")
    source_table.add_column("Provider", style="magenta")
    source_table.add_column("Sample rows", style="green")
    for name, source in config.sources.items():
        source_table.add_row(name, source.provider, str(source.sample_rows))
    console.print(source_table)

    connection_table = Table(title="Connections")
    connection_table.add_column("Connection", style="cyan")
    connection_table.add_column("Source", style="magenta")
    connection_table.add_column("Source id", style="green")
    for connection in config.connections:
        connection_table.add_row(
            connection.connection_id, connection.source, connection.source_id
        )
    console.print(connection_table)


if __name__ == "__main__":
    main()
