"""entitymap CLI for inspecting entity databases and their metadata cache."""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from ..cache.metadata import MetadataCache, SQLitePersistentCache
from ..config import Settings, load_settings
from ..db.executor import SQLiteExecutor
from ..db.schema import SchemaIntrospector
from ..errors import EntityMapError
from ..logging_config import setup_logging
from ..orm.resolver import RelationshipResolver

console = Console()
app = typer.Typer(add_completion=False, no_args_is_help=True)


def _resolve_settings(
    config_path: Optional[Path],
    db: Optional[Path],
    verbose: bool = False,
) -> Settings:
    settings = load_settings(config_path)
    if db:
        settings.db_path = Path(db).expanduser().resolve()
    setup_logging(verbose=verbose, level_name=settings.log_level)
    return settings


def _open_metadata(settings: Settings) -> tuple[SQLiteExecutor, MetadataCache]:
    if not settings.db_path.exists():
        console.print(f"[red]Database not found:[/red] {settings.db_path}")
        raise typer.Exit(1)
    executor = SQLiteExecutor.open(settings.db_path)
    persistent = (
        SQLitePersistentCache(settings.metadata_cache_path)
        if settings.metadata_cache_path is not None
        else None
    )
    return executor, MetadataCache(SchemaIntrospector(executor), persistent=persistent)


@app.command()
def status(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to the entity database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to entitymap.yaml"),
):
    """Show information about the database and the metadata cache."""
    settings = _resolve_settings(config, db)
    executor, metadata = _open_metadata(settings)
    try:
        fingerprint = executor.fingerprint()
        table = Table(title="Entity Database")
        table.add_column("Field", style="cyan")
        table.add_column("Value")

        table.add_row("Database Path", str(settings.db_path))
        table.add_row("Schema", fingerprint["schema"])
        table.add_row("Tables", str(len(executor.table_names())))
        table.add_row("Column Prefix", settings.column_prefix)
        table.add_row("Identity Map", "enabled" if settings.cache_enabled else "disabled")
        if settings.metadata_cache_path is not None and isinstance(metadata.persistent, SQLitePersistentCache):
            table.add_row("Metadata Cache", str(settings.metadata_cache_path))
            table.add_row("Cached Entries", str(metadata.persistent.count()))
        else:
            table.add_row("Metadata Cache", "disabled")

        console.print(table)
    finally:
        executor.close()
        if isinstance(metadata.persistent, SQLitePersistentCache):
            metadata.persistent.close()


@app.command()
def tables(
    db: Optional[Path] = typer.Option(None, "--db", help="Path to the entity database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to entitymap.yaml"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log metadata lookups"),
):
    """List tables with their columns and foreign-key edges."""
    settings = _resolve_settings(config, db, verbose)
    executor, metadata = _open_metadata(settings)
    try:
        table = Table(title="Tables")
        table.add_column("Table", style="cyan")
        table.add_column("Columns")
        table.add_column("Referenced by")
        table.add_column("References")

        for name in executor.table_names():
            columns = metadata.columns(name)
            inbound = metadata.inbound(name)
            outbound = metadata.outbound(name)
            table.add_row(
                name,
                str(len(columns)),
                ", ".join(inbound),
                ", ".join(f"{fk.column} -> {ref}" for ref, fks in outbound.items() for fk in fks),
            )

        console.print(table)
    finally:
        executor.close()
        if isinstance(metadata.persistent, SQLitePersistentCache):
            metadata.persistent.close()


@app.command()
def link(
    table_a: str = typer.Argument(..., help="Parent table"),
    table_b: str = typer.Argument(..., help="Dependent table"),
    db: Optional[Path] = typer.Option(None, "--db", help="Path to the entity database"),
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to entitymap.yaml"),
):
    """Infer the link table relating two tables."""
    settings = _resolve_settings(config, db)
    executor, metadata = _open_metadata(settings)
    try:
        resolver = RelationshipResolver(metadata)
        try:
            link_table = resolver.link_table_between(table_a, table_b)
        except EntityMapError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(1)

        if link_table is None:
            references = metadata.outbound(table_b).get(table_a)
            if references:
                columns = ", ".join(f"{table_b}.{fk.column}" for fk in references)
                console.print(f"[cyan]{columns}[/cyan] references {table_a} directly")
            else:
                console.print(f"[yellow]No link table between '{table_a}' and '{table_b}'[/yellow]")
            return

        console.print(f"[cyan bold]{link_table}[/cyan bold] links {table_a} and {table_b}")
        for ref, fks in metadata.outbound(link_table).items():
            for fk in fks:
                console.print(f"  {fk.column} -> {ref}.{fk.referenced_column}")
    finally:
        executor.close()
        if isinstance(metadata.persistent, SQLitePersistentCache):
            metadata.persistent.close()


@app.command("clear-metadata")
def clear_metadata(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to entitymap.yaml"),
):
    """Clear the persistent metadata cache."""
    settings = _resolve_settings(config, None)
    if settings.metadata_cache_path is None:
        console.print("[yellow]No persistent metadata cache configured[/yellow]")
        return
    cache = SQLitePersistentCache(settings.metadata_cache_path)
    try:
        removed = cache.clear()
    finally:
        cache.close()
    console.print(f"Removed {removed} cached metadata entries")